"""Costing API routes — cost sheets, what-if analysis, templates and the materials library."""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException

from app.api.deps import get_current_user_id, get_store
from app.models.quote_schema import (
    CostingTemplateApply,
    CostingTemplateCreate,
    MaterialLibraryIn,
    NameRequest,
    WhatIfRequest,
)
from app.services.costing_engine import LINK_TYPE_LABELS, CostingEngine
from app.services.document_store import (
    COSTING_SHEETS,
    COSTING_TEMPLATES,
    MATERIALS_LIBRARY,
    DocumentStore,
)
from app.services.errors import ValidationRejection

router = APIRouter(prefix="/api/costing", tags=["Costing"])
logger = logging.getLogger("baogia-costing")

_ENGINE = CostingEngine()


def _by_name(docs, key: str = "name"):
    return sorted(docs, key=lambda d: str(d.get(key) or "").casefold())


# ── Calculation ──────────────────────────────────────────────────────────────

@router.post("/compute")
async def compute_sheet(sheet: Dict[str, Any] = Body(...)):
    return _ENGINE.compute_sheet(sheet)


@router.post("/what-if")
async def what_if(req: WhatIfRequest):
    """Scenario unit cost for percentage changes; the sheet itself is not changed."""
    return _ENGINE.what_if(req.sheet, req.deltas)


@router.get("/link-types")
async def link_types():
    return [{"value": link.value, "label": label} for link, label in LINK_TYPE_LABELS.items()]


@router.post("/lines/{kind}")
async def check_line(kind: str, form: Dict[str, Any] = Body(...)):
    """Validate and normalise one material / labor / other line from the entry form."""
    if kind == "material":
        message = _ENGINE.validate_material(form, is_new=not form.get("id"))
        line = _ENGINE.normalize_material(form)
    elif kind == "labor":
        line = _ENGINE.normalize_labor(form)
        message = _ENGINE.validate_labor(line)
    elif kind == "other":
        line = _ENGINE.normalize_other_cost(form)
        message = _ENGINE.validate_other_cost(line)
    else:
        raise HTTPException(status_code=404, detail=f"Unknown line kind '{kind}'")
    if message:
        raise ValidationRejection(message)
    if form.get("id"):
        line["id"] = form["id"]
    return line


# ── Sheets ───────────────────────────────────────────────────────────────────

@router.get("/sheets")
async def list_sheets(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return _by_name(await store.list(user_id, COSTING_SHEETS), "productName")


@router.get("/sheets/{sheet_id}")
async def get_sheet(
    sheet_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    sheet = await store.get(user_id, COSTING_SHEETS, sheet_id)
    if sheet is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy phiếu giá thành này.")
    return _ENGINE.compute_sheet(sheet)


@router.post("/sheets")
async def save_sheet(
    sheet: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Create, or overwrite when the body carries an existing id."""
    message = _ENGINE.validate_sheet(sheet)
    if message:
        raise ValidationRejection(message)
    prepared = _ENGINE.prepare_for_save(sheet)
    saved = await store.set(user_id, COSTING_SHEETS, prepared["id"], prepared)
    logger.info(f"Costing sheet saved: {saved['productName']}", extra={"user_id": user_id})
    return saved


@router.delete("/sheets/{sheet_id}")
async def delete_sheet(
    sheet_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, COSTING_SHEETS, sheet_id):
        raise HTTPException(status_code=404, detail="Không tìm thấy phiếu giá thành này.")
    return {"deleted": sheet_id}


@router.post("/sheets/{sheet_id}/duplicate")
async def duplicate_sheet(
    sheet_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    original = await store.get(user_id, COSTING_SHEETS, sheet_id)
    if original is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy phiếu gốc để nhân bản.")
    copy = _ENGINE.compute_sheet(_ENGINE.duplicate_sheet(original))
    return await store.set(user_id, COSTING_SHEETS, copy["id"], copy)


# ── Templates ────────────────────────────────────────────────────────────────

@router.get("/templates")
async def list_templates(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return _by_name(await store.list(user_id, COSTING_TEMPLATES))


@router.post("/templates")
async def save_template(
    body: CostingTemplateCreate,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    message = _ENGINE.template_rejection(body.sheet, body.name)
    if message:
        raise ValidationRejection(message)
    return await store.add(user_id, COSTING_TEMPLATES, _ENGINE.sheet_to_template(body.sheet, body.name), prefix="ctpl")


@router.post("/templates/{template_id}/apply")
async def apply_template(
    template_id: str,
    body: CostingTemplateApply,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """A new, unsaved sheet built from the template for the given product."""
    template = await store.get(user_id, COSTING_TEMPLATES, template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy mẫu phiếu tính giá này.")
    return _ENGINE.sheet_from_template(template, body.product)


@router.patch("/templates/{template_id}")
async def rename_template(
    template_id: str,
    body: NameRequest,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    name = body.name.strip()
    if not name:
        raise ValidationRejection("Tên mẫu không hợp lệ.")
    if await store.get(user_id, COSTING_TEMPLATES, template_id) is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy mẫu để đổi tên.")
    return await store.set(user_id, COSTING_TEMPLATES, template_id, {"name": name}, merge=True)


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, COSTING_TEMPLATES, template_id):
        raise HTTPException(status_code=404, detail="Không tìm thấy mẫu phiếu tính giá này.")
    return {"deleted": template_id}


# ── Materials library ────────────────────────────────────────────────────────

@router.get("/materials")
async def list_materials(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return _by_name(await store.list(user_id, MATERIALS_LIBRARY))


@router.get("/materials/suggest")
async def suggest_materials(
    q: str = "",
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return _ENGINE.suggest_materials(q, await store.list(user_id, MATERIALS_LIBRARY))


@router.put("/materials")
async def upsert_material(
    body: MaterialLibraryIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Insert, or update the entry with the same name."""
    entry = _ENGINE.library_entry(body.model_dump())
    message = _ENGINE.validate_library_entry(entry)
    if message:
        raise ValidationRejection(message)
    library = await store.list(user_id, MATERIALS_LIBRARY)
    existing = _ENGINE.find_library_material(library, entry["name"])
    if existing is not None:
        return await store.set(user_id, MATERIALS_LIBRARY, existing["id"], entry, merge=True)
    return await store.add(user_id, MATERIALS_LIBRARY, entry, prefix="mlib")


@router.get("/materials/{material_id}/line")
async def material_line_from_library(
    material_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    entry = await store.get(user_id, MATERIALS_LIBRARY, material_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Material not found")
    return _ENGINE.material_from_library(entry)


@router.delete("/materials/{material_id}")
async def delete_material(
    material_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, MATERIALS_LIBRARY, material_id):
        raise HTTPException(status_code=404, detail="Material not found")
    return {"deleted": material_id}
