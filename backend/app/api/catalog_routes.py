"""Catalog API routes — main categories, catalog entries, Excel import/export, company settings."""
import logging
from datetime import date
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response

from app.api.deps import get_current_user_id, get_store
from app.models.quote_schema import CatalogEntryIn, CategoryIn, CompanySettingsIn
from app.services.catalog_engine import (
    export_catalog_excel,
    filter_catalog,
    find_category_by_name,
    normalize_catalog_entry,
    parse_catalog_excel,
    validate_catalog_entry,
    validate_category_name,
)
from app.services.document_store import (
    CATALOG,
    COMPANY_SETTINGS_DOC,
    MAIN_CATEGORIES,
    SETTINGS,
    DocumentStore,
)
from app.services.errors import ValidationRejection
from app.services.grouping_engine import sort_categories

router = APIRouter(prefix="/api/catalog", tags=["Catalog"])
logger = logging.getLogger("baogia-catalog")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ── Main categories ──────────────────────────────────────────────────────────

@router.get("/categories")
async def list_categories(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return sort_categories(await store.list(user_id, MAIN_CATEGORIES))


@router.post("/categories")
async def create_category(
    body: CategoryIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    categories = await store.list(user_id, MAIN_CATEGORIES)
    message = validate_category_name(categories, body.name)
    if message:
        raise ValidationRejection(message)
    return await store.add(user_id, MAIN_CATEGORIES, {"name": body.name.strip()}, prefix="mcat")


@router.put("/categories/{category_id}")
async def rename_category(
    category_id: str,
    body: CategoryIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    categories = await store.list(user_id, MAIN_CATEGORIES)
    if not any(c["id"] == category_id for c in categories):
        raise HTTPException(status_code=404, detail="Category not found")
    message = validate_category_name(categories, body.name, editing_id=category_id)
    if message:
        raise ValidationRejection(message)
    return await store.set(user_id, MAIN_CATEGORIES, category_id, {"name": body.name.strip()}, merge=True)


@router.delete("/categories/{category_id}")
async def delete_category(
    category_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Entries and quote lines that reference the category are left alone; they show as uncategorized."""
    if not await store.delete(user_id, MAIN_CATEGORIES, category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return {"deleted": category_id}


# ── Catalog entries ──────────────────────────────────────────────────────────

@router.get("/entries")
async def list_entries(
    search: str = "",
    category_id: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: str = "name_asc",
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    entries = await store.list(user_id, CATALOG)
    return filter_catalog(entries, search, category_id, min_price, max_price, sort)


@router.post("/entries")
async def create_entry(
    body: CatalogEntryIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    entry = normalize_catalog_entry(body.model_dump())
    message = validate_catalog_entry(entry)
    if message:
        raise ValidationRejection(message)
    return await store.add(user_id, CATALOG, entry, prefix="cat")


@router.put("/entries/{entry_id}")
async def update_entry(
    entry_id: str,
    body: CatalogEntryIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    entry = normalize_catalog_entry(body.model_dump())
    message = validate_catalog_entry(entry)
    if message:
        raise ValidationRejection(message)
    if await store.get(user_id, CATALOG, entry_id) is None:
        raise HTTPException(status_code=404, detail="Catalog entry not found")
    return await store.set(user_id, CATALOG, entry_id, entry, merge=True)


@router.delete("/entries/{entry_id}")
async def delete_entry(
    entry_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, CATALOG, entry_id):
        raise HTTPException(status_code=404, detail="Catalog entry not found")
    return {"deleted": entry_id}


# ── Excel ────────────────────────────────────────────────────────────────────

@router.post("/import")
async def import_catalog(
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """
    Import TenHangMuc / QuyCach / DonViTinh / DonGia / DanhMucChinh rows.
    Unknown DanhMucChinh names create the category.
    """
    filename = (file.filename or "").lower()
    if not (filename.endswith(".xlsx") or filename.endswith(".xls")):
        raise HTTPException(status_code=400, detail="File không đúng định dạng. Vui lòng sử dụng file .xlsx hợp lệ.")

    contents = await file.read()
    try:
        rows = parse_catalog_excel(contents)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail="Không thể đọc file. Vui lòng kiểm tra định dạng file (cần là .xlsx, .xls) và các cột "
                   "TenHangMuc, DonViTinh, DonGia (và tùy chọn DanhMucChinh).",
        )

    categories = await store.list(user_id, MAIN_CATEGORIES)
    category_cache: Dict[str, str] = {}
    imported = 0
    for row in rows:
        category_id = None
        key = row.category_name.lower()
        if key:
            if key not in category_cache:
                found = find_category_by_name(categories, row.category_name)
                if found is None:
                    found = await store.add(user_id, MAIN_CATEGORIES, {"name": row.category_name}, prefix="mcat")
                category_cache[key] = found["id"]
            category_id = category_cache[key]
        await store.add(user_id, CATALOG, row.to_entry(category_id), prefix="cat")
        imported += 1

    logger.info(f"Imported {imported} catalog rows from {file.filename}", extra={"user_id": user_id})
    if not imported:
        return {"imported": 0, "message": "Không có hạng mục hợp lệ nào để nhập. Vui lòng kiểm tra cột 'TenHangMuc' trong file."}
    return {"imported": imported, "message": f"Đã nhập thành công {imported} hạng mục."}


@router.get("/export")
async def export_catalog(
    search: str = "",
    category_id: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: str = "name_asc",
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """The filtered catalog as an .xlsx in the import layout."""
    entries = filter_catalog(await store.list(user_id, CATALOG), search, category_id, min_price, max_price, sort)
    if not entries:
        raise ValidationRejection("Không có dữ liệu danh mục (sau khi lọc) để xuất.")
    categories = await store.list(user_id, MAIN_CATEGORIES)
    filename = f"DanhMuc_{date.today().isoformat()}.xlsx"
    return Response(
        content=export_catalog_excel(entries, categories),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── Company settings ─────────────────────────────────────────────────────────

@router.get("/settings/company")
async def get_company_settings(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    settings = await store.get(user_id, SETTINGS, COMPANY_SETTINGS_DOC)
    return settings or CompanySettingsIn().model_dump()


@router.put("/settings/company")
async def save_company_settings(
    body: CompanySettingsIn,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Partial update: fields left out of the body keep their stored value."""
    data = body.model_dump(exclude_unset=True)
    for key in ("name", "address", "phone", "email", "taxId", "bankAccount", "defaultQuoteNotes"):
        if key in data:
            data[key] = (data[key] or "").strip()
    return await store.set(user_id, SETTINGS, COMPANY_SETTINGS_DOC, data, merge=True)
