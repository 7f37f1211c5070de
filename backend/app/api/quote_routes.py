"""
Quote Routes — line pricing, totals, document rendering and the user's
working draft, saved quotes and quote templates.

POST /api/quotes/generate-pdf   — render a quote payload to application/pdf
"""
import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response

from app.api.deps import get_current_user_id, get_store
from app.models.quote_schema import (
    DraftUpdate,
    InstallmentUpdate,
    ItemForm,
    NameRequest,
    SaveQuoteRequest,
    StatusUpdate,
    TotalsRequest,
)
from app.services.catalog_engine import catalog_entry_from_item, find_category_by_name
from app.services.document_engine import (
    compose_quote_doc_definition,
    compose_quote_document,
    compose_quote_html,
)
from app.services.document_store import (
    CATALOG,
    COMPANY_SETTINGS_DOC,
    COSTING_SHEETS,
    CURRENT_QUOTE_DOC,
    MAIN_CATEGORIES,
    QUOTE_TEMPLATES,
    QUOTES,
    SETTINGS,
    UX,
    DocumentStore,
)
from app.services.errors import RenderingError, ValidationRejection
from app.services.formatting import to_number
from app.services.pricing_engine import DiscountType, apply_pricing, compute_line_item
from app.services.quote_session import (
    QuoteSession,
    duplicate_quote,
    filter_saved_quotes,
    prefill_from_catalog,
    prefill_from_costing,
    status_label,
    suggest_item_names,
    validate_status,
)
from app.services.report_engine import ReportEngine
from app.services.totals_engine import (
    compute_installments,
    compute_totals,
    estimate_gross_margin,
    quote_grand_total,
    settings_from_quote,
)

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])
logger = logging.getLogger("baogia-api.quotes")

_REPORT_ENGINE = ReportEngine()
PDF_FILENAME = "bao_gia.pdf"


# ── Helpers ──────────────────────────────────────────────────────────────────

async def _load_session(store: DocumentStore, user_id: str) -> QuoteSession:
    doc = await store.get(user_id, UX, CURRENT_QUOTE_DOC)
    return QuoteSession.from_draft(doc)


async def _save_session(store: DocumentStore, user_id: str, session: QuoteSession) -> Dict[str, Any]:
    return await store.set(user_id, UX, CURRENT_QUOTE_DOC, session.to_draft())


async def _draft_view(store: DocumentStore, user_id: str, session: QuoteSession) -> Dict[str, Any]:
    draft = await _save_session(store, user_id, session)
    sheets = await store.list(user_id, COSTING_SHEETS)
    totals = session.totals()
    return {
        "draft": draft,
        "totals": totals.to_dict(),
        "isNegative": totals.is_negative,
        "installments": session.installment_schedule().to_dict(),
        "margin": session.margin_estimate(sheets).to_dict(),
    }


async def _find_or_create_category(store: DocumentStore, user_id: str, name: Optional[str]) -> Optional[str]:
    name = (name or "").strip()
    if not name:
        return None
    categories = await store.list(user_id, MAIN_CATEGORIES)
    found = find_category_by_name(categories, name)
    if found:
        return found["id"]
    created = await store.add(user_id, MAIN_CATEGORIES, {"name": name}, prefix="mcat")
    logger.info(f"Created main category '{name}'", extra={"user_id": user_id})
    return created["id"]


def _pdf_response(pdf: bytes) -> Response:
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{PDF_FILENAME}"'},
    )


async def _render_pdf(payload: Dict[str, Any]) -> Response:
    try:
        document = compose_quote_document(payload)
        pdf = await asyncio.to_thread(_REPORT_ENGINE.render_pdf, document)
    except RenderingError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": e.message, "error": e.detail},
        )
    return _pdf_response(pdf)


# ── Stateless computation ────────────────────────────────────────────────────

@router.post("/compute-item")
async def compute_item(form: ItemForm):
    """Re-price one line: discount, unit price, measure and line total."""
    fields = form.model_dump()
    pricing = compute_line_item(fields)
    priced = apply_pricing(fields)
    priced["displayMeasure"] = pricing.display_measure
    priced["isPriceNegative"] = pricing.is_price_negative
    return priced


@router.post("/compute-totals")
async def compute_quote_totals(req: TotalsRequest):
    """Order totals, installment schedule and (with costing sheets) the margin estimate."""
    items = [apply_pricing(i) for i in req.items]
    totals = compute_totals(items, settings_from_quote(req.model_dump(), default_flags=False))
    result = {
        "items": items,
        "totals": totals.to_dict(),
        "isNegative": totals.is_negative,
        "installments": compute_installments(totals.grand_total, req.installments, req.applyInstallments).to_dict(),
    }
    if req.costingSheets is not None:
        result["margin"] = estimate_gross_margin(items, req.costingSheets, totals.grand_total).to_dict()
    return result


@router.post("/render/html", response_class=HTMLResponse)
async def render_quote_html(payload: Dict[str, Any] = Body(...)):
    return HTMLResponse(compose_quote_html(payload))


@router.post("/render/doc-definition")
async def render_quote_doc_definition(payload: Dict[str, Any] = Body(...)):
    return compose_quote_doc_definition(payload)


@router.post("/generate-pdf")
async def generate_pdf(payload: Dict[str, Any] = Body(...)):
    """
    Render the quote to PDF. On failure the body is
    {"success": false, "message": ..., "error": ...} with the failure status.
    """
    return await _render_pdf(payload)


# ── Working draft ────────────────────────────────────────────────────────────

@router.get("/draft")
async def get_draft(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    return await _draft_view(store, user_id, session)


@router.put("/draft")
async def update_draft(
    body: DraftUpdate,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    changes = body.model_dump(exclude_unset=True)
    if "customerName" in changes:
        session.customer_name = changes["customerName"] or ""
    if "customerAddress" in changes:
        session.customer_address = changes["customerAddress"] or ""
    if "quoteDate" in changes:
        session.quote_date = changes["quoteDate"] or ""
    if "applyDiscount" in changes:
        session.apply_discount = bool(changes["applyDiscount"])
    if "discountValue" in changes:
        session.discount_value = to_number(changes["discountValue"])
    if "discountType" in changes:
        session.discount_type = DiscountType.parse(changes["discountType"])
    if "applyTax" in changes:
        session.apply_tax = bool(changes["applyTax"])
    if "taxPercent" in changes:
        session.tax_percent = to_number(changes["taxPercent"])
    if "applyInstallments" in changes:
        session.apply_installments = bool(changes["applyInstallments"])
    if "installments" in changes:
        session.installments = [dict(t) for t in changes["installments"] or []]
    return await _draft_view(store, user_id, session)


@router.post("/draft/new")
async def new_draft(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    return await _draft_view(store, user_id, QuoteSession.new(date.today()))


@router.post("/draft/items")
async def add_or_update_draft_item(
    form: ItemForm,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Adds a line, or updates the line being edited (see /draft/items/{id}/edit)."""
    session = await _load_session(store, user_id)
    fields = form.model_dump()
    category_id = fields.pop("mainCategoryId", None)
    category_name = fields.pop("mainCategoryName", None)
    if category_name is not None:
        category_id = await _find_or_create_category(store, user_id, category_name)
    result = session.add_or_update_item(fields, category_id)
    if not result.ok:
        raise ValidationRejection(result.message)
    view = await _draft_view(store, user_id, session)
    view["item"] = result.item
    view["message"] = result.message
    return view


@router.post("/draft/items/{item_id}/edit")
async def start_edit_draft_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    item = session.start_edit(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    view = await _draft_view(store, user_id, session)
    view["item"] = item
    return view


@router.post("/draft/cancel-edit")
async def cancel_edit_draft_item(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    session.cancel_edit()
    return await _draft_view(store, user_id, session)


@router.delete("/draft/items/{item_id}")
async def delete_draft_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    if not session.delete_item(item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    return await _draft_view(store, user_id, session)


@router.post("/draft/items/{item_id}/save-to-catalog")
async def save_draft_item_to_catalog(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    item = session.find_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    entry = catalog_entry_from_item(item)
    if not entry["name"]:
        raise ValidationRejection("Cần có tên hạng mục để lưu.")
    return await store.add(user_id, CATALOG, entry, prefix="cat")


@router.post("/draft/installments")
async def add_draft_installment(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    session.add_installment()
    return await _draft_view(store, user_id, session)


@router.patch("/draft/installments/{index}")
async def update_draft_installment(
    index: int,
    body: InstallmentUpdate,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    if not session.update_installment(index, body.field, body.value):
        raise HTTPException(status_code=404, detail="Installment not found")
    return await _draft_view(store, user_id, session)


@router.delete("/draft/installments/{index}")
async def remove_draft_installment(
    index: int,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    if not session.remove_installment(index):
        raise HTTPException(status_code=404, detail="Installment not found")
    return await _draft_view(store, user_id, session)


@router.get("/draft/pdf")
async def draft_pdf(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """PDF of the working draft with the user's company settings and categories."""
    session = await _load_session(store, user_id)
    settings = await store.get(user_id, SETTINGS, COMPANY_SETTINGS_DOC)
    categories = await store.list(user_id, MAIN_CATEGORIES)
    return await _render_pdf(session.rendering_payload(settings, categories, date.today()))


# ── Item suggestions ─────────────────────────────────────────────────────────

@router.get("/suggestions")
async def item_name_suggestions(
    q: str = "",
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    catalog = await store.list(user_id, CATALOG)
    sheets = await store.list(user_id, COSTING_SHEETS)
    return suggest_item_names(q, catalog, sheets)


@router.get("/prefill/{source}/{doc_id}")
async def prefill_item(
    source: str,
    doc_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Item form values from a catalog entry or a costing sheet."""
    if source == "catalog":
        entry = await store.get(user_id, CATALOG, doc_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Catalog entry not found")
        categories = await store.list(user_id, MAIN_CATEGORIES)
        return prefill_from_catalog(entry, categories)
    if source == "costing":
        sheet = await store.get(user_id, COSTING_SHEETS, doc_id)
        if sheet is None:
            raise HTTPException(status_code=404, detail="Costing sheet not found")
        return prefill_from_costing(sheet)
    raise HTTPException(status_code=404, detail=f"Unknown source '{source}'")


# ── Saved quotes ─────────────────────────────────────────────────────────────

@router.get("/saved")
async def list_saved_quotes(
    search: str = "",
    status: Optional[str] = Query(None, description="draft|sent|accepted|rejected|expired|all"),
    start: Optional[str] = None,
    end: Optional[str] = None,
    min_total: Optional[float] = None,
    max_total: Optional[float] = None,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    quotes = await store.list(user_id, QUOTES)
    filtered = filter_saved_quotes(quotes, search, status, start, end, min_total, max_total)
    return [
        {
            "id": q["id"],
            "customerName": q.get("customerName") or "",
            "quoteDate": q.get("quoteDate"),
            "timestamp": q.get("timestamp"),
            "status": q.get("status") or "draft",
            "statusLabel": status_label(q.get("status")),
            "grandTotal": quote_grand_total(q),
            "itemCount": len(q.get("items") or []),
        }
        for q in filtered
    ]


@router.post("/saved")
async def save_quote(
    body: SaveQuoteRequest,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Snapshot the draft under a name (defaults to '<customer> - <internal id>')."""
    session = await _load_session(store, user_id)
    if not session.items:
        raise ValidationRejection("Chưa có hạng mục nào trong báo giá.")
    quote_id = (body.id or "").strip() or session.suggested_save_id()
    saved = await store.set(user_id, QUOTES, quote_id, session.snapshot(quote_id))
    logger.info("Quote saved", extra={"user_id": user_id, "quote_id": quote_id})
    return saved


@router.get("/saved/{quote_id}")
async def get_saved_quote(
    quote_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    quote = await store.get(user_id, QUOTES, quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy báo giá này.")
    return quote


@router.post("/saved/{quote_id}/load")
async def load_saved_quote(
    quote_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    quote = await store.get(user_id, QUOTES, quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy báo giá này.")
    return await _draft_view(store, user_id, QuoteSession.from_draft(quote))


@router.post("/saved/{quote_id}/duplicate")
async def duplicate_saved_quote(
    quote_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    """Save a '(Bản sao) …' copy as a draft and load it into the editor."""
    quote = await store.get(user_id, QUOTES, quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy dữ liệu báo giá gốc.")
    copy = duplicate_quote(quote, date.today())
    saved = await store.set(user_id, QUOTES, copy["id"], copy)
    view = await _draft_view(store, user_id, QuoteSession.from_draft(saved))
    view["quote"] = saved
    return view


@router.patch("/saved/{quote_id}/status")
async def update_quote_status(
    quote_id: str,
    body: StatusUpdate,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    status = validate_status(body.status)
    if status is None:
        raise ValidationRejection("Dữ liệu không hợp lệ để cập nhật trạng thái.")
    if await store.get(user_id, QUOTES, quote_id) is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy báo giá này.")
    updated = await store.set(user_id, QUOTES, quote_id, {"status": status.value}, merge=True)
    return {"id": updated["id"], "status": status.value, "statusLabel": status.label}


@router.delete("/saved/{quote_id}")
async def delete_saved_quote(
    quote_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, QUOTES, quote_id):
        raise HTTPException(status_code=404, detail="Không tìm thấy báo giá này.")
    return {"deleted": quote_id}


@router.post("/saved/{quote_id}/pdf")
async def saved_quote_pdf(
    quote_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    quote = await store.get(user_id, QUOTES, quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Không tìm thấy báo giá này.")
    settings = await store.get(user_id, SETTINGS, COMPANY_SETTINGS_DOC)
    categories = await store.list(user_id, MAIN_CATEGORIES)
    session = QuoteSession.from_draft(quote)
    return await _render_pdf(session.rendering_payload(settings, categories, date.today()))


# ── Templates ────────────────────────────────────────────────────────────────

@router.get("/templates")
async def list_quote_templates(
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    templates = await store.list(user_id, QUOTE_TEMPLATES)
    templates.sort(key=lambda t: str(t.get("name") or "").casefold())
    return [dict(t, itemCount=len(t.get("items") or [])) for t in templates]


@router.post("/templates")
async def save_quote_template(
    body: NameRequest,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    session = await _load_session(store, user_id)
    message = session.template_rejection(body.name)
    if message:
        raise ValidationRejection(message)
    return await store.add(user_id, QUOTE_TEMPLATES, session.to_template(body.name), prefix="qtpl")


@router.post("/templates/{template_id}/apply")
async def apply_quote_template(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    template = await store.get(user_id, QUOTE_TEMPLATES, template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    session = await _load_session(store, user_id)
    session.apply_template(template)
    return await _draft_view(store, user_id, session)


@router.patch("/templates/{template_id}")
async def rename_quote_template(
    template_id: str,
    body: NameRequest,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    name = body.name.strip()
    if not name:
        raise ValidationRejection("Tên mẫu không hợp lệ.")
    if await store.get(user_id, QUOTE_TEMPLATES, template_id) is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return await store.set(user_id, QUOTE_TEMPLATES, template_id, {"name": name}, merge=True)


@router.delete("/templates/{template_id}")
async def delete_quote_template(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_store),
):
    if not await store.delete(user_id, QUOTE_TEMPLATES, template_id):
        raise HTTPException(status_code=404, detail="Template not found")
    return {"deleted": template_id}
