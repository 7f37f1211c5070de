"""
Document Engine — turns a quote rendering payload into a printable document.

Pipeline:
    payload --normalize_quote_data--> QuoteDocumentData   (every default applied once)
            --build_document-------> QuoteDocument        (canonical block tree, text pre-formatted)
            --render_html / render_doc_definition / ReportEngine.render_pdf

The block tree is the only place that decides what appears on the page;
sinks only lay it out. Output is deterministic: the signature date comes from
the caller-supplied ``today`` and nothing reads the clock.
"""
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from app.services.formatting import format_currency, format_date, format_number, to_number
from app.services.grouping_engine import CategoryHeaderRow, group_items
from app.services.perf_monitor import timed, tracker
from app.services.pricing_engine import DiscountType, apply_pricing, compute_line_item
from app.services.totals_engine import (
    InstallmentSchedule,
    QuoteTotals,
    compute_installments,
    compute_totals,
    settings_from_quote,
)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates")

DEFAULT_TITLE = "BÁO GIÁ"
DEFAULT_SIGNATURE_LOCATION = "Phan Rang"
UNNAMED_ITEM = "[Chưa có tên]"

ITEM_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("STT", "center"),
    ("Hình ảnh", "center"),
    ("Hạng Mục / Mô Tả", "left"),
    ("ĐVT", "center"),
    ("K.Lượng", "center"),
    ("SL", "center"),
    ("Đơn giá", "right"),
    ("Thành tiền", "right"),
    ("Ghi Chú", "left"),
)
INSTALLMENT_COLUMNS = ("Đợt", "Nội dung", "Giá trị", "Thành tiền")


# ---------------------------------------------------------------------------
# Normalized input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompanyInfo:
    name: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""
    tax_id: str = ""
    bank_account: str = ""
    logo_data_url: str = ""
    default_notes: str = ""
    title: str = DEFAULT_TITLE
    creator_name: str = ""
    footer: str = ""
    signature_location: str = DEFAULT_SIGNATURE_LOCATION


@dataclass(frozen=True)
class CustomerInfo:
    name: str = ""
    address: str = ""
    date: str = ""


@dataclass(frozen=True)
class QuoteDocumentData:
    company: CompanyInfo
    customer: CustomerInfo
    quote_id: str
    items: Tuple[Mapping[str, Any], ...]
    categories: Tuple[Mapping[str, Any], ...]
    totals: QuoteTotals
    schedule: InstallmentSchedule
    today: str = ""


def _text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip() if isinstance(value, str) else str(value)


def safe_image(src: Any) -> str:
    """Only inline data URIs reach the document; remote URLs are dropped."""
    text = _text(src)
    return text if text.startswith("data:image/") else ""


def _installment_input(payload: Mapping[str, Any]) -> Tuple[bool, List[Mapping[str, Any]]]:
    raw = payload.get("installments")
    if isinstance(raw, Mapping):
        enabled = bool(raw.get("enabled"))
        data = raw.get("data") or []
    else:
        enabled = bool(payload.get("applyInstallments"))
        data = raw or []
    return enabled, [d for d in data if isinstance(d, Mapping)]


def normalize_quote_data(payload: Optional[Mapping[str, Any]]) -> QuoteDocumentData:
    """
    Apply every default once. Items are re-priced and totals recomputed, so
    any derived figures in the payload are ignored.
    """
    payload = payload or {}
    settings = payload.get("companySettings") or {}
    print_options = settings.get("printOptions") or {}
    customer = payload.get("customerInfo") or {}

    company = CompanyInfo(
        name=_text(settings.get("name")),
        address=_text(settings.get("address")),
        phone=_text(settings.get("phone")),
        email=_text(settings.get("email")),
        tax_id=_text(settings.get("taxId")),
        bank_account=_text(settings.get("bankAccount")),
        logo_data_url=safe_image(settings.get("logoDataUrl")),
        default_notes=_text(settings.get("defaultQuoteNotes")),
        title=_text(print_options.get("title")) or DEFAULT_TITLE,
        creator_name=_text(print_options.get("creatorName")),
        footer=_text(print_options.get("footer")),
        signature_location=_text(print_options.get("signatureLocation")) or DEFAULT_SIGNATURE_LOCATION,
    )

    items = tuple(apply_pricing(i) for i in (payload.get("items") or []) if isinstance(i, Mapping))
    categories = tuple(
        c for c in (payload.get("mainCategories") or [])
        if isinstance(c, Mapping) and c.get("id")
    )
    totals = compute_totals(items, settings_from_quote(payload, default_flags=False))
    enabled, installments = _installment_input(payload)
    schedule = compute_installments(totals.grand_total, installments, enabled)

    return QuoteDocumentData(
        company=company,
        customer=CustomerInfo(
            name=_text(customer.get("name")),
            address=_text(customer.get("address")),
            date=format_date(customer.get("date")),
        ),
        quote_id=_text(payload.get("quoteId")) or "N/A",
        items=items,
        categories=categories,
        totals=totals,
        schedule=schedule,
        today=format_date(payload.get("today")),
    )


# ---------------------------------------------------------------------------
# Canonical block tree
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeaderBlock:
    company_name: str
    address: str
    contact_line: str
    tax_line: str
    logo: str


@dataclass(frozen=True)
class CustomerBlock:
    name: str
    address: str
    quote_id: str
    date: str


@dataclass(frozen=True)
class CategoryRowView:
    label: str
    name: str
    total: str

    kind = "category"


@dataclass(frozen=True)
class ItemRowView:
    index: int
    image: str
    name: str
    dimensions: str
    spec: str
    unit: str
    measure: str
    quantity: str
    price: str
    original_price: str
    discount_badge: str
    line_total: str
    notes: str

    kind = "item"

    @property
    def discounted(self) -> bool:
        return bool(self.original_price)


TableRow = Union[CategoryRowView, ItemRowView]


@dataclass(frozen=True)
class TotalsLine:
    label: str
    value: str
    emphasis: bool = False


@dataclass(frozen=True)
class InstallmentRowView:
    index: int
    name: str
    value: str
    amount: str


@dataclass(frozen=True)
class InstallmentsBlock:
    rows: Tuple[InstallmentRowView, ...]
    allocated: str
    remaining: str


@dataclass(frozen=True)
class NotesBlock:
    bank_lines: Tuple[str, ...] = ()
    notes: str = ""

    @property
    def empty(self) -> bool:
        return not self.bank_lines and not self.notes


@dataclass(frozen=True)
class SignatureBlock:
    place_date: str
    role: str
    creator: str


@dataclass(frozen=True)
class QuoteDocument:
    title: str
    quote_id: str
    header: HeaderBlock
    customer: CustomerBlock
    columns: Tuple[Tuple[str, str], ...]
    rows: Tuple[TableRow, ...]
    totals: Tuple[TotalsLine, ...]
    installments: Optional[InstallmentsBlock]
    notes: NotesBlock
    signature: SignatureBlock
    footer_lines: Tuple[str, ...] = field(default_factory=tuple)


def dimensions_label(item: Mapping[str, Any]) -> str:
    parts = []
    for prefix, key in (("D", "length"), ("C", "height"), ("S", "depth")):
        value = to_number(item.get(key))
        if value:
            parts.append(f"{prefix} {_text(value)}mm")
    return f"KT: {' x '.join(parts)}" if parts else ""


def _percent_text(value: float) -> str:
    return f"{format_number(value, 2)}%"


def build_item_row(item: Mapping[str, Any], index: int) -> ItemRowView:
    pricing = compute_line_item(item)
    discount_type = DiscountType.parse(item.get("itemDiscountType"))
    discount_value = to_number(item.get("itemDiscountValue"))

    original_price = ""
    badge = ""
    if pricing.item_discount_amount > 0:
        original_price = format_currency(to_number(item.get("originalPrice")), show_symbol=False)
        if discount_type is DiscountType.PERCENT and discount_value > 0:
            badge = f"(-{_percent_text(discount_value)})"

    measure = ""
    if pricing.display_measure is not None:
        measure = format_number(pricing.display_measure, 4)

    name = _text(item.get("name")) or UNNAMED_ITEM
    return ItemRowView(
        index=index,
        image=safe_image(item.get("imageDataUrl")),
        name=name.upper(),
        dimensions=dimensions_label(item),
        spec=_text(item.get("spec")),
        unit=_text(item.get("unit")),
        measure=measure,
        quantity=format_number(to_number(item.get("quantity")), 2),
        price=format_currency(pricing.price, show_symbol=False),
        original_price=original_price,
        discount_badge=badge,
        line_total=format_currency(pricing.line_total, show_symbol=False),
        notes=_text(item.get("notes")),
    )


def _totals_lines(totals: QuoteTotals) -> Tuple[TotalsLine, ...]:
    lines = [TotalsLine("Tạm tính:", format_currency(totals.sub_total))]
    if totals.discount_amount > 0:
        label = "Giảm giá:"
        if totals.settings.discount_type is DiscountType.PERCENT:
            label = f"Giảm giá ({_percent_text(totals.settings.discount_value)}):"
        lines.append(TotalsLine(label, f"- {format_currency(totals.discount_amount)}"))
    if totals.tax_amount > 0:
        lines.append(TotalsLine(
            f"Thuế VAT ({_percent_text(totals.settings.tax_percent)}):",
            format_currency(totals.tax_amount),
        ))
    lines.append(TotalsLine("Tổng cộng:", format_currency(totals.grand_total), emphasis=True))
    return tuple(lines)


def _installments_block(schedule: InstallmentSchedule) -> Optional[InstallmentsBlock]:
    if not schedule.visible:
        return None
    rows = tuple(
        InstallmentRowView(
            index=t.index,
            name=t.name,
            value=_percent_text(t.value) if t.type is DiscountType.PERCENT else format_currency(t.value),
            amount=format_currency(t.amount),
        )
        for t in schedule.tranches
    )
    return InstallmentsBlock(
        rows=rows,
        allocated=format_currency(schedule.total_allocated),
        remaining=format_currency(schedule.remaining),
    )


@timed
def build_document(data: QuoteDocumentData) -> QuoteDocument:
    company = data.company
    rows: List[TableRow] = []
    for row in group_items(data.items, data.categories):
        if isinstance(row, CategoryHeaderRow):
            rows.append(CategoryRowView(
                label=row.label,
                name=row.name.upper(),
                total=format_currency(row.category_total, show_symbol=False),
            ))
        else:
            rows.append(build_item_row(row.item, row.index))

    place_date = company.signature_location
    if data.today:
        place_date = f"{place_date}, {data.today}"

    return QuoteDocument(
        title=company.title,
        quote_id=data.quote_id,
        header=HeaderBlock(
            company_name=company.name.upper(),
            address=company.address,
            contact_line=f"ĐT: {company.phone} | Email: {company.email}",
            tax_line=f"MST: {company.tax_id}" if company.tax_id else "",
            logo=company.logo_data_url,
        ),
        customer=CustomerBlock(
            name=data.customer.name,
            address=data.customer.address,
            quote_id=data.quote_id,
            date=data.customer.date,
        ),
        columns=ITEM_COLUMNS,
        rows=tuple(rows),
        totals=_totals_lines(data.totals),
        installments=_installments_block(data.schedule),
        notes=NotesBlock(
            bank_lines=tuple(company.bank_account.splitlines()),
            notes=company.default_notes,
        ),
        signature=SignatureBlock(
            place_date=place_date,
            role="Người lập báo giá",
            creator=company.creator_name,
        ),
        footer_lines=tuple(line.strip() for line in company.footer.splitlines() if line.strip()),
    )


# ---------------------------------------------------------------------------
# HTML sink (Jinja2)
# ---------------------------------------------------------------------------

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html", "xml", "html.j2"]),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_html(document: QuoteDocument) -> str:
    template = _env.get_template("quote.html.j2")
    return template.render(doc=document)


# ---------------------------------------------------------------------------
# Declarative document-definition sink (pdfmake-style tree)
# ---------------------------------------------------------------------------

DOC_STYLES: Dict[str, Dict[str, Any]] = {
    "companyName": {"fontSize": 14, "bold": True, "color": "#3B82F6"},
    "companyDetails": {"fontSize": 9, "color": "#4B5563"},
    "title": {"fontSize": 20, "bold": True, "alignment": "center", "margin": [0, 20, 0, 20]},
    "customerInfo": {"fontSize": 9, "margin": [0, 2, 0, 2]},
    "tableHeader": {"bold": True, "fontSize": 8.5, "color": "#4B5563", "alignment": "center", "fillColor": "#F3F4F6"},
    "categoryCell": {"bold": True, "fontSize": 9.5, "color": "#3B82F6", "fillColor": "#EBF2FE"},
    "itemName": {"bold": True, "fontSize": 9},
    "itemDetails": {"fontSize": 8, "color": "#4B5563", "italics": True},
    "grandTotalLabel": {"bold": True, "fontSize": 11},
    "grandTotalValue": {"bold": True, "fontSize": 12, "color": "#3B82F6"},
    "sectionHeader": {"fontSize": 11, "bold": True, "margin": [0, 10, 0, 5]},
    "notes": {"fontSize": 9},
    "footer": {"fontSize": 8, "color": "#777777"},
}


def _doc_item_row(row: ItemRowView) -> List[Dict[str, Any]]:
    name_stack: List[Dict[str, Any]] = [{"text": row.name, "style": "itemName"}]
    if row.dimensions:
        name_stack.append({"text": row.dimensions, "style": "itemDetails"})
    if row.spec:
        name_stack.append({"text": row.spec, "style": "itemDetails"})

    price_stack: List[Dict[str, Any]] = []
    if row.discounted:
        price_stack.append({"text": row.original_price, "decoration": "lineThrough", "fontSize": 8.5, "color": "#4B5563"})
    price_stack.append({"text": row.price, "bold": True})
    if row.discount_badge:
        price_stack.append({"text": row.discount_badge, "fontSize": 8, "color": "#EF4444", "italics": True})

    image_cell: Dict[str, Any] = {"image": row.image, "width": 50, "alignment": "center"} if row.image else {"text": ""}
    return [
        {"text": str(row.index), "alignment": "center"},
        image_cell,
        {"stack": name_stack},
        {"text": row.unit, "alignment": "center"},
        {"text": row.measure, "alignment": "right"},
        {"text": row.quantity, "alignment": "right"},
        {"stack": price_stack, "alignment": "right"},
        {"text": row.line_total, "alignment": "right"},
        {"text": row.notes, "style": "itemDetails"},
    ]


def _doc_category_row(row: CategoryRowView) -> List[Dict[str, Any]]:
    return [
        {"text": row.label, "style": "categoryCell", "alignment": "center"},
        {"text": row.name, "colSpan": 6, "style": "categoryCell"},
        {}, {}, {}, {}, {},
        {"text": row.total, "style": "categoryCell", "alignment": "right"},
        {"text": "", "style": "categoryCell"},
    ]


def render_doc_definition(document: QuoteDocument) -> Dict[str, Any]:
    """
    Declarative page description for a layout engine. Values are plain JSON
    (strings, numbers, lists, dicts), so the tree can be sent over HTTP.
    """
    header = document.header
    company_stack = [
        {"text": header.company_name, "style": "companyName"},
        {"text": header.address, "style": "companyDetails"},
        {"text": header.contact_line, "style": "companyDetails"},
    ]
    if header.tax_line:
        company_stack.append({"text": header.tax_line, "style": "companyDetails"})
    logo = {"image": header.logo, "width": 70, "alignment": "right"} if header.logo else {"text": "", "width": 70}

    table_body: List[List[Dict[str, Any]]] = [
        [{"text": label, "style": "tableHeader", "alignment": align} for label, align in document.columns]
    ]
    for row in document.rows:
        if isinstance(row, CategoryRowView):
            table_body.append(_doc_category_row(row))
        else:
            table_body.append(_doc_item_row(row))

    totals_body = []
    for line in document.totals:
        if line.emphasis:
            totals_body.append([
                {"text": line.label, "style": "grandTotalLabel"},
                {"text": line.value, "style": "grandTotalValue", "alignment": "right"},
            ])
        else:
            totals_body.append([line.label, {"text": line.value, "alignment": "right"}])

    content: List[Dict[str, Any]] = [
        {"text": document.title, "style": "title"},
        {
            "margin": [0, 20, 0, 20],
            "table": {
                "widths": ["50%", "50%"],
                "body": [[
                    {"stack": [
                        {"text": [{"text": "Khách hàng: ", "bold": True}, document.customer.name]},
                        {"text": [{"text": "Địa chỉ: ", "bold": True}, document.customer.address]},
                    ], "style": "customerInfo"},
                    {"stack": [
                        {"text": [{"text": "Số báo giá: ", "bold": True}, document.customer.quote_id]},
                        {"text": [{"text": "Ngày: ", "bold": True}, document.customer.date]},
                    ], "style": "customerInfo"},
                ]],
            },
            "layout": "lightHorizontalLines",
        },
        {
            "table": {
                "headerRows": 1,
                "widths": ["auto", "auto", "*", "auto", "auto", "auto", "auto", "auto", "auto"],
                "body": table_body,
            },
        },
        {
            "table": {"widths": ["*", "auto"], "body": totals_body},
            "layout": "noBorders",
            "margin": [0, 20, 0, 0],
        },
    ]

    block = document.installments
    if block is not None:
        inst_body: List[List[Any]] = [[{"text": label, "style": "tableHeader"} for label in INSTALLMENT_COLUMNS]]
        for r in block.rows:
            inst_body.append([str(r.index), r.name, {"text": r.value, "alignment": "right"}, {"text": r.amount, "alignment": "right"}])
        inst_body.append([{"text": "TỔNG CỘNG CÁC ĐỢT", "colSpan": 3, "bold": True, "alignment": "right"}, {}, {},
                          {"text": block.allocated, "bold": True, "alignment": "right"}])
        inst_body.append([{"text": "CÒN LẠI", "colSpan": 3, "bold": True, "alignment": "right"}, {}, {},
                          {"text": block.remaining, "bold": True, "alignment": "right"}])
        content.append({"text": "LỊCH THANH TOÁN", "style": "sectionHeader", "margin": [0, 20, 0, 5]})
        content.append({"table": {"headerRows": 1, "widths": ["auto", "*", "auto", "auto"], "body": inst_body}})

    notes_stack: List[Dict[str, Any]] = []
    if document.notes.bank_lines:
        notes_stack.append({"text": "THÔNG TIN CHUYỂN KHOẢN", "style": "sectionHeader"})
        notes_stack.append({"text": "\n".join(document.notes.bank_lines), "style": "notes"})
    if document.notes.notes:
        notes_stack.append({"text": "GHI CHÚ CHUNG", "style": "sectionHeader", "margin": [0, 15, 0, 0]})
        notes_stack.append({"text": document.notes.notes, "style": "notes"})
    if notes_stack:
        content.append({"margin": [0, 40, 0, 0], "stack": notes_stack})

    content.append({
        "alignment": "right",
        "margin": [0, 30, 0, 0],
        "stack": [
            {"text": document.signature.place_date},
            {"text": document.signature.role, "bold": True, "margin": [0, 5, 0, 0]},
            {"text": document.signature.creator, "margin": [0, 40, 0, 0]},
        ],
    })

    return {
        "info": {"title": f"{document.title} - {document.quote_id}"},
        "pageSize": "A4",
        "pageMargins": [40, 60, 40, 60],
        "header": {
            "columns": [{"stack": company_stack, "width": "*"}, logo],
            "margin": [40, 20, 40, 10],
        },
        "footerText": " - ".join(document.footer_lines),
        "content": content,
        "styles": DOC_STYLES,
        "defaultStyle": {"fontSize": 9},
    }


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def compose_quote_document(payload: Optional[Mapping[str, Any]]) -> QuoteDocument:
    return build_document(normalize_quote_data(payload))


def compose_quote_html(payload: Optional[Mapping[str, Any]]) -> str:
    start = time.perf_counter()
    html = render_html(compose_quote_document(payload))
    tracker.record_render_complete("html", round((time.perf_counter() - start) * 1000, 2))
    return html


def compose_quote_doc_definition(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    start = time.perf_counter()
    definition = render_doc_definition(compose_quote_document(payload))
    tracker.record_render_complete("doc_definition", round((time.perf_counter() - start) * 1000, 2))
    return definition
