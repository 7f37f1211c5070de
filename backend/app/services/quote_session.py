"""
QuoteSession — the working quote a user is editing.

Holds the draft header (customer, date, internal id), its line items, the
order-level discount/tax settings and the installment plan, plus the
single "editing" slot that switches the item form between add and edit.
The session never talks to storage; routes load it from and write it back
to the user's draft document with ``from_draft`` / ``to_draft``.
"""
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from app.services.catalog_engine import find_category_by_name
from app.services.formatting import (
    generate_simple_quote_id,
    generate_unique_id,
    parse_date,
    to_number,
)
from app.services.pricing_engine import DiscountType, apply_pricing, compute_line_item
from app.services.totals_engine import (
    InstallmentSchedule,
    MarginEstimate,
    QuoteSettings,
    QuoteTotals,
    compute_installments,
    compute_totals,
    estimate_gross_margin,
    quote_grand_total,
    settings_from_quote,
)

ITEM_ID_PREFIX = "qitem"
COSTING_PRODUCT_UNIT = "bộ"
SUGGESTION_LIMIT = 10
_ITEM_FIELDS = ("name", "spec", "unit", "notes")


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def label(self) -> str:
        return QUOTE_STATUS_LABELS[self]


QUOTE_STATUS_LABELS = {
    QuoteStatus.DRAFT: "Soạn thảo",
    QuoteStatus.SENT: "Đã gửi",
    QuoteStatus.ACCEPTED: "Đã chấp nhận",
    QuoteStatus.REJECTED: "Đã từ chối",
    QuoteStatus.EXPIRED: "Đã hết hạn",
}


@dataclass
class ActionResult:
    ok: bool
    message: str = ""
    item: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, message: str = "", item: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(True, message, item)

    @classmethod
    def failure(cls, message: str) -> "ActionResult":
        return cls(False, message)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(day: Optional[date]) -> str:
    return (day or date.today()).isoformat()


def validate_item_form(form: Mapping[str, Any]) -> Optional[str]:
    if not str(form.get("name") or "").strip():
        return "Tên hạng mục không được để trống."
    if to_number(form.get("originalPrice")) < 0:
        return "Đơn giá không được âm."
    discount = to_number(form.get("itemDiscountValue"))
    if discount < 0:
        return "Giảm giá không được âm."
    if DiscountType.parse(form.get("itemDiscountType")) is DiscountType.PERCENT and discount > 100:
        return "Giảm giá theo % phải từ 0 đến 100."
    if to_number(form.get("quantity")) < 0:
        return "Số lượng không được âm."
    return None


def item_from_form(form: Mapping[str, Any], category_id: Optional[str] = None) -> Dict[str, Any]:
    """Stored line item (without id) built from raw form values and priced."""
    item = {key: str(form.get(key) or "").strip() for key in _ITEM_FIELDS}
    item.update({
        "originalPrice": form.get("originalPrice"),
        "itemDiscountValue": form.get("itemDiscountValue"),
        "itemDiscountType": form.get("itemDiscountType"),
        "calcType": form.get("calcType"),
        "length": form.get("length"),
        "height": form.get("height"),
        "depth": form.get("depth"),
        "quantity": form.get("quantity"),
        "imageDataUrl": form.get("imageDataUrl") or None,
        "mainCategoryId": category_id if category_id is not None else (form.get("mainCategoryId") or None),
    })
    return apply_pricing(item)


@dataclass
class QuoteSession:
    quote_id: str = ""
    customer_name: str = ""
    customer_address: str = ""
    quote_date: str = ""
    items: List[Dict[str, Any]] = field(default_factory=list)
    apply_discount: bool = False
    discount_value: float = 0.0
    discount_type: DiscountType = DiscountType.PERCENT
    apply_tax: bool = False
    tax_percent: float = 0.0
    apply_installments: bool = False
    installments: List[Dict[str, Any]] = field(default_factory=list)
    editing_item_id: Optional[str] = None
    id_factory: Callable[[str], str] = field(default=generate_unique_id, repr=False, compare=False)

    @classmethod
    def new(cls, today: Optional[date] = None, **kwargs) -> "QuoteSession":
        day = _iso(today)
        return cls(quote_id=generate_simple_quote_id("", day), quote_date=day, **kwargs)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def find_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        for item in self.items:
            if item.get("id") == item_id:
                return item
        return None

    @property
    def editing(self) -> bool:
        return self.editing_item_id is not None

    def add_or_update_item(self, form: Mapping[str, Any], category_id: Optional[str] = None) -> ActionResult:
        """
        Add a new line, or replace the line being edited. In edit mode the
        item keeps its id, and its image when the form carries none.
        """
        message = validate_item_form(form)
        if message:
            return ActionResult.failure(message)

        data = item_from_form(form, category_id)

        if self.editing_item_id is not None:
            for position, existing in enumerate(self.items):
                if existing.get("id") == self.editing_item_id:
                    if not data.get("imageDataUrl"):
                        data["imageDataUrl"] = existing.get("imageDataUrl")
                    merged = dict(existing)
                    merged.update(data)
                    self.items[position] = merged
                    self.editing_item_id = None
                    return ActionResult.success("Đã cập nhật hạng mục.", merged)
            self.editing_item_id = None
            return ActionResult.failure("Không tìm thấy hạng mục đang sửa.")

        data["id"] = self.id_factory(ITEM_ID_PREFIX)
        self.items.append(data)
        return ActionResult.success("Đã thêm hạng mục.", data)

    def start_edit(self, item_id: str) -> Optional[Dict[str, Any]]:
        item = self.find_item(item_id)
        if item is not None:
            self.editing_item_id = item_id
        return item

    def cancel_edit(self) -> None:
        self.editing_item_id = None

    def delete_item(self, item_id: str) -> bool:
        if self.editing_item_id == item_id:
            self.editing_item_id = None
        before = len(self.items)
        self.items = [i for i in self.items if i.get("id") != item_id]
        return len(self.items) < before

    @staticmethod
    def item_preview(form: Mapping[str, Any]) -> float:
        """Line total the form would produce right now."""
        return compute_line_item(form).line_total

    # ------------------------------------------------------------------
    # Installments
    # ------------------------------------------------------------------

    def add_installment(self) -> Dict[str, Any]:
        tranche = {
            "name": f"Đợt {len(self.installments) + 1}",
            "value": 0.0,
            "type": DiscountType.PERCENT.value,
        }
        self.installments.append(tranche)
        return tranche

    def remove_installment(self, index: int) -> bool:
        if 0 <= index < len(self.installments):
            del self.installments[index]
            return True
        return False

    def update_installment(self, index: int, field_name: str, value: Any) -> bool:
        if not 0 <= index < len(self.installments):
            return False
        if field_name == "value":
            self.installments[index]["value"] = to_number(value)
        elif field_name == "type":
            self.installments[index]["type"] = DiscountType.parse(value).value
        elif field_name == "name":
            self.installments[index]["name"] = str(value or "")
        else:
            return False
        return True

    # ------------------------------------------------------------------
    # Figures
    # ------------------------------------------------------------------

    @property
    def settings(self) -> QuoteSettings:
        return QuoteSettings(
            apply_discount=self.apply_discount,
            discount_value=to_number(self.discount_value),
            discount_type=self.discount_type,
            apply_tax=self.apply_tax,
            tax_percent=to_number(self.tax_percent),
        )

    def totals(self) -> QuoteTotals:
        return compute_totals(self.items, self.settings)

    def installment_schedule(self) -> InstallmentSchedule:
        return compute_installments(self.totals().grand_total, self.installments, self.apply_installments)

    def margin_estimate(self, costing_sheets: Sequence[Mapping[str, Any]]) -> MarginEstimate:
        return estimate_gross_margin(self.items, costing_sheets, self.totals().grand_total)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _quote_fields(self) -> Dict[str, Any]:
        return {
            "customerName": self.customer_name,
            "customerAddress": self.customer_address,
            "quoteDate": self.quote_date,
            "items": [dict(i) for i in self.items],
            "applyDiscount": self.apply_discount,
            "discountValue": to_number(self.discount_value),
            "discountType": self.discount_type.value,
            "applyTax": self.apply_tax,
            "taxPercent": to_number(self.tax_percent),
            "applyInstallments": self.apply_installments,
            "installments": [dict(t) for t in self.installments],
        }

    def to_draft(self) -> Dict[str, Any]:
        draft = {"id": self.quote_id}
        draft.update(self._quote_fields())
        draft["editingItemId"] = self.editing_item_id
        draft["timestamp"] = _now_ms()
        return draft

    @classmethod
    def from_draft(cls, doc: Optional[Mapping[str, Any]], **kwargs) -> "QuoteSession":
        """
        Rebuild a session from the stored draft or a saved quote. Items are
        re-priced. Missing discount and tax flags read as on, matching
        quotes saved before the flags existed.
        """
        if not doc:
            return cls.new(**kwargs)
        items = [apply_pricing(i) for i in doc.get("items") or [] if isinstance(i, Mapping)]
        editing = doc.get("editingItemId")
        flags = settings_from_quote(doc)
        return cls(
            quote_id=str(doc.get("id") or ""),
            customer_name=str(doc.get("customerName") or ""),
            customer_address=str(doc.get("customerAddress") or ""),
            quote_date=str(doc.get("quoteDate") or ""),
            items=items,
            apply_discount=flags.apply_discount,
            discount_value=to_number(doc.get("discountValue")),
            discount_type=DiscountType.parse(doc.get("discountType")),
            apply_tax=flags.apply_tax,
            tax_percent=to_number(doc.get("taxPercent")),
            apply_installments=bool(doc.get("applyInstallments")),
            installments=[dict(t) for t in doc.get("installments") or [] if isinstance(t, Mapping)],
            editing_item_id=editing if any(i.get("id") == editing for i in items) else None,
            **kwargs,
        )

    def suggested_save_id(self) -> str:
        internal = self.quote_id or generate_simple_quote_id(self.customer_name, self.quote_date)
        return f"{self.customer_name} - {internal}" if self.customer_name else internal

    def snapshot(self, quote_id: str) -> Dict[str, Any]:
        """A saved quote: full copies of the items, status draft."""
        quote = {"id": quote_id}
        quote.update(self._quote_fields())
        quote["status"] = QuoteStatus.DRAFT.value
        quote["timestamp"] = _now_ms()
        return quote

    def to_template(self, name: str) -> Dict[str, Any]:
        return {
            "name": name.strip(),
            "items": [dict(i) for i in self.items],
            "applyDiscount": self.apply_discount,
            "discountValue": to_number(self.discount_value),
            "discountType": self.discount_type.value,
            "applyTax": self.apply_tax,
            "taxPercent": to_number(self.tax_percent),
            "createdAt": _now_ms(),
        }

    def template_rejection(self, name: Optional[str]) -> Optional[str]:
        if not self.items:
            return "Báo giá hiện tại trống, không thể lưu làm mẫu."
        if not (name or "").strip():
            return "Tên mẫu không hợp lệ."
        return None

    def apply_template(self, template: Mapping[str, Any]) -> None:
        """Replace items and discount/tax with the template's; customer data is kept."""
        self.items = [
            dict(apply_pricing(i), id=self.id_factory(ITEM_ID_PREFIX))
            for i in template.get("items") or []
            if isinstance(i, Mapping)
        ]
        self.editing_item_id = None
        self.apply_discount = bool(template.get("applyDiscount"))
        self.discount_value = to_number(template.get("discountValue"))
        self.discount_type = DiscountType.parse(template.get("discountType"))
        self.apply_tax = bool(template.get("applyTax"))
        self.tax_percent = to_number(template.get("taxPercent"))

    def rendering_payload(
        self,
        company_settings: Optional[Mapping[str, Any]],
        categories: Sequence[Mapping[str, Any]],
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Input for the document composer (HTML, doc-definition or PDF)."""
        fields = self._quote_fields()
        return {
            "companySettings": dict(company_settings or {}),
            "customerInfo": {
                "name": self.customer_name,
                "address": self.customer_address,
                "date": self.quote_date,
            },
            "quoteId": generate_simple_quote_id(self.customer_name, self.quote_date, for_pdf=True),
            "items": fields["items"],
            "mainCategories": [dict(c) for c in categories],
            "applyDiscount": fields["applyDiscount"],
            "discountValue": fields["discountValue"],
            "discountType": fields["discountType"],
            "applyTax": fields["applyTax"],
            "taxPercent": fields["taxPercent"],
            "applyInstallments": fields["applyInstallments"],
            "installments": fields["installments"],
            "today": _iso(today),
        }


# ---------------------------------------------------------------------------
# Saved quotes
# ---------------------------------------------------------------------------

def validate_status(status: Any) -> Optional[QuoteStatus]:
    try:
        return QuoteStatus(status)
    except ValueError:
        return None


def status_label(status: Any) -> str:
    parsed = validate_status(status or QuoteStatus.DRAFT.value)
    return parsed.label if parsed else "Không xác định"


def duplicate_quote(quote: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    copy = dict(quote)
    copy["id"] = f"(Bản sao) {quote.get('id')}"
    copy["status"] = QuoteStatus.DRAFT.value
    copy["timestamp"] = _now_ms()
    copy["quoteDate"] = _iso(today)
    return copy


def _quote_day(quote: Mapping[str, Any]) -> Optional[date]:
    return parse_date(quote.get("quoteDate")) or parse_date(quote.get("timestamp"))


def filter_saved_quotes(
    quotes: Sequence[Mapping[str, Any]],
    search: str = "",
    status: Optional[str] = None,
    start: Any = None,
    end: Any = None,
    min_total: Any = None,
    max_total: Any = None,
) -> List[Mapping[str, Any]]:
    """
    Search matches the quote id or customer name. Date bounds are inclusive
    whole days; a quote without a date fails any date bound. A status of
    None or "all" matches everything, a missing stored status reads as draft.
    """
    term = (search or "").strip().lower()
    start_day = parse_date(start) if start not in (None, "") else None
    end_day = parse_date(end) if end not in (None, "") else None
    low = to_number(min_total) if min_total not in (None, "") else None
    high = to_number(max_total) if max_total not in (None, "") else None

    result = []
    for quote in quotes:
        if term:
            qid = str(quote.get("id") or "").lower()
            customer = str(quote.get("customerName") or "").lower()
            if term not in qid and term not in customer:
                continue
        if start_day or end_day:
            day = _quote_day(quote)
            if day is None or (start_day and day < start_day) or (end_day and day > end_day):
                continue
        if status and status != "all" and (quote.get("status") or QuoteStatus.DRAFT.value) != status:
            continue
        if low is not None or high is not None:
            total = quote_grand_total(quote)
            if (low is not None and total < low) or (high is not None and total > high):
                continue
        result.append(quote)
    return result


# ---------------------------------------------------------------------------
# Item name suggestions & prefill
# ---------------------------------------------------------------------------

def suggest_item_names(
    text: str,
    catalog: Sequence[Mapping[str, Any]],
    costing_sheets: Sequence[Mapping[str, Any]],
    limit: int = SUGGESTION_LIMIT,
) -> List[Dict[str, Any]]:
    """
    Catalog entries first, then costing sheets; a name already offered is
    not repeated (case-insensitive). Empty text matches everything.
    """
    needle = (text or "").lower()
    seen = set()
    suggestions = []

    for entry in catalog:
        name = str(entry.get("name") or "")
        key = name.lower()
        if name and needle in key and key not in seen:
            suggestions.append({
                "id": entry.get("id"), "name": name, "source": "catalog",
                "unit": entry.get("unit") or "", "price": to_number(entry.get("price")),
            })
            seen.add(key)

    for sheet in costing_sheets:
        name = str(sheet.get("productName") or "")
        key = name.lower()
        if name and needle in key and key not in seen:
            suggestions.append({
                "id": sheet.get("id"), "name": name, "source": "costing",
                "unit": COSTING_PRODUCT_UNIT, "price": to_number(sheet.get("unitCost")),
            })
            seen.add(key)

    suggestions.sort(key=lambda s: s["name"].casefold())
    return suggestions[:limit]


def prefill_from_catalog(entry: Mapping[str, Any], categories: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    category = next((c for c in categories if entry.get("mainCategoryId") and c.get("id") == entry.get("mainCategoryId")), None)
    return {
        "name": entry.get("name") or "",
        "spec": entry.get("spec") or "",
        "unit": entry.get("unit") or "",
        "originalPrice": to_number(entry.get("price")),
        "mainCategoryId": category.get("id") if category else None,
        "mainCategoryName": category.get("name") if category else "",
    }


def prefill_from_costing(sheet: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": sheet.get("productName") or "",
        "spec": "",
        "unit": COSTING_PRODUCT_UNIT,
        "originalPrice": to_number(sheet.get("unitCost")),
        "mainCategoryId": None,
        "mainCategoryName": "",
    }


def resolve_category_id(categories: Sequence[Mapping[str, Any]], name: Optional[str]) -> Optional[str]:
    """Id of an existing category by name, or None when it doesn't exist yet."""
    found = find_category_by_name(categories, name or "")
    return found.get("id") if found else None
