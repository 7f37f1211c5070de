"""
Quote Totals Engine — order-level money figures for a quote.

  subTotal              = Σ lineTotal
  discountAmount        = percent ? subTotal × v / 100 : v     (only when applied and v > 0)
  subTotalAfterDiscount = subTotal − discountAmount
  taxAmount             = subTotalAfterDiscount × taxPercent / 100  (only when applied)
  grandTotal            = subTotalAfterDiscount + taxAmount

Installment tranches are computed on the grand total. Amounts stay exact;
``remaining`` is snapped to 0.0 when it is within ``REMAINING_EPSILON`` so a
schedule of percentages that adds up to 100 reports as fully allocated.
Negative totals (over-discounting) are reported as-is.
"""
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from app.services.formatting import to_number
from app.services.pricing_engine import DiscountType

REMAINING_EPSILON = 1e-6


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuoteSettings:
    apply_discount: bool = False
    discount_value: float = 0.0
    discount_type: DiscountType = DiscountType.PERCENT
    apply_tax: bool = False
    tax_percent: float = 0.0


@dataclass(frozen=True)
class QuoteTotals:
    sub_total: float
    discount_amount: float
    sub_total_after_discount: float
    tax_amount: float
    grand_total: float
    settings: QuoteSettings

    @property
    def is_negative(self) -> bool:
        return self.grand_total < 0

    def to_dict(self) -> dict:
        return {
            "subTotal": self.sub_total,
            "discountAmount": self.discount_amount,
            "subTotalAfterDiscount": self.sub_total_after_discount,
            "taxAmount": self.tax_amount,
            "grandTotal": self.grand_total,
            "applyDiscount": self.settings.apply_discount,
            "discountValue": self.settings.discount_value,
            "discountType": self.settings.discount_type.value,
            "applyTax": self.settings.apply_tax,
            "taxPercent": self.settings.tax_percent,
        }


@dataclass(frozen=True)
class InstallmentTranche:
    index: int
    name: str
    value: float
    type: DiscountType
    amount: float


@dataclass(frozen=True)
class InstallmentSchedule:
    enabled: bool
    tranches: List[InstallmentTranche] = field(default_factory=list)
    total_percent: float = 0.0
    total_allocated: float = 0.0
    remaining: float = 0.0

    @property
    def fully_allocated(self) -> bool:
        return self.remaining == 0.0

    @property
    def visible(self) -> bool:
        return self.enabled and bool(self.tranches)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "tranches": [
                {"index": t.index, "name": t.name, "value": t.value, "type": t.type.value, "amount": t.amount}
                for t in self.tranches
            ],
            "totalPercent": self.total_percent,
            "totalAllocated": self.total_allocated,
            "remaining": self.remaining,
            "fullyAllocated": self.fully_allocated,
        }


@dataclass(frozen=True)
class MarginEstimate:
    total_cogs: float
    gross_profit: float
    gross_margin_pct: float
    matched_items: int

    def to_dict(self) -> dict:
        return {
            "totalCogs": self.total_cogs,
            "grossProfit": self.gross_profit,
            "grossMarginPct": self.gross_margin_pct,
            "matchedItems": self.matched_items,
        }


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------

def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def settings_from_quote(quote: Mapping[str, Any], default_flags: bool = True) -> QuoteSettings:
    """
    Read discount/tax settings from a stored quote. Saved quotes written
    before the apply flags existed had both applied, hence the default.
    """
    return QuoteSettings(
        apply_discount=_flag(quote.get("applyDiscount"), default_flags),
        discount_value=to_number(quote.get("discountValue")),
        discount_type=DiscountType.parse(quote.get("discountType")),
        apply_tax=_flag(quote.get("applyTax"), default_flags),
        tax_percent=to_number(quote.get("taxPercent")),
    )


def compute_totals(items: Iterable[Mapping[str, Any]], settings: QuoteSettings) -> QuoteTotals:
    sub_total = sum(to_number(item.get("lineTotal")) for item in items)

    discount_amount = 0.0
    if settings.apply_discount and settings.discount_value > 0:
        if settings.discount_type is DiscountType.PERCENT:
            discount_amount = sub_total * settings.discount_value / 100.0
        else:
            discount_amount = settings.discount_value

    after_discount = sub_total - discount_amount
    tax_amount = after_discount * settings.tax_percent / 100.0 if settings.apply_tax else 0.0

    return QuoteTotals(
        sub_total=sub_total,
        discount_amount=discount_amount,
        sub_total_after_discount=after_discount,
        tax_amount=tax_amount,
        grand_total=after_discount + tax_amount,
        settings=settings,
    )


def quote_grand_total(quote: Optional[Mapping[str, Any]]) -> float:
    """Grand total of a stored quote, as shown in saved-quote listings."""
    if not quote or not quote.get("items"):
        return 0.0
    return compute_totals(quote["items"], settings_from_quote(quote)).grand_total


# ---------------------------------------------------------------------------
# Installments
# ---------------------------------------------------------------------------

def tranche_amount(grand_total: float, value: float, kind: DiscountType) -> float:
    if value <= 0:
        return 0.0
    if kind is DiscountType.PERCENT:
        return grand_total * value / 100.0
    return value


def compute_installments(
    grand_total: float,
    installments: Sequence[Mapping[str, Any]],
    enabled: bool = True,
) -> InstallmentSchedule:
    if not enabled or not installments:
        return InstallmentSchedule(enabled=bool(enabled), remaining=grand_total if enabled else 0.0)

    tranches: List[InstallmentTranche] = []
    total_percent = 0.0
    total_allocated = 0.0
    for position, raw in enumerate(installments, start=1):
        value = to_number(raw.get("value"))
        kind = DiscountType.parse(raw.get("type"))
        amount = tranche_amount(grand_total, value, kind)
        if kind is DiscountType.PERCENT:
            total_percent += value
        total_allocated += amount
        tranches.append(InstallmentTranche(
            index=position,
            name=str(raw.get("name") or ""),
            value=value,
            type=kind,
            amount=amount,
        ))

    remaining = grand_total - total_allocated
    if abs(remaining) < REMAINING_EPSILON:
        remaining = 0.0

    return InstallmentSchedule(
        enabled=True,
        tranches=tranches,
        total_percent=total_percent,
        total_allocated=total_allocated,
        remaining=remaining,
    )


# ---------------------------------------------------------------------------
# Margin
# ---------------------------------------------------------------------------

def estimate_gross_margin(
    items: Iterable[Mapping[str, Any]],
    costing_sheets: Sequence[Mapping[str, Any]],
    grand_total: float,
) -> MarginEstimate:
    """
    Cross-reference quote lines with costing sheets by product name
    (case-insensitive) to estimate cost of goods sold and gross margin.
    """
    unit_costs = {}
    for sheet in costing_sheets:
        key = str(sheet.get("productName") or "").strip().lower()
        if key and key not in unit_costs:
            unit_costs[key] = to_number(sheet.get("unitCost"))

    total_cogs = 0.0
    matched = 0
    for item in items:
        key = str(item.get("name") or "").strip().lower()
        if key in unit_costs:
            total_cogs += unit_costs[key] * to_number(item.get("quantity"))
            matched += 1

    gross_profit = grand_total - total_cogs
    margin = gross_profit / grand_total * 100.0 if grand_total > 0 else 0.0
    return MarginEstimate(
        total_cogs=total_cogs,
        gross_profit=gross_profit,
        gross_margin_pct=margin,
        matched_items=matched,
    )
