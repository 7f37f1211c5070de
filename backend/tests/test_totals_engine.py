"""
test_totals_engine.py — Unit tests for quote totals, installments and margin.

Tests cover:
  - Subtotal, percent / amount order discount, VAT on the discounted subtotal
  - Apply flags (discount or tax ignored when off), negative grand totals
  - settings_from_quote defaults for saved quotes vs rendering payloads
  - Installment schedules: percent and fixed tranches, remaining snap to 0
  - Tranche amounts plus remaining always add back up to the grand total
  - Gross margin estimate from costing sheets matched by product name
"""

import pytest

from app.services.pricing_engine import DiscountType
from app.services.totals_engine import (
    QuoteSettings,
    compute_installments,
    compute_totals,
    estimate_gross_margin,
    quote_grand_total,
    settings_from_quote,
    tranche_amount,
)


def _lines(*totals):
    return [{"lineTotal": t} for t in totals]


# ===========================================================================
# Class 1: Totals
# ===========================================================================

class TestComputeTotals:

    def test_percent_discount_then_tax(self):
        """
        subtotal 10 000 000, discount 5% = 500 000 → 9 500 000,
        VAT 10% = 950 000 → grand total 10 450 000.
        """
        settings = QuoteSettings(apply_discount=True, discount_value=5, discount_type=DiscountType.PERCENT,
                                 apply_tax=True, tax_percent=10)
        t = compute_totals(_lines(4_000_000, 6_000_000), settings)
        assert t.sub_total == 10_000_000
        assert t.discount_amount == 500_000
        assert t.sub_total_after_discount == 9_500_000
        assert t.tax_amount == 950_000
        assert t.grand_total == 10_450_000

    def test_amount_discount(self, sample_items):
        """12 700 000 − 700 000 = 12 000 000; VAT 8% = 960 000 → 12 960 000."""
        settings = QuoteSettings(apply_discount=True, discount_value=700_000, discount_type=DiscountType.AMOUNT,
                                 apply_tax=True, tax_percent=8)
        t = compute_totals(sample_items, settings)
        assert abs(t.grand_total - 12_960_000) < 1e-4

    def test_flags_off_ignore_values(self):
        settings = QuoteSettings(apply_discount=False, discount_value=50, apply_tax=False, tax_percent=10)
        t = compute_totals(_lines(1000), settings)
        assert t.discount_amount == 0
        assert t.tax_amount == 0
        assert t.grand_total == 1000

    def test_zero_discount_value_applies_nothing(self):
        t = compute_totals(_lines(1000), QuoteSettings(apply_discount=True, discount_value=0))
        assert t.discount_amount == 0

    def test_over_discount_goes_negative(self):
        settings = QuoteSettings(apply_discount=True, discount_value=1500, discount_type=DiscountType.AMOUNT)
        t = compute_totals(_lines(1000), settings)
        assert t.grand_total == -500
        assert t.is_negative

    def test_no_items(self):
        t = compute_totals([], QuoteSettings(apply_tax=True, tax_percent=10))
        assert t.grand_total == 0

    def test_to_dict_uses_camel_case(self):
        d = compute_totals(_lines(100), QuoteSettings()).to_dict()
        assert d["subTotal"] == 100
        assert d["grandTotal"] == 100
        assert d["discountType"] == "percent"


class TestSettingsFromQuote:

    def test_saved_quote_without_flags_has_both_applied(self):
        s = settings_from_quote({"discountValue": 10, "taxPercent": 8})
        assert s.apply_discount and s.apply_tax

    def test_render_payload_without_flags_has_both_off(self):
        s = settings_from_quote({"discountValue": 10, "taxPercent": 8}, default_flags=False)
        assert not s.apply_discount and not s.apply_tax

    def test_explicit_flags_win(self):
        s = settings_from_quote({"applyDiscount": False, "applyTax": True})
        assert not s.apply_discount
        assert s.apply_tax

    def test_quote_grand_total_of_saved_quote(self):
        """Legacy quote: 1000 − 10% = 900, + 10% VAT = 990."""
        quote = {"items": _lines(1000), "discountValue": 10, "discountType": "percent", "taxPercent": 10}
        assert abs(quote_grand_total(quote) - 990) < 1e-9

    def test_quote_grand_total_empty(self):
        assert quote_grand_total({"items": []}) == 0.0
        assert quote_grand_total(None) == 0.0


# ===========================================================================
# Class 2: Installments
# ===========================================================================

class TestInstallments:

    def test_percent_tranches_fully_allocated(self):
        """30% + 70% of 10 000 000 → 3 000 000 + 7 000 000, remaining 0."""
        s = compute_installments(10_000_000, [
            {"name": "Đặt cọc", "value": 30, "type": "percent"},
            {"name": "Bàn giao", "value": 70, "type": "percent"},
        ])
        assert [t.amount for t in s.tranches] == [3_000_000, 7_000_000]
        assert s.total_percent == 100
        assert s.remaining == 0.0
        assert s.fully_allocated
        assert s.visible

    def test_mixed_tranches(self):
        """20% of 5 000 000 = 1 000 000, plus fixed 1 500 000 → remaining 2 500 000."""
        s = compute_installments(5_000_000, [
            {"name": "Đợt 1", "value": 20, "type": "percent"},
            {"name": "Đợt 2", "value": 1_500_000, "type": "amount"},
        ])
        assert s.total_percent == 20
        assert s.total_allocated == 2_500_000
        assert s.remaining == 2_500_000
        assert [t.index for t in s.tranches] == [1, 2]

    def test_remaining_snaps_to_zero(self):
        """Thirds of an awkward total leave float dust that must read as 0."""
        third = 100 / 3
        s = compute_installments(1_234_567.89, [{"value": third, "type": "percent"}] * 3)
        assert s.remaining == 0.0

    def test_over_allocation_is_negative(self):
        s = compute_installments(1000, [{"value": 1200, "type": "amount"}])
        assert s.remaining == -200
        assert not s.fully_allocated

    def test_non_positive_values_allocate_nothing(self):
        assert tranche_amount(1000, 0, DiscountType.PERCENT) == 0.0
        assert tranche_amount(1000, -5, DiscountType.AMOUNT) == 0.0

    def test_disabled_schedule(self):
        s = compute_installments(1000, [{"value": 50, "type": "percent"}], enabled=False)
        assert not s.visible
        assert s.tranches == []
        assert s.remaining == 0.0

    def test_enabled_without_tranches(self):
        s = compute_installments(1000, [])
        assert not s.visible
        assert s.remaining == 1000

    def test_to_dict(self):
        d = compute_installments(100, [{"name": "A", "value": 100, "type": "percent"}]).to_dict()
        assert d["fullyAllocated"] is True
        assert d["tranches"][0]["type"] == "percent"

    @pytest.mark.parametrize("grand_total, tranches", [
        (990_000, [{"value": 50, "type": "percent"}, {"value": 50, "type": "percent"}]),
        (1_234_567.89, [{"value": 100 / 3, "type": "percent"}] * 3),
        (7_654_321, [{"value": 17.5, "type": "percent"}, {"value": 1_000_000, "type": "amount"}]),
        (2_000_000, [{"value": 80, "type": "percent"}, {"value": 750_000, "type": "amount"}]),
        (-500_000, [{"value": 40, "type": "percent"}]),
    ])
    def test_tranches_plus_remaining_equal_grand_total(self, grand_total, tranches):
        """Covers partial (17.5% + fixed), exact thirds and over-allocated (80% + 750 000) schedules."""
        s = compute_installments(grand_total, tranches)
        assert abs(sum(t.amount for t in s.tranches) + s.remaining - grand_total) < 1e-6


# ===========================================================================
# Class 3: Margin
# ===========================================================================

class TestGrossMargin:

    def test_matched_by_trimmed_case_insensitive_name(self):
        """COGS 2 × 300 000 = 600 000 on revenue 1 000 000 → margin 40%."""
        items = [{"name": " tủ áo ", "quantity": 2}, {"name": "Không có", "quantity": 5}]
        sheets = [{"productName": "Tủ Áo", "unitCost": 300_000}]
        m = estimate_gross_margin(items, sheets, 1_000_000)
        assert m.matched_items == 1
        assert m.total_cogs == 600_000
        assert m.gross_profit == 400_000
        assert abs(m.gross_margin_pct - 40.0) < 1e-9

    def test_first_sheet_wins_on_duplicate_names(self):
        sheets = [{"productName": "Bàn", "unitCost": 100}, {"productName": "bàn", "unitCost": 999}]
        m = estimate_gross_margin([{"name": "Bàn", "quantity": 1}], sheets, 1000)
        assert m.total_cogs == 100

    def test_zero_revenue_margin_is_zero(self):
        m = estimate_gross_margin([], [], 0)
        assert m.gross_margin_pct == 0.0
        assert m.to_dict()["matchedItems"] == 0
