"""
test_pricing_engine.py — Unit tests for quote line pricing.

Tests cover:
  - Unit, length, area and volume calc types (mm inputs, m / m² / m³ pricing)
  - Unit totals ignore dimensions; area totals are linear in length
  - Percent and fixed-amount item discounts, negative unit prices
  - Display measure (only for dimensioned items with a non-zero measure)
  - Missing dimensions / quantities counting as zero
  - apply_pricing: derived fields rewritten, stored lineTotal ignored
"""

from app.services.pricing_engine import (
    CalcType,
    DiscountType,
    apply_pricing,
    base_measure,
    compute_line_item,
    raw_measure,
)


# ===========================================================================
# Class 1: Calc types
# ===========================================================================

class TestCalcTypes:

    def test_unit_item(self):
        """price 150 000 × quantity 3 = 450 000; unit items have base measure 1."""
        p = compute_line_item({"originalPrice": 150_000, "quantity": 3, "calcType": "unit"})
        assert p.base_measure == 1.0
        assert p.calculated_measure == 0.0
        assert p.line_total == 450_000
        assert p.display_measure is None

    def test_length_item(self):
        """2500 mm = 2.5 m × 100 000 × 2 = 500 000."""
        p = compute_line_item({"originalPrice": 100_000, "quantity": 2, "calcType": "length", "length": 2500})
        assert p.calculated_measure == 2500
        assert abs(p.base_measure - 2.5) < 1e-9
        assert abs(p.line_total - 500_000) < 1e-6
        assert p.display_measure == 5.0

    def test_area_item(self):
        """2000 × 800 mm = 1.6 m² × 1 000 000 × 1 = 1 600 000; depth is ignored."""
        p = compute_line_item({
            "originalPrice": 1_000_000, "quantity": 1, "calcType": "area",
            "length": 2000, "height": 800, "depth": 600,
        })
        assert p.calculated_measure == 1_600_000
        assert abs(p.line_total - 1_600_000) < 1e-6
        assert p.display_measure == 1.6

    def test_volume_item(self):
        """1000 × 500 × 400 mm = 0.2 m³ × 10 000 000 × 3 = 6 000 000."""
        p = compute_line_item({
            "originalPrice": 10_000_000, "quantity": 3, "calcType": "volume",
            "length": 1000, "height": 500, "depth": 400,
        })
        assert abs(p.base_measure - 0.2) < 1e-9
        assert abs(p.line_total - 6_000_000) < 1e-6
        assert abs(p.display_measure - 0.6) < 1e-9

    def test_unknown_calc_type_is_unit(self):
        assert CalcType.parse("weight") is CalcType.UNIT
        p = compute_line_item({"originalPrice": 10, "quantity": 2, "calcType": "weight", "length": 999})
        assert p.line_total == 20

    def test_missing_dimensions_count_as_zero(self):
        """An area item without height totals 0 and shows no measure."""
        p = compute_line_item({"originalPrice": 1_000_000, "quantity": 1, "calcType": "area", "length": 2000})
        assert p.line_total == 0
        assert p.display_measure is None

    def test_display_measure_uses_quantity_or_one(self):
        """Quantity 0 still displays the per-piece measure (quantity read as 1)."""
        p = compute_line_item({"originalPrice": 1, "quantity": 0, "calcType": "length", "length": 1500})
        assert p.display_measure == 1.5
        assert p.line_total == 0

    def test_unit_item_ignores_dimensions(self):
        """Dimensions on a unit item never change the total: 150 000 × 3."""
        p = compute_line_item({
            "originalPrice": 150_000, "quantity": 3, "calcType": "unit",
            "length": 2400, "height": 900, "depth": 600,
        })
        assert p.line_total == p.price * 3 == 450_000

    def test_area_total_scales_with_length(self):
        fields = {"originalPrice": 820_000, "quantity": 2, "calcType": "area", "length": 1250, "height": 730}
        single = compute_line_item(fields).line_total
        doubled = compute_line_item(dict(fields, length=2500)).line_total
        assert abs(doubled - 2 * single) < 1e-6

    def test_discounted_area_item(self):
        """
        100 000 - 10% = 90 000 per m²; 2000 × 1500 mm = 3 m²;
        90 000 × 3 m² × 3 pieces = 810 000.
        """
        p = compute_line_item({
            "originalPrice": 100_000, "itemDiscountValue": 10, "itemDiscountType": "percent",
            "calcType": "area", "length": 2000, "height": 1500, "quantity": 3,
        })
        assert p.price == 90_000
        assert abs(p.base_measure - 3.0) < 1e-9
        assert abs(p.line_total - 810_000) < 1e-6

    def test_measure_helpers(self):
        assert raw_measure(CalcType.AREA, 100, 200, 300) == 20_000
        assert base_measure(CalcType.UNIT, 100, 200, 300) == 1.0
        assert abs(base_measure(CalcType.VOLUME, 1000, 1000, 1000) - 1.0) < 1e-12


# ===========================================================================
# Class 2: Discounts
# ===========================================================================

class TestItemDiscounts:

    def test_percent_discount(self):
        """5 000 000 − 10% = 4 500 000; × 2 = 9 000 000."""
        p = compute_line_item({
            "originalPrice": 5_000_000, "itemDiscountValue": 10, "itemDiscountType": "percent", "quantity": 2,
        })
        assert p.item_discount_amount == 500_000
        assert p.price == 4_500_000
        assert p.line_total == 9_000_000

    def test_amount_discount(self):
        p = compute_line_item({
            "originalPrice": 800_000, "itemDiscountValue": 50_000, "itemDiscountType": "amount", "quantity": 1,
        })
        assert p.price == 750_000

    def test_unknown_discount_type_reads_as_percent(self):
        assert DiscountType.parse("bogus") is DiscountType.PERCENT
        p = compute_line_item({"originalPrice": 1000, "itemDiscountValue": 20, "itemDiscountType": "bogus", "quantity": 1})
        assert p.price == 800

    def test_discount_above_price_gives_negative_price(self):
        """Amount discount 120 000 on a 100 000 price → −20 000, flagged but not clamped."""
        p = compute_line_item({
            "originalPrice": 100_000, "itemDiscountValue": 120_000, "itemDiscountType": "amount", "quantity": 2,
        })
        assert p.price == -20_000
        assert p.is_price_negative
        assert p.line_total == -40_000

    def test_string_inputs_are_coerced(self):
        p = compute_line_item({"originalPrice": "1000", "quantity": "1,5", "calcType": "unit"})
        assert p.line_total == 1500


# ===========================================================================
# Class 3: apply_pricing
# ===========================================================================

class TestApplyPricing:

    def test_stored_line_total_is_recomputed(self):
        priced = apply_pricing({"originalPrice": 200, "quantity": 3, "lineTotal": 999_999})
        assert priced["lineTotal"] == 600
        assert priced["price"] == 200

    def test_enums_and_numbers_normalised(self):
        priced = apply_pricing({"originalPrice": "50", "itemDiscountType": None, "calcType": "", "quantity": None})
        assert priced["originalPrice"] == 50.0
        assert priced["itemDiscountType"] == "percent"
        assert priced["calcType"] == "unit"
        assert priced["quantity"] == 0.0

    def test_zero_dimensions_stored_as_none(self):
        priced = apply_pricing({"calcType": "length", "length": 0, "height": "", "depth": 300})
        assert priced["length"] is None
        assert priced["height"] is None
        assert priced["depth"] == 300

    def test_input_is_not_mutated(self):
        item = {"name": "Bàn", "originalPrice": 10, "quantity": 1}
        apply_pricing(item)
        assert "lineTotal" not in item

    def test_extra_fields_survive(self):
        priced = apply_pricing({"id": "qitem-9", "name": "Ghế", "notes": "gỗ sồi", "originalPrice": 1, "quantity": 1})
        assert priced["id"] == "qitem-9"
        assert priced["notes"] == "gỗ sồi"
