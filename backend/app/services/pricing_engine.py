"""
Pricing Engine — converts a quote line's raw inputs into its effective unit
price, raw dimension product and line total.

Calc types:
  unit    price is per piece                 base measure = 1
  length  price per linear metre             base measure = L / 1000
  area    price per m²                       base measure = L × H / 1e6
  volume  price per m³                       base measure = L × H × D / 1e9

Dimensions are entered in millimetres. Missing or non-numeric inputs count as
zero, so a dimensioned item without dimensions totals zero. A discount larger
than the price yields a negative unit price; it is passed through unchanged.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from app.services.formatting import to_number


class CalcType(str, Enum):
    UNIT = "unit"
    LENGTH = "length"
    AREA = "area"
    VOLUME = "volume"

    @classmethod
    def parse(cls, value: Any) -> "CalcType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNIT


class DiscountType(str, Enum):
    PERCENT = "percent"
    AMOUNT = "amount"

    @classmethod
    def parse(cls, value: Any) -> "DiscountType":
        try:
            return cls(value)
        except ValueError:
            return cls.PERCENT


# mm -> m, mm² -> m², mm³ -> m³
_MEASURE_DIVISOR = {
    CalcType.UNIT: 1.0,
    CalcType.LENGTH: 1_000.0,
    CalcType.AREA: 1_000_000.0,
    CalcType.VOLUME: 1_000_000_000.0,
}


@dataclass(frozen=True)
class LineItemPricing:
    item_discount_amount: float
    price: float
    calculated_measure: float
    base_measure: float
    line_total: float
    display_measure: Optional[float]

    @property
    def is_price_negative(self) -> bool:
        return self.price < 0


def item_discount_amount(original_price: float, discount_value: float, discount_type: DiscountType) -> float:
    if discount_type is DiscountType.PERCENT:
        return original_price * discount_value / 100.0
    return discount_value


def raw_measure(calc_type: CalcType, length: float, height: float, depth: float) -> float:
    """Dimension product in mm / mm² / mm³. Zero for unit items."""
    if calc_type is CalcType.LENGTH:
        return length
    if calc_type is CalcType.AREA:
        return length * height
    if calc_type is CalcType.VOLUME:
        return length * height * depth
    return 0.0


def base_measure(calc_type: CalcType, length: float, height: float, depth: float) -> float:
    """The quantity the price is 'per', in m / m² / m³ (1 for unit items)."""
    if calc_type is CalcType.UNIT:
        return 1.0
    return raw_measure(calc_type, length, height, depth) / _MEASURE_DIVISOR[calc_type]


def compute_line_item(fields: Mapping[str, Any]) -> LineItemPricing:
    """
    Price one quote line.

    *fields* uses the stored item keys: originalPrice, itemDiscountValue,
    itemDiscountType, calcType, length, height, depth, quantity.
    """
    original_price = to_number(fields.get("originalPrice"))
    discount_value = to_number(fields.get("itemDiscountValue"))
    discount_type = DiscountType.parse(fields.get("itemDiscountType"))
    calc_type = CalcType.parse(fields.get("calcType"))
    length = to_number(fields.get("length"))
    height = to_number(fields.get("height"))
    depth = to_number(fields.get("depth"))
    quantity = to_number(fields.get("quantity"))

    discount_amount = item_discount_amount(original_price, discount_value, discount_type)
    price = original_price - discount_amount
    measure = raw_measure(calc_type, length, height, depth)
    per = base_measure(calc_type, length, height, depth)
    line_total = price * per * quantity

    display = None
    if calc_type is not CalcType.UNIT and measure:
        display = round(per * (quantity or 1), 4)

    return LineItemPricing(
        item_discount_amount=discount_amount,
        price=price,
        calculated_measure=measure,
        base_measure=per,
        line_total=line_total,
        display_measure=display,
    )


def _optional_dimension(value: Any) -> Optional[float]:
    number = to_number(value)
    return number if number else None


def apply_pricing(item: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of *item* with every derived field rewritten from the
    pricing formula. A stored lineTotal is never trusted.
    """
    pricing = compute_line_item(item)
    priced = dict(item)
    priced.update({
        "originalPrice": to_number(item.get("originalPrice")),
        "itemDiscountValue": to_number(item.get("itemDiscountValue")),
        "itemDiscountType": DiscountType.parse(item.get("itemDiscountType")).value,
        "calcType": CalcType.parse(item.get("calcType")).value,
        "quantity": to_number(item.get("quantity")),
        "length": _optional_dimension(item.get("length")),
        "height": _optional_dimension(item.get("height")),
        "depth": _optional_dimension(item.get("depth")),
        "itemDiscountAmount": pricing.item_discount_amount,
        "price": pricing.price,
        "calculatedMeasure": pricing.calculated_measure,
        "lineTotal": pricing.line_total,
    })
    return priced
