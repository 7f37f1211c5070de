"""
Category grouping — orders quote lines for rendering.

Each declared category that has members emits a header row (Roman-numeral
label, category total) followed by its items in list order. Items whose
category is missing or unknown follow at the end without a header. The item
index runs across the whole output; headers do not consume one.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Union

from app.services.formatting import number_to_roman, to_number

UNCATEGORIZED = "uncategorized"


@dataclass(frozen=True)
class CategoryHeaderRow:
    label: str
    category_id: str
    name: str
    category_total: float


@dataclass(frozen=True)
class ItemRow:
    index: int
    item: Mapping[str, Any]


GroupedRow = Union[CategoryHeaderRow, ItemRow]


def sort_categories(categories: Sequence[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Case-insensitive name order, the order callers hand to group_items."""
    return sorted(categories, key=lambda c: str(c.get("name") or "").lower())


def _bucket_items(items, categories):
    known = {c.get("id") for c in categories if c.get("id")}
    buckets: Dict[str, List[Mapping[str, Any]]] = {}
    loose: List[Mapping[str, Any]] = []
    for item in items:
        category_id = item.get("mainCategoryId")
        if category_id and category_id in known:
            buckets.setdefault(category_id, []).append(item)
        else:
            loose.append(item)
    return buckets, loose


def group_items(
    items: Sequence[Mapping[str, Any]],
    categories: Sequence[Mapping[str, Any]],
) -> List[GroupedRow]:
    buckets, loose = _bucket_items(items, categories)
    rows: List[GroupedRow] = []
    item_counter = 0
    category_counter = 0

    for category in categories:
        members = buckets.pop(category.get("id"), None)
        if not members:
            continue
        category_counter += 1
        rows.append(CategoryHeaderRow(
            label=number_to_roman(category_counter),
            category_id=category.get("id"),
            name=str(category.get("name") or ""),
            category_total=sum(to_number(m.get("lineTotal")) for m in members),
        ))
        for member in members:
            item_counter += 1
            rows.append(ItemRow(index=item_counter, item=member))

    for item in loose:
        item_counter += 1
        rows.append(ItemRow(index=item_counter, item=item))
    return rows


def category_totals(
    items: Sequence[Mapping[str, Any]],
    categories: Sequence[Mapping[str, Any]],
) -> Dict[str, float]:
    """Per-category sums plus an 'uncategorized' bucket; adds up to the subtotal."""
    buckets, loose = _bucket_items(items, categories)
    totals = {
        category_id: sum(to_number(m.get("lineTotal")) for m in members)
        for category_id, members in buckets.items()
    }
    totals[UNCATEGORIZED] = sum(to_number(m.get("lineTotal")) for m in loose)
    return totals
