"""
Product catalog helpers: main categories, filtering, Excel import/export.

Catalog entries are dicts {id, name, spec, unit, price, mainCategoryId}.
Categories are dicts {id, name}.
"""
import io
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd
import xlsxwriter

from app.services.formatting import to_number

logger = logging.getLogger("baogia-catalog")

EXCEL_COLUMNS = ("TenHangMuc", "QuyCach", "DonViTinh", "DonGia", "DanhMucChinh")
EXPORT_SHEET_NAME = "Danh muc san pham"
SORT_OPTIONS = ("name_asc", "name_desc", "price_asc", "price_desc")

_NON_NUMERIC = re.compile(r"[^0-9.\-]+")
_LEADING_NUMBER = re.compile(r"-?(\d+\.?\d*|\.\d+)")


@dataclass(frozen=True)
class ImportedRow:
    name: str
    spec: str
    unit: str
    price: float
    category_name: str

    def to_entry(self, category_id: Optional[str]) -> Dict[str, Any]:
        return {
            "name": self.name,
            "spec": self.spec,
            "unit": self.unit,
            "price": self.price,
            "mainCategoryId": category_id,
        }


# ── Categories ───────────────────────────────────────────────────────────────

def find_category_by_name(categories: Sequence[Mapping[str, Any]], name: str) -> Optional[Mapping[str, Any]]:
    wanted = (name or "").strip().lower()
    if not wanted:
        return None
    for cat in categories:
        if str(cat.get("name") or "").strip().lower() == wanted:
            return cat
    return None


def validate_category_name(
    categories: Sequence[Mapping[str, Any]],
    name: str,
    editing_id: Optional[str] = None,
) -> Optional[str]:
    """Message explaining why *name* can't be saved, or None."""
    name = (name or "").strip()
    if not name:
        return "Tên danh mục chính không được để trống."
    existing = find_category_by_name(categories, name)
    if existing is not None and existing.get("id") != editing_id:
        return "Tên danh mục chính này đã tồn tại."
    return None


def category_name(categories: Sequence[Mapping[str, Any]], category_id: Optional[str]) -> str:
    for cat in categories:
        if category_id and cat.get("id") == category_id:
            return str(cat.get("name") or "")
    return ""


# ── Catalog entries ──────────────────────────────────────────────────────────

def validate_catalog_entry(entry: Mapping[str, Any]) -> Optional[str]:
    if not str(entry.get("name") or "").strip():
        return "Tên hạng mục không được để trống."
    return None


def normalize_catalog_entry(form: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": str(form.get("name") or "").strip(),
        "spec": str(form.get("spec") or "").strip(),
        "unit": str(form.get("unit") or "").strip(),
        "price": to_number(form.get("price")),
        "mainCategoryId": form.get("mainCategoryId") or None,
    }


def catalog_entry_from_item(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Quick-save a quote line to the catalog (name, spec, unit, list price, category)."""
    return {
        "name": str(item.get("name") or "").strip(),
        "spec": str(item.get("spec") or "").strip(),
        "unit": str(item.get("unit") or "").strip(),
        "price": to_number(item.get("originalPrice")),
        "mainCategoryId": item.get("mainCategoryId") or None,
    }


def filter_catalog(
    entries: Sequence[Mapping[str, Any]],
    search: str = "",
    category_id: Optional[str] = None,
    min_price: Any = None,
    max_price: Any = None,
    sort: str = "name_asc",
) -> List[Mapping[str, Any]]:
    """
    Search matches name OR spec (case-insensitive substring). Blank bounds
    mean 0 and unbounded. Unknown sort keys leave the stored order.
    """
    term = (search or "").strip().lower()
    low = to_number(min_price)
    high = to_number(max_price) or float("inf")

    def matches(entry) -> bool:
        if term:
            name = str(entry.get("name") or "").lower()
            spec = str(entry.get("spec") or "").lower()
            if term not in name and term not in spec:
                return False
        if category_id and entry.get("mainCategoryId") != category_id:
            return False
        price = to_number(entry.get("price"))
        return low <= price <= high

    result = [e for e in entries if matches(e)]
    if sort == "name_asc":
        result.sort(key=lambda e: str(e.get("name") or "").casefold())
    elif sort == "name_desc":
        result.sort(key=lambda e: str(e.get("name") or "").casefold(), reverse=True)
    elif sort == "price_asc":
        result.sort(key=lambda e: to_number(e.get("price")))
    elif sort == "price_desc":
        result.sort(key=lambda e: to_number(e.get("price")), reverse=True)
    return result


# ── Excel ────────────────────────────────────────────────────────────────────

def parse_price_cell(value: Any) -> float:
    """Drop everything but digits, "." and "-", then read the leading number (0 if none)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return to_number(value)
    match = _LEADING_NUMBER.match(_NON_NUMERIC.sub("", str(value or "")))
    return float(match.group(0)) if match else 0.0


def parse_catalog_excel(content: bytes) -> List[ImportedRow]:
    """
    Read the first sheet of an .xlsx/.xls upload. Column names are matched
    case-insensitively; rows without TenHangMuc are skipped.

    Raises:
        ValueError: the file can't be read as a spreadsheet.
    """
    try:
        df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str, keep_default_na=False)
    except Exception as e:
        logger.error(f"Catalog import failed to read workbook: {e}")
        raise ValueError(str(e)) from e
    df = df.fillna("")

    columns = {str(c).strip().lower(): c for c in df.columns}

    def cell(row, key: str) -> str:
        col = columns.get(key.lower())
        if col is None:
            return ""
        return str(row[col] or "").strip()

    rows: List[ImportedRow] = []
    for _, row in df.iterrows():
        name = cell(row, "TenHangMuc")
        if not name:
            continue
        rows.append(ImportedRow(
            name=name,
            spec=cell(row, "QuyCach"),
            unit=cell(row, "DonViTinh"),
            price=parse_price_cell(cell(row, "DonGia")),
            category_name=cell(row, "DanhMucChinh"),
        ))
    logger.info(f"Catalog import parsed {len(rows)} rows of {len(df)}")
    return rows


def export_catalog_excel(
    entries: Sequence[Mapping[str, Any]],
    categories: Sequence[Mapping[str, Any]],
) -> bytes:
    """Workbook with one sheet in the import column layout."""
    buf = io.BytesIO()
    wb = xlsxwriter.Workbook(buf, {"in_memory": True})
    hdr = wb.add_format({"bold": True, "border": 1})
    money = wb.add_format({"num_format": "#,##0", "border": 1})
    normal = wb.add_format({"border": 1})

    ws = wb.add_worksheet(EXPORT_SHEET_NAME)
    ws.set_column("A:A", 40)
    ws.set_column("B:B", 30)
    ws.set_column("C:C", 12)
    ws.set_column("D:D", 16)
    ws.set_column("E:E", 24)
    ws.write_row(0, 0, EXCEL_COLUMNS, hdr)

    for r, entry in enumerate(entries, start=1):
        ws.write(r, 0, str(entry.get("name") or ""), normal)
        ws.write(r, 1, str(entry.get("spec") or ""), normal)
        ws.write(r, 2, str(entry.get("unit") or ""), normal)
        ws.write_number(r, 3, to_number(entry.get("price")), money)
        ws.write(r, 4, category_name(categories, entry.get("mainCategoryId")), normal)

    wb.close()
    return buf.getvalue()
