"""
CostingEngine — unit production cost for a product costing sheet.

Covers:
  - Material lines whose consumed quantity can be tied to the product's
    length / width / height (mm), plus a waste percentage
  - Labour lines (hours × rate) and flat other-cost lines
  - Overhead, management and sales/marketing allocations (flat totals)
  - Unit cost = total cost / quantity produced
  - What-if scenarios: percentage changes per component, baseline untouched
  - Line validation, templates and sheet duplication

Every calculation coerces missing or non-numeric input to zero and never
raises. Validation returns a user-facing message instead of raising.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from app.services.formatting import generate_unique_id, to_number


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
_DEFAULT_QUANTITY_PRODUCED: int = 1
_DEFAULT_MATERIAL_MULTIPLIER: float = 1.0
_MM_PER_M: float = 1000.0

# Id prefixes for costing lines and sheets
_MATERIAL_PREFIX = "mat"
_LABOR_PREFIX = "lab"
_OTHER_PREFIX = "oth"
_SHEET_PREFIX = "cost"

# Components perturbed by a what-if scenario (other costs stay fixed)
WHAT_IF_COMPONENTS: Tuple[str, ...] = ("materials", "labor", "overhead", "management", "salesMarketing")

_TEMPLATE_MATERIAL_FIELDS = ("name", "spec", "unit", "dimensions", "itemQuantity", "price", "waste", "linkType")
_TEMPLATE_LABOR_FIELDS = ("description", "hours", "rate")
_TEMPLATE_OTHER_FIELDS = ("description", "amount")


class LinkType(str, Enum):
    """How a material's consumed quantity follows the product's dimensions."""
    NONE = "NONE"
    PRODUCT_L = "PRODUCT_L"
    PRODUCT_W = "PRODUCT_W"
    PRODUCT_H = "PRODUCT_H"
    PRODUCT_AREA_LW = "PRODUCT_AREA_LW"
    PRODUCT_AREA_LH = "PRODUCT_AREA_LH"
    PRODUCT_AREA_WH = "PRODUCT_AREA_WH"
    PRODUCT_PERIMETER_LW = "PRODUCT_PERIMETER_LW"

    @classmethod
    def parse(cls, value: Any) -> "LinkType":
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


# Vietnamese labels shown next to each material line
LINK_TYPE_LABELS: Dict[LinkType, str] = {
    LinkType.NONE: "Thủ công",
    LinkType.PRODUCT_L: "K.Dài SP",
    LinkType.PRODUCT_W: "K.Rộng SP",
    LinkType.PRODUCT_H: "K.Cao SP",
    LinkType.PRODUCT_AREA_LW: "DT (DxR) SP",
    LinkType.PRODUCT_AREA_LH: "DT (DxC) SP",
    LinkType.PRODUCT_AREA_WH: "DT (RxC) SP",
    LinkType.PRODUCT_PERIMETER_LW: "CV (2(D+R)) SP",
}


def link_factor(link_type: LinkType, length_m: float, width_m: float, height_m: float) -> float:
    """Product-dimension factor (m, m² or perimeter m) for a link type."""
    if link_type is LinkType.PRODUCT_L:
        return length_m
    if link_type is LinkType.PRODUCT_W:
        return width_m
    if link_type is LinkType.PRODUCT_H:
        return height_m
    if link_type is LinkType.PRODUCT_AREA_LW:
        return length_m * width_m
    if link_type is LinkType.PRODUCT_AREA_LH:
        return length_m * height_m
    if link_type is LinkType.PRODUCT_AREA_WH:
        return width_m * height_m
    if link_type is LinkType.PRODUCT_PERIMETER_LW:
        return 2.0 * (length_m + width_m)
    return 1.0


def quantity_produced(value: Any) -> int:
    """Whole units produced; zero, blank or garbage falls back to 1."""
    return int(to_number(value)) or _DEFAULT_QUANTITY_PRODUCED


class CostingEngine:
    """
    Costing sheet calculator.

    Sheets and lines are plain dicts using the stored field names
    (productLength_mm, materials[].itemQuantity, labor[].hours, ...).
    Methods return new dicts and never mutate their arguments.
    """

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def __init__(self, id_factory: Optional[Callable[[str], str]] = None) -> None:
        self._new_id = id_factory or generate_unique_id

    # ------------------------------------------------------------------
    # 1. Material quantity & line totals
    # ------------------------------------------------------------------

    @staticmethod
    def product_dimensions_m(sheet: Mapping[str, Any]) -> Tuple[float, float, float]:
        """(length, width, height) of the product in metres."""
        return (
            to_number(sheet.get("productLength_mm")) / _MM_PER_M,
            to_number(sheet.get("productWidth_mm")) / _MM_PER_M,
            to_number(sheet.get("productHeight_mm")) / _MM_PER_M,
        )

    def material_quantity(self, line: Mapping[str, Any], dims_m: Tuple[float, float, float]) -> float:
        """
        Consumed quantity:
            NONE      → itemQuantity
            otherwise → link_factor(linkType, dims) × itemQuantity
        """
        multiplier = to_number(line.get("itemQuantity"))
        link = LinkType.parse(line.get("linkType"))
        if link is LinkType.NONE:
            return multiplier
        return link_factor(link, *dims_m) * multiplier

    def material_line_total(self, line: Mapping[str, Any], dims_m: Tuple[float, float, float]) -> float:
        """quantityUsed × price × (1 + waste / 100)"""
        used = self.material_quantity(line, dims_m)
        return used * to_number(line.get("price")) * (1.0 + to_number(line.get("waste")) / 100.0)

    @staticmethod
    def labor_line_total(line: Mapping[str, Any]) -> float:
        return to_number(line.get("hours")) * to_number(line.get("rate"))

    @staticmethod
    def other_line_total(line: Mapping[str, Any]) -> float:
        return to_number(line.get("amount"))

    # ------------------------------------------------------------------
    # 2. Sheet rollup
    # ------------------------------------------------------------------

    def compute_sheet(self, sheet: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Recompute every derived figure of a costing sheet.

        Returns a copy of the sheet with line totals written back plus:
            totalMaterials, totalLabor, totalOther, overheadCost,
            managementCost, salesMarketingCost, totalCost, unitCost

        quantityProduced is left as entered; the unit cost divides by
        quantity_produced(), which reads zero or blank as 1.
        """
        dims = self.product_dimensions_m(sheet)

        materials = []
        for line in sheet.get("materials") or []:
            row = dict(line)
            row["linkType"] = LinkType.parse(line.get("linkType")).value
            row["quantityUsed"] = self.material_quantity(line, dims)
            row["total"] = self.material_line_total(line, dims)
            materials.append(row)

        labor = [dict(line, total=self.labor_line_total(line)) for line in sheet.get("labor") or []]
        others = [dict(line, total=self.other_line_total(line)) for line in sheet.get("otherCosts") or []]

        total_materials = sum(m["total"] for m in materials)
        total_labor = sum(l["total"] for l in labor)
        total_other = sum(o["total"] for o in others)
        overhead = to_number(sheet.get("overheadCost"))
        management = to_number(sheet.get("managementCost"))
        sales_marketing = to_number(sheet.get("salesMarketingCost"))

        total_cost = total_materials + total_labor + overhead + total_other + management + sales_marketing
        produced = quantity_produced(sheet.get("quantityProduced"))
        unit_cost = total_cost / produced if produced > 0 else total_cost

        result = dict(sheet)
        result.update({
            "materials": materials,
            "labor": labor,
            "otherCosts": others,
            "totalMaterials": total_materials,
            "totalLabor": total_labor,
            "totalOther": total_other,
            "overheadCost": overhead,
            "managementCost": management,
            "salesMarketingCost": sales_marketing,
            "totalCost": total_cost,
            "unitCost": unit_cost,
        })
        return result

    # ------------------------------------------------------------------
    # 3. What-if analysis
    # ------------------------------------------------------------------

    @staticmethod
    def baseline_components(computed: Mapping[str, Any]) -> Dict[str, float]:
        return {
            "materials": to_number(computed.get("totalMaterials")),
            "labor": to_number(computed.get("totalLabor")),
            "overhead": to_number(computed.get("overheadCost")),
            "management": to_number(computed.get("managementCost")),
            "salesMarketing": to_number(computed.get("salesMarketingCost")),
            "other": to_number(computed.get("totalOther")),
        }

    def what_if(self, baseline_sheet: Mapping[str, Any], deltas: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Scale each perturbable component by (1 + delta / 100) and compare
        the scenario unit cost with the baseline. Other costs are not scaled.

        Args:
            baseline_sheet: A costing sheet (recomputed here; the argument is not modified).
            deltas: {materials, labor, overhead, management, salesMarketing} in percent.
        """
        deltas = deltas or {}
        baseline = self.compute_sheet(baseline_sheet)
        base = self.baseline_components(baseline)

        scenario = {
            name: base[name] * (1.0 + to_number(deltas.get(name)) / 100.0)
            for name in WHAT_IF_COMPONENTS
        }
        scenario["other"] = base["other"]
        scenario_total = sum(scenario.values())
        produced = quantity_produced(baseline.get("quantityProduced"))
        scenario_unit = scenario_total / produced if produced > 0 else scenario_total

        return {
            "baselineComponents": base,
            "scenarioComponents": scenario,
            "baselineTotalCost": baseline["totalCost"],
            "baselineUnitCost": baseline["unitCost"],
            "scenarioTotalCost": scenario_total,
            "scenarioUnitCost": scenario_unit,
            "difference": scenario_unit - baseline["unitCost"],
            "quantityProduced": produced,
        }

    # ------------------------------------------------------------------
    # 4. Line normalisation & validation
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_material(form: Mapping[str, Any]) -> Dict[str, Any]:
        """Form values → stored material line. A zero or blank multiplier reads as 1."""
        return {
            "name": str(form.get("name") or "").strip(),
            "spec": str(form.get("spec") or "").strip(),
            "unit": str(form.get("unit") or "").strip(),
            "dimensions": str(form.get("dimensions") or "").strip(),
            "itemQuantity": to_number(form.get("itemQuantity")) or _DEFAULT_MATERIAL_MULTIPLIER,
            "price": to_number(form.get("price")),
            "waste": to_number(form.get("waste")),
            "linkType": LinkType.parse(form.get("linkType")).value,
        }

    @staticmethod
    def normalize_labor(form: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "description": str(form.get("description") or "").strip(),
            "hours": to_number(form.get("hours")),
            "rate": to_number(form.get("rate")),
        }

    @staticmethod
    def normalize_other_cost(form: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "description": str(form.get("description") or "").strip(),
            "amount": to_number(form.get("amount")),
        }

    @staticmethod
    def validate_material(line: Mapping[str, Any], is_new: bool = True) -> Optional[str]:
        if not str(line.get("name") or "").strip():
            return "Vui lòng nhập Tên Vật tư."
        if is_new and to_number(line.get("itemQuantity")) <= 0:
            return "Số lượng / Hệ số nhân Vật tư phải lớn hơn 0."
        if to_number(line.get("price")) < 0:
            return "Đơn giá Vật tư không hợp lệ."
        waste = to_number(line.get("waste"))
        if waste < 0 or waste > 100:
            return "% Hao hụt phải từ 0 đến 100."
        return None

    @staticmethod
    def validate_labor(line: Mapping[str, Any]) -> Optional[str]:
        if not str(line.get("description") or "").strip():
            return "Vui lòng nhập Công đoạn."
        if to_number(line.get("hours")) <= 0:
            return "Số giờ nhân công phải lớn hơn 0."
        if to_number(line.get("rate")) < 0:
            return "Đơn giá/giờ không hợp lệ."
        return None

    @staticmethod
    def validate_other_cost(line: Mapping[str, Any]) -> Optional[str]:
        if not str(line.get("description") or "").strip():
            return "Vui lòng nhập Nội dung Chi phí Khác."
        if to_number(line.get("amount")) <= 0:
            return "Số tiền Chi phí Khác phải lớn hơn 0."
        return None

    def validate_sheet(self, sheet: Mapping[str, Any]) -> Optional[str]:
        """First problem found in a sheet about to be saved, or None."""
        if not str(sheet.get("productName") or "").strip():
            return "Vui lòng nhập Tên Sản phẩm."
        for line in sheet.get("materials") or []:
            message = self.validate_material(line, is_new=False)
            if message:
                return message
        for line in sheet.get("labor") or []:
            message = self.validate_labor(line)
            if message:
                return message
        for line in sheet.get("otherCosts") or []:
            message = self.validate_other_cost(line)
            if message:
                return message
        return None

    # ------------------------------------------------------------------
    # 5. Saving, templates & duplication
    # ------------------------------------------------------------------

    def _with_fresh_ids(self, lines, prefix: str) -> List[Dict[str, Any]]:
        return [dict(line, id=self._new_id(prefix)) for line in lines or []]

    def assign_line_ids(self, sheet: Mapping[str, Any]) -> Dict[str, Any]:
        """Give every line without an id a fresh one."""
        result = dict(sheet)
        for key, prefix in (("materials", _MATERIAL_PREFIX), ("labor", _LABOR_PREFIX), ("otherCosts", _OTHER_PREFIX)):
            result[key] = [
                dict(line) if line.get("id") else dict(line, id=self._new_id(prefix))
                for line in sheet.get(key) or []
            ]
        return result

    def prepare_for_save(self, sheet: Mapping[str, Any]) -> Dict[str, Any]:
        """Recompute totals, trim the product name and fill in missing ids."""
        result = self.compute_sheet(self.assign_line_ids(sheet))
        result["productName"] = str(sheet.get("productName") or "").strip()
        result["productLength_mm"] = to_number(sheet.get("productLength_mm"))
        result["productWidth_mm"] = to_number(sheet.get("productWidth_mm"))
        result["productHeight_mm"] = to_number(sheet.get("productHeight_mm"))
        result["id"] = str(sheet.get("id") or "").strip() or self._new_id(_SHEET_PREFIX)
        return result

    @staticmethod
    def is_empty(sheet: Mapping[str, Any]) -> bool:
        return not (sheet.get("materials") or sheet.get("labor") or sheet.get("otherCosts"))

    def template_rejection(self, sheet: Mapping[str, Any], name: Optional[str]) -> Optional[str]:
        if self.is_empty(sheet):
            return "Phiếu tính giá hiện tại trống, không thể lưu làm mẫu."
        if not (name or "").strip():
            return "Tên mẫu không hợp lệ."
        return None

    def sheet_to_template(self, sheet: Mapping[str, Any], name: str) -> Dict[str, Any]:
        """
        Reusable preset: line inputs and the three allocations only. Derived
        totals, ids and the product's own dimensions are left out.
        """
        def pick(line, fields):
            return {f: line.get(f) for f in fields}

        return {
            "name": name.strip(),
            "materials": [pick(m, _TEMPLATE_MATERIAL_FIELDS) for m in sheet.get("materials") or []],
            "labor": [pick(l, _TEMPLATE_LABOR_FIELDS) for l in sheet.get("labor") or []],
            "otherCosts": [pick(o, _TEMPLATE_OTHER_FIELDS) for o in sheet.get("otherCosts") or []],
            "overheadCost": to_number(sheet.get("overheadCost")),
            "managementCost": to_number(sheet.get("managementCost")),
            "salesMarketingCost": to_number(sheet.get("salesMarketingCost")),
        }

    def sheet_from_template(
        self,
        template: Mapping[str, Any],
        product: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Start a new sheet from a template, keeping the current product's
        name, dimensions and quantity. Lines get fresh ids.
        """
        product = product or {}
        sheet = {
            "productName": str(product.get("productName") or template.get("productNameHint") or ""),
            "productLength_mm": to_number(product.get("productLength_mm")),
            "productWidth_mm": to_number(product.get("productWidth_mm")),
            "productHeight_mm": to_number(product.get("productHeight_mm")),
            "quantityProduced": quantity_produced(product.get("quantityProduced")),
            "materials": self._with_fresh_ids(template.get("materials"), _MATERIAL_PREFIX),
            "labor": self._with_fresh_ids(template.get("labor"), _LABOR_PREFIX),
            "otherCosts": self._with_fresh_ids(template.get("otherCosts"), _OTHER_PREFIX),
            "overheadCost": to_number(template.get("overheadCost")),
            "managementCost": to_number(template.get("managementCost")),
            "salesMarketingCost": to_number(template.get("salesMarketingCost")),
        }
        return self.compute_sheet(sheet)

    def duplicate_sheet(self, sheet: Mapping[str, Any]) -> Dict[str, Any]:
        """Copy under a new id, '(Copy)' appended to the product name, fresh line ids."""
        copy = dict(sheet)
        copy.update({
            "id": self._new_id(_SHEET_PREFIX),
            "productName": f"{sheet.get('productName') or ''} (Copy)",
            "materials": self._with_fresh_ids(sheet.get("materials"), _MATERIAL_PREFIX),
            "labor": self._with_fresh_ids(sheet.get("labor"), _LABOR_PREFIX),
            "otherCosts": self._with_fresh_ids(sheet.get("otherCosts"), _OTHER_PREFIX),
        })
        return copy

    # ------------------------------------------------------------------
    # 6. Materials library
    # ------------------------------------------------------------------

    @staticmethod
    def library_entry(form: Mapping[str, Any]) -> Dict[str, Any]:
        """Material library record (no quantity, waste or link)."""
        return {
            "name": str(form.get("name") or "").strip(),
            "spec": str(form.get("spec") or "").strip(),
            "unit": str(form.get("unit") or "").strip(),
            "dimensions": str(form.get("dimensions") or "").strip(),
            "price": to_number(form.get("price")),
        }

    @staticmethod
    def validate_library_entry(entry: Mapping[str, Any]) -> Optional[str]:
        if not str(entry.get("name") or "").strip():
            return "Vui lòng nhập Tên Vật tư để lưu vào thư viện."
        return None

    @staticmethod
    def find_library_material(library: List[Mapping[str, Any]], name: str) -> Optional[Mapping[str, Any]]:
        """Library entries are keyed by exact (trimmed) name."""
        wanted = (name or "").strip()
        return next((e for e in library if e.get("name") == wanted), None)

    @staticmethod
    def material_from_library(entry: Mapping[str, Any]) -> Dict[str, Any]:
        """Prefill a material line from the library: waste 0, manual link, multiplier 1."""
        return {
            "name": entry.get("name") or "",
            "spec": entry.get("spec") or "",
            "unit": entry.get("unit") or "",
            "dimensions": entry.get("dimensions") or "",
            "price": to_number(entry.get("price")),
            "waste": 0.0,
            "linkType": LinkType.NONE.value,
            "itemQuantity": _DEFAULT_MATERIAL_MULTIPLIER,
        }

    @staticmethod
    def suggest_materials(text: str, library: List[Mapping[str, Any]], limit: int = 7) -> List[Dict[str, Any]]:
        """Library entries whose name contains *text* (2+ chars), sorted by name."""
        needle = (text or "").strip().lower()
        if len(needle) < 2:
            return []
        hits = [
            {"id": e.get("id"), "name": e.get("name") or "", "source": "library",
             "price": e.get("price"), "unit": e.get("unit"), "spec": e.get("spec"),
             "dimensions": e.get("dimensions")}
            for e in library
            if needle in str(e.get("name") or "").lower()
        ]
        hits.sort(key=lambda h: h["name"].lower())
        return hits[:limit]
