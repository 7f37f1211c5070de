"""Request bodies for the quote, catalog and costing APIs."""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Numeric form fields arrive as numbers or as typed text ("1,5", "")
NumberLike = Union[float, str, None]


class ItemForm(BaseModel):
    """One quote line as entered in the item form."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str = ""
    spec: str = ""
    unit: str = ""
    originalPrice: NumberLike = 0
    itemDiscountValue: NumberLike = 0
    itemDiscountType: str = "percent"
    calcType: str = "unit"
    length: NumberLike = None
    height: NumberLike = None
    depth: NumberLike = None
    quantity: NumberLike = 0
    imageDataUrl: Optional[str] = None
    notes: str = ""
    mainCategoryId: Optional[str] = None
    mainCategoryName: Optional[str] = Field(None, description="Resolved (or created) by name when given")


class TotalsRequest(BaseModel):
    items: List[Dict[str, Any]] = []
    applyDiscount: bool = False
    discountValue: NumberLike = 0
    discountType: str = "percent"
    applyTax: bool = False
    taxPercent: NumberLike = 0
    applyInstallments: bool = False
    installments: List[Dict[str, Any]] = []
    costingSheets: Optional[List[Dict[str, Any]]] = None


class DraftUpdate(BaseModel):
    """Header and settings of the working draft; items change through the item endpoints."""
    customerName: Optional[str] = None
    customerAddress: Optional[str] = None
    quoteDate: Optional[str] = None
    applyDiscount: Optional[bool] = None
    discountValue: NumberLike = None
    discountType: Optional[str] = None
    applyTax: Optional[bool] = None
    taxPercent: NumberLike = None
    applyInstallments: Optional[bool] = None
    installments: Optional[List[Dict[str, Any]]] = None


class InstallmentUpdate(BaseModel):
    field: str
    value: Any = None


class SaveQuoteRequest(BaseModel):
    id: Optional[str] = Field(None, description="Defaults to '<customer> - <internal id>'")


class StatusUpdate(BaseModel):
    status: str


class NameRequest(BaseModel):
    name: str = ""


class CategoryIn(BaseModel):
    name: str = ""


class CatalogEntryIn(BaseModel):
    name: str = ""
    spec: str = ""
    unit: str = ""
    price: NumberLike = 0
    mainCategoryId: Optional[str] = None


class CompanySettingsIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""
    taxId: str = ""
    bankAccount: str = ""
    logoDataUrl: Optional[str] = None
    defaultQuoteNotes: str = ""
    printOptions: Dict[str, Any] = {}


class WhatIfRequest(BaseModel):
    sheet: Dict[str, Any]
    deltas: Dict[str, NumberLike] = {}


class CostingTemplateCreate(BaseModel):
    name: str = ""
    sheet: Dict[str, Any]


class CostingTemplateApply(BaseModel):
    product: Dict[str, Any] = {}


class MaterialLibraryIn(BaseModel):
    name: str = ""
    spec: str = ""
    unit: str = ""
    dimensions: str = ""
    price: NumberLike = 0
