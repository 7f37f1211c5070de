"""
conftest.py — Shared pytest fixtures for the BaoGia backend test suite.

Engine tests are pure unit tests. Store and API tests run against a fresh
SQLite file per test (aiosqlite, NullPool so every event loop opens its own
connection); nothing outside the temp directory is touched.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import asyncio
import itertools
import os
import sys

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

# The rate limiter would start answering 429 halfway through the API tests
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "0")
os.environ.setdefault("LOG_FORMAT", "text")


def _sequential_ids():
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(counter)}"


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def costing_engine():
    """CostingEngine whose generated ids are '<prefix>-1', '<prefix>-2', ..."""
    from app.services.costing_engine import CostingEngine
    return CostingEngine(id_factory=_sequential_ids())


@pytest.fixture(scope="session")
def report_engine():
    """ReportEngine on the built-in Helvetica fonts (no TTF configured)."""
    from app.services.report_engine import ReportEngine
    return ReportEngine(font_path="", bold_font_path="")


@pytest.fixture
def id_factory():
    return _sequential_ids()


# ---------------------------------------------------------------------------
# Shared sample data
# ---------------------------------------------------------------------------

@pytest.fixture
def categories():
    """Two main categories, deliberately not in name order."""
    return [
        {"id": "mcat-2", "name": "Phòng khách"},
        {"id": "mcat-1", "name": "Phòng bếp"},
    ]


@pytest.fixture
def sample_items():
    """
    Three priced lines:
      Tủ bếp     area   2000 × 800 mm = 1.6 m² × 2 000 000 × 1 = 3 200 000  (kitchen)
      Sofa       unit   5 000 000 − 10% = 4 500 000 × 2          = 9 000 000  (living room)
      Công lắp   unit   500 000 × 1                               =   500 000  (no category)
    Subtotal 12 700 000.
    """
    from app.services.pricing_engine import apply_pricing
    raw = [
        {
            "id": "qitem-1", "name": "Tủ bếp", "unit": "m²", "calcType": "area",
            "length": 2000, "height": 800, "originalPrice": 2_000_000, "quantity": 1,
            "mainCategoryId": "mcat-1",
        },
        {
            "id": "qitem-2", "name": "Sofa", "unit": "bộ", "calcType": "unit",
            "originalPrice": 5_000_000, "itemDiscountValue": 10, "itemDiscountType": "percent",
            "quantity": 2, "mainCategoryId": "mcat-2",
        },
        {
            "id": "qitem-3", "name": "Công lắp đặt", "unit": "gói", "calcType": "unit",
            "originalPrice": 500_000, "quantity": 1, "mainCategoryId": None,
        },
    ]
    return [apply_pricing(i) for i in raw]


@pytest.fixture
def company_settings():
    return {
        "name": "Nội Thất An Phát",
        "address": "12 Thống Nhất, Phan Rang",
        "phone": "0909 123 456",
        "email": "lienhe@anphat.vn",
        "taxId": "4500123456",
        "bankAccount": "Vietcombank\nSTK: 0123456789",
        "defaultQuoteNotes": "Báo giá có hiệu lực 30 ngày.",
        "printOptions": {"title": "BÁO GIÁ", "creatorName": "Trần Thị B", "footer": "Cảm ơn quý khách"},
    }


@pytest.fixture
def quote_payload(sample_items, categories, company_settings):
    """A rendering payload with discount, VAT and a two-tranche installment plan."""
    return {
        "companySettings": company_settings,
        "customerInfo": {"name": "Nguyễn Văn A", "address": "Ninh Thuận", "date": "2025-06-10"},
        "quoteId": "NVA-100625",
        "items": sample_items,
        "mainCategories": categories,
        "applyDiscount": True,
        "discountValue": 700_000,
        "discountType": "amount",
        "applyTax": True,
        "taxPercent": 10,
        "applyInstallments": True,
        "installments": [
            {"name": "Đặt cọc", "value": 50, "type": "percent"},
            {"name": "Bàn giao", "value": 50, "type": "percent"},
        ],
        "today": "2025-06-12",
    }


@pytest.fixture
def sample_sheet():
    """
    Cabinet 1200 × 600 × 800 mm, 2 units produced.
      MDF board   AREA_LW: 1.2 × 0.6 = 0.72 m² × 1 × 250 000 × 1.10 = 198 000
      Hinges      NONE:    4 × 20 000                             =  80 000
      Edge tape   PERIMETER_LW: 2(1.2 + 0.6) = 3.6 m × 10 000      =  36 000
      Labour      5 h × 60 000                                    = 300 000
      Transport   flat                                            =  50 000
      Overhead 40 000, management 20 000, sales 14 000
    Total 738 000, unit cost 369 000.
    """
    return {
        "productName": "Tủ áo",
        "productLength_mm": 1200,
        "productWidth_mm": 600,
        "productHeight_mm": 800,
        "quantityProduced": 2,
        "materials": [
            {"name": "Ván MDF", "unit": "m²", "itemQuantity": 1, "price": 250_000, "waste": 10,
             "linkType": "PRODUCT_AREA_LW"},
            {"name": "Bản lề", "unit": "cái", "itemQuantity": 4, "price": 20_000, "waste": 0,
             "linkType": "NONE"},
            {"name": "Nẹp cạnh", "unit": "m", "itemQuantity": 1, "price": 10_000, "waste": 0,
             "linkType": "PRODUCT_PERIMETER_LW"},
        ],
        "labor": [{"description": "Lắp ráp", "hours": 5, "rate": 60_000}],
        "otherCosts": [{"description": "Vận chuyển", "amount": 50_000}],
        "overheadCost": 40_000,
        "managementCost": 20_000,
        "salesMarketingCost": 14_000,
    }


# ---------------------------------------------------------------------------
# Storage & API fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    """DocumentStore on an empty SQLite file in tmp_path."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool

    from app.db import create_tables
    from app.services.document_store import DocumentStore

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'baogia-test.db'}", poolclass=NullPool)
    asyncio.run(create_tables(engine))
    yield DocumentStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    asyncio.run(engine.dispose())


@pytest.fixture
def client(store):
    """TestClient whose routes use the temp store; requests default to user 'u1'."""
    from fastapi.testclient import TestClient

    from app.api.deps import get_store
    from app.main import app

    app.dependency_overrides[get_store] = lambda: store
    test_client = TestClient(app, headers={"X-User-Id": "u1"})
    yield test_client
    app.dependency_overrides.clear()
