"""
test_document_engine.py — Unit tests for quote document composition.

Tests cover:
  - normalize_quote_data: defaults, re-pricing, both installment input shapes
  - build_document: header/customer blocks, category and item rows, totals lines,
    installment block, notes, signature and footer
  - render_html: labels, escaping, remote images dropped
  - render_doc_definition: JSON-able pdfmake-style tree
  - Both sinks give identical output for identical input
"""

import copy
import json

from app.services.document_engine import (
    DEFAULT_SIGNATURE_LOCATION,
    DEFAULT_TITLE,
    CategoryRowView,
    ItemRowView,
    build_item_row,
    compose_quote_doc_definition,
    compose_quote_document,
    compose_quote_html,
    dimensions_label,
    normalize_quote_data,
    safe_image,
)

PIXEL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


# ===========================================================================
# Class 1: Normalisation
# ===========================================================================

class TestNormalize:

    def test_empty_payload_defaults(self):
        data = normalize_quote_data(None)
        assert data.quote_id == "N/A"
        assert data.company.title == DEFAULT_TITLE
        assert data.company.signature_location == DEFAULT_SIGNATURE_LOCATION
        assert data.items == ()
        assert data.totals.grand_total == 0

    def test_totals_recomputed_from_items(self, quote_payload):
        """12 700 000 − 700 000 = 12 000 000, + 10% VAT = 13 200 000."""
        data = normalize_quote_data(quote_payload)
        assert abs(data.totals.grand_total - 13_200_000) < 1e-4

    def test_stale_line_totals_are_ignored(self, quote_payload):
        quote_payload["items"] = [dict(quote_payload["items"][2], lineTotal=1)]
        quote_payload["applyDiscount"] = False
        quote_payload["applyTax"] = False
        data = normalize_quote_data(quote_payload)
        assert data.totals.sub_total == 500_000

    def test_missing_apply_flags_mean_off(self, quote_payload):
        del quote_payload["applyDiscount"]
        del quote_payload["applyTax"]
        data = normalize_quote_data(quote_payload)
        assert abs(data.totals.grand_total - 12_700_000) < 1e-4

    def test_installments_object_shape(self, quote_payload):
        del quote_payload["applyInstallments"]
        quote_payload["installments"] = {"enabled": True, "data": [{"name": "Một lần", "value": 100, "type": "percent"}]}
        data = normalize_quote_data(quote_payload)
        assert data.schedule.visible
        assert data.schedule.remaining == 0.0

    def test_dates_formatted(self, quote_payload):
        data = normalize_quote_data(quote_payload)
        assert data.customer.date == "10/06/2025"
        assert data.today == "12/06/2025"

    def test_remote_logo_dropped(self, quote_payload):
        quote_payload["companySettings"]["logoDataUrl"] = "https://example.com/logo.png"
        assert normalize_quote_data(quote_payload).company.logo_data_url == ""

    def test_categories_without_id_dropped(self, quote_payload):
        quote_payload["mainCategories"].append({"name": "No id"})
        assert len(normalize_quote_data(quote_payload).categories) == 2


# ===========================================================================
# Class 2: Block tree
# ===========================================================================

class TestBuildDocument:

    def test_header_and_customer(self, quote_payload):
        doc = compose_quote_document(quote_payload)
        assert doc.header.company_name == "NỘI THẤT AN PHÁT"
        assert doc.header.tax_line == "MST: 4500123456"
        assert doc.customer.name == "Nguyễn Văn A"
        assert doc.customer.quote_id == "NVA-100625"

    def test_rows_in_category_order(self, quote_payload):
        doc = compose_quote_document(quote_payload)
        kinds = [r.kind for r in doc.rows]
        assert kinds == ["category", "item", "category", "item", "item"]
        first = doc.rows[0]
        assert isinstance(first, CategoryRowView)
        assert first.label == "I"
        assert first.total == "9.000.000"
        assert first.name == "PHÒNG KHÁCH"

    def test_totals_lines(self, quote_payload):
        doc = compose_quote_document(quote_payload)
        labels = [line.label for line in doc.totals]
        assert labels == ["Tạm tính:", "Giảm giá:", "Thuế VAT (10%):", "Tổng cộng:"]
        assert doc.totals[1].value == "- 700.000 ₫"
        assert doc.totals[-1].value == "13.200.000 ₫"
        assert doc.totals[-1].emphasis

    def test_percent_discount_label(self, quote_payload):
        quote_payload["discountType"] = "percent"
        quote_payload["discountValue"] = 5
        doc = compose_quote_document(quote_payload)
        assert doc.totals[1].label == "Giảm giá (5%):"

    def test_installment_block(self, quote_payload):
        block = compose_quote_document(quote_payload).installments
        assert block is not None
        assert [r.amount for r in block.rows] == ["6.600.000 ₫", "6.600.000 ₫"]
        assert block.remaining == "0 ₫"

    def test_no_installment_block_when_disabled(self, quote_payload):
        quote_payload["applyInstallments"] = False
        assert compose_quote_document(quote_payload).installments is None

    def test_signature_and_footer(self, quote_payload):
        doc = compose_quote_document(quote_payload)
        assert doc.signature.place_date == "Phan Rang, 12/06/2025"
        assert doc.signature.creator == "Trần Thị B"
        assert doc.footer_lines == ("Cảm ơn quý khách",)
        assert doc.notes.bank_lines == ("Vietcombank", "STK: 0123456789")

    def test_configured_signature_location(self, quote_payload):
        quote_payload["companySettings"]["printOptions"]["signatureLocation"] = "Đà Lạt"
        assert compose_quote_document(quote_payload).signature.place_date.startswith("Đà Lạt, ")


class TestItemRow:

    def test_discounted_item(self, sample_items):
        row = build_item_row(sample_items[1], 2)
        assert isinstance(row, ItemRowView)
        assert row.name == "SOFA"
        assert row.original_price == "5.000.000"
        assert row.price == "4.500.000"
        assert row.discount_badge == "(-10%)"
        assert row.discounted

    def test_area_item_measure_and_dimensions(self, sample_items):
        row = build_item_row(sample_items[0], 1)
        assert row.measure == "1,6"
        assert row.dimensions == "KT: D 2000mm x C 800mm"
        assert not row.discounted

    def test_amount_discount_has_no_badge(self):
        row = build_item_row({"name": "x", "originalPrice": 100, "itemDiscountValue": 10,
                              "itemDiscountType": "amount", "quantity": 1}, 1)
        assert row.original_price == "100"
        assert row.discount_badge == ""

    def test_unnamed_item(self):
        assert build_item_row({}, 1).name == "[CHƯA CÓ TÊN]"

    def test_dimensions_label_skips_missing(self):
        assert dimensions_label({"length": 1200, "depth": 400}) == "KT: D 1200mm x S 400mm"
        assert dimensions_label({}) == ""

    def test_safe_image(self):
        assert safe_image(PIXEL) == PIXEL
        assert safe_image("javascript:alert(1)") == ""


# ===========================================================================
# Class 3: Sinks
# ===========================================================================

class TestRenderHtml:

    def test_contains_labels_and_figures(self, quote_payload):
        html = compose_quote_html(quote_payload)
        assert "NỘI THẤT AN PHÁT" in html
        assert "Nguyễn Văn A" in html
        assert "13.200.000 ₫" in html
        assert "LỊCH THANH TOÁN" in html
        assert "Phan Rang, 12/06/2025" in html

    def test_user_text_is_escaped(self, quote_payload):
        quote_payload["customerInfo"]["name"] = "<script>alert(1)</script>"
        html = compose_quote_html(quote_payload)
        assert "<script>alert(1)</script>" not in html
        assert "&lt;script&gt;" in html

    def test_empty_payload_renders(self):
        assert "BÁO GIÁ" in compose_quote_html({})

    def test_same_payload_same_html(self, quote_payload):
        first = compose_quote_html(quote_payload)
        second = compose_quote_html(copy.deepcopy(quote_payload))
        assert first.encode("utf-8") == second.encode("utf-8")


class TestDocDefinition:

    def test_structure(self, quote_payload):
        definition = compose_quote_doc_definition(quote_payload)
        assert definition["pageSize"] == "A4"
        assert definition["info"]["title"] == "BÁO GIÁ - NVA-100625"
        assert definition["footerText"] == "Cảm ơn quý khách"
        item_table = definition["content"][2]["table"]
        # header + 2 category rows + 3 item rows
        assert len(item_table["body"]) == 6
        assert all(len(row) == 9 for row in item_table["body"])

    def test_is_json_serialisable(self, quote_payload):
        json.dumps(compose_quote_doc_definition(quote_payload), ensure_ascii=False)

    def test_same_payload_same_definition(self, quote_payload):
        first = json.dumps(compose_quote_doc_definition(quote_payload), ensure_ascii=False, sort_keys=True)
        second = json.dumps(compose_quote_doc_definition(copy.deepcopy(quote_payload)), ensure_ascii=False, sort_keys=True)
        assert first == second

    def test_installment_section_present(self, quote_payload):
        texts = [block.get("text") for block in compose_quote_doc_definition(quote_payload)["content"]]
        assert "LỊCH THANH TOÁN" in texts
