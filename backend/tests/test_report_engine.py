"""
test_report_engine.py — Tests for PDF rendering with ReportLab.

Tests cover:
  - render_pdf returns PDF bytes for a full quote and for an empty one
  - Deterministic output for identical documents
  - Multi-page documents (page count pass)
  - Failure path: RenderingError with status 500 and a '[Server ReportLab]' detail
  - decode_data_image: valid and broken data URIs
  - Render metrics recorded in the performance tracker
"""

import pytest

from app.services.document_engine import compose_quote_document
from app.services.errors import RenderingError
from app.services.perf_monitor import tracker
from app.services.report_engine import RENDER_FAILED_MESSAGE, decode_data_image

PIXEL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


class TestRenderPdf:

    def test_full_quote(self, report_engine, quote_payload):
        pdf = report_engine.render_pdf(compose_quote_document(quote_payload))
        assert pdf.startswith(b"%PDF")
        assert len(pdf) > 1000

    def test_empty_quote(self, report_engine):
        assert report_engine.render_pdf(compose_quote_document({})).startswith(b"%PDF")

    def test_output_is_deterministic(self, report_engine, quote_payload):
        document = compose_quote_document(quote_payload)
        assert report_engine.render_pdf(document) == report_engine.render_pdf(document)

    def test_item_images_and_logo(self, report_engine, quote_payload):
        quote_payload["companySettings"]["logoDataUrl"] = PIXEL
        quote_payload["items"][0]["imageDataUrl"] = PIXEL
        assert report_engine.render_pdf(compose_quote_document(quote_payload)).startswith(b"%PDF")

    def test_long_quote_spans_pages(self, report_engine, quote_payload):
        item = dict(quote_payload["items"][1], notes="Giao hàng trong 15 ngày. " * 4)
        quote_payload["items"] = [dict(item, id=f"qitem-{n}") for n in range(80)]
        pdf = report_engine.render_pdf(compose_quote_document(quote_payload))
        # one "/Type /Pages" tree plus at least two "/Type /Page" leaves
        assert pdf.count(b"/Type /Page") > 2

    def test_failure_raises_rendering_error(self, report_engine, quote_payload, monkeypatch):
        def boom(layout):
            raise ValueError("bad cell")

        monkeypatch.setattr(report_engine, "_draw_totals", boom)
        with pytest.raises(RenderingError) as exc_info:
            report_engine.render_pdf(compose_quote_document(quote_payload))
        err = exc_info.value
        assert err.status_code == 500
        assert err.message == RENDER_FAILED_MESSAGE
        assert err.detail == "[Server ReportLab] bad cell"


class TestRenderMetrics:

    def test_success_and_failure_counted(self, report_engine, quote_payload, monkeypatch):
        tracker.reset()
        report_engine.render_pdf(compose_quote_document(quote_payload))
        monkeypatch.setattr(report_engine, "_draw_notes", lambda layout: 1 / 0)
        with pytest.raises(RenderingError):
            report_engine.render_pdf(compose_quote_document(quote_payload))
        metrics = tracker.get_metrics()
        assert metrics["render_count_by_kind"]["pdf"] == 1
        assert metrics["error_count_by_kind"]["pdf"] == 1
        tracker.reset()


class TestDecodeDataImage:

    def test_valid_png(self):
        reader = decode_data_image(PIXEL)
        assert reader is not None
        assert reader.getSize() == (1, 1)

    def test_not_a_data_uri(self):
        assert decode_data_image("https://example.com/a.png") is None
        assert decode_data_image("") is None

    def test_corrupt_payload(self):
        assert decode_data_image("data:image/png;base64,AAAA") is None
