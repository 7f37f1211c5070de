"""
Report Engine — lays a composed quote document out as an A4 PDF.

Drawing is done directly on a ReportLab canvas with a running y-cursor:
company header, title, customer box, the item table (category rows, item
rows with images and discounted prices), totals box, installment schedule,
notes, signature block, and a footer with page numbers on every page.

The document is drawn twice: the first pass counts pages so the footer can
print "Trang X / Y". Canvas output is invariant, so identical documents give
identical bytes.
"""
import base64
import io
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFError, TTFont
from reportlab.pdfgen import canvas

from app.services.document_engine import (
    CategoryRowView,
    INSTALLMENT_COLUMNS,
    ItemRowView,
    QuoteDocument,
)
from app.services.errors import RenderingError
from app.services.perf_monitor import tracker

logger = logging.getLogger("baogia-report")

PDF_FONT_PATH = os.getenv("PDF_FONT_PATH", "")
PDF_FONT_BOLD_PATH = os.getenv("PDF_FONT_BOLD_PATH", "")
DEFAULT_THEME_HEX = "#3B82F6"
RENDER_FAILED_MESSAGE = "A server-side error occurred during PDF generation."

PAGE_W, PAGE_H = A4
MARGIN_X = 15 * mm
MARGIN_TOP = 20 * mm
MARGIN_BOTTOM = 22 * mm
CONTENT_W = PAGE_W - 2 * MARGIN_X
CELL_PAD = 3.5
ITEM_COL_FRACTIONS = (0.04, 0.08, 0.27, 0.05, 0.07, 0.05, 0.11, 0.12, 0.21)
INSTALLMENT_COL_FRACTIONS = (0.08, 0.52, 0.20, 0.20)
ITEM_IMAGE_W = 40.0
ITEM_IMAGE_H = 32.0

TEXT_RGB = (0.12, 0.16, 0.22)
MUTED_RGB = (0.29, 0.33, 0.39)
BORDER_RGB = (0.82, 0.84, 0.86)
HEADER_FILL_RGB = (0.95, 0.96, 0.96)
CATEGORY_FILL_RGB = (0.92, 0.95, 1.0)
DANGER_RGB = (0.94, 0.27, 0.27)


def _hex_to_rgb(hex_color: str) -> tuple:
    """Convert '#RRGGBB' to (r, g, b) floats 0-1."""
    h = (hex_color or "").lstrip("#")
    if len(h) != 6:
        return (0.23, 0.51, 0.96)
    try:
        return (int(h[0:2], 16) / 255, int(h[2:4], 16) / 255, int(h[4:6], 16) / 255)
    except ValueError:
        return (0.23, 0.51, 0.96)


def _register_fonts(regular_path: str, bold_path: str) -> Tuple[str, str]:
    """Register TTF fonts for Vietnamese glyphs; Helvetica when none are configured."""
    if not regular_path:
        return "Helvetica", "Helvetica-Bold"
    try:
        pdfmetrics.registerFont(TTFont("BaoGia", regular_path))
        bold = "BaoGia"
        if bold_path:
            pdfmetrics.registerFont(TTFont("BaoGia-Bold", bold_path))
            bold = "BaoGia-Bold"
        return "BaoGia", bold
    except (TTFError, OSError) as e:
        logger.warning(f"PDF font could not be loaded ({regular_path}): {e}; using Helvetica")
        return "Helvetica", "Helvetica-Bold"


def decode_data_image(src: str) -> Optional[ImageReader]:
    """ImageReader for a base64 data URI, or None when it cannot be decoded."""
    if not src or not src.startswith("data:") or "," not in src:
        return None
    try:
        raw = base64.b64decode(src.split(",", 1)[1])
        reader = ImageReader(io.BytesIO(raw))
        reader.getSize()
        return reader
    except Exception as e:
        logger.warning(f"Skipping undecodable image: {e}")
        return None


# ── Cell model ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _Run:
    text: str
    font: str
    size: float = 9.0
    color: tuple = TEXT_RGB
    align: str = "left"
    strike: bool = False

    @property
    def leading(self) -> float:
        return self.size * 1.3


class _Layout:
    """Canvas plus cursor; owns pagination and page furniture."""

    def __init__(self, engine: "ReportEngine", c: canvas.Canvas, document: QuoteDocument,
                 total_pages: Optional[int]):
        self.engine = engine
        self.c = c
        self.doc = document
        self.total_pages = total_pages
        self.y = PAGE_H - MARGIN_TOP
        self._images: Dict[str, Optional[ImageReader]] = {}
        self._draw_footer()

    # -- fonts / helpers --------------------------------------------------

    @property
    def font(self) -> str:
        return self.engine.font

    @property
    def bold(self) -> str:
        return self.engine.font_bold

    def image(self, src: str) -> Optional[ImageReader]:
        if src not in self._images:
            self._images[src] = decode_data_image(src)
        return self._images[src]

    def wrap(self, run: _Run, width: float) -> List[str]:
        if not run.text:
            return []
        lines: List[str] = []
        for para in run.text.split("\n"):
            lines.extend(simpleSplit(para, run.font, run.size, max(width, 1.0)) or [""])
        return lines

    def cell_lines(self, runs: Sequence[_Run], width: float) -> List[Tuple[str, _Run]]:
        out: List[Tuple[str, _Run]] = []
        for run in runs:
            out.extend((line, run) for line in self.wrap(run, width - 2 * CELL_PAD))
        return out

    def draw_lines(self, lines: Sequence[Tuple[str, _Run]], x: float, width: float, top: float) -> None:
        c = self.c
        y = top - CELL_PAD
        for text, run in lines:
            y -= run.size
            c.setFont(run.font, run.size)
            c.setFillColorRGB(*run.color)
            if run.align == "right":
                c.drawRightString(x + width - CELL_PAD, y, text)
                text_x = x + width - CELL_PAD - c.stringWidth(text, run.font, run.size)
            elif run.align == "center":
                c.drawCentredString(x + width / 2, y, text)
                text_x = x + (width - c.stringWidth(text, run.font, run.size)) / 2
            else:
                c.drawString(x + CELL_PAD, y, text)
                text_x = x + CELL_PAD
            if run.strike:
                c.setStrokeColorRGB(*run.color)
                c.setLineWidth(0.6)
                c.line(text_x, y + run.size * 0.3, text_x + c.stringWidth(text, run.font, run.size), y + run.size * 0.3)
            y -= run.leading - run.size

    @staticmethod
    def lines_height(lines: Sequence[Tuple[str, _Run]]) -> float:
        return sum(run.leading for _, run in lines)

    # -- pagination -------------------------------------------------------

    def _draw_footer(self) -> None:
        c = self.c
        page_num = c.getPageNumber()
        c.setStrokeColorRGB(*BORDER_RGB)
        c.setLineWidth(0.6)
        c.line(MARGIN_X, 15 * mm, PAGE_W - MARGIN_X, 15 * mm)
        c.setFont(self.font, 8)
        c.setFillColorRGB(0.47, 0.47, 0.47)
        footer = " - ".join(self.doc.footer_lines)
        if footer:
            c.drawString(MARGIN_X, 10 * mm, footer)
        label = f"Trang {page_num}" if self.total_pages is None else f"Trang {page_num} / {self.total_pages}"
        c.drawRightString(PAGE_W - MARGIN_X, 10 * mm, label)

    def new_page(self) -> None:
        self.c.showPage()
        self.y = PAGE_H - MARGIN_TOP
        self._draw_footer()

    def ensure(self, height: float) -> bool:
        """Start a new page when *height* does not fit. True if a break happened."""
        if self.y - height < MARGIN_BOTTOM:
            self.new_page()
            return True
        return False


# ── Engine ────────────────────────────────────────────────────────────────────

class ReportEngine:

    def __init__(self, font_path: Optional[str] = None, bold_font_path: Optional[str] = None,
                 theme_color_hex: str = DEFAULT_THEME_HEX):
        self.font, self.font_bold = _register_fonts(
            font_path if font_path is not None else PDF_FONT_PATH,
            bold_font_path if bold_font_path is not None else PDF_FONT_BOLD_PATH,
        )
        self.theme_rgb = _hex_to_rgb(theme_color_hex)

    def render_pdf(self, document: QuoteDocument) -> bytes:
        """
        Render *document* to PDF bytes.

        Raises RenderingError (status 500) when ReportLab fails; the caller
        shows the message and does not retry.
        """
        start = time.perf_counter()
        try:
            total_pages = self._draw(io.BytesIO(), document, None)
            buffer = io.BytesIO()
            self._draw(buffer, document, total_pages)
        except Exception as e:
            tracker.record_render_error("pdf")
            logger.error(f"PDF rendering failed for quote {document.quote_id}: {e}", exc_info=True)
            raise RenderingError(RENDER_FAILED_MESSAGE, status_code=500,
                                 detail=f"[Server ReportLab] {e}") from e

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        tracker.record_render_complete("pdf", duration_ms)
        logger.info("quote pdf rendered",
                    extra={"quote_id": document.quote_id, "duration_ms": duration_ms})
        return buffer.getvalue()

    def _draw(self, buffer: io.BytesIO, document: QuoteDocument, total_pages: Optional[int]) -> int:
        c = canvas.Canvas(buffer, pagesize=A4, invariant=1)
        c.setTitle(f"{document.title} - {document.quote_id}")
        layout = _Layout(self, c, document, total_pages)

        self._draw_company_header(layout)
        self._draw_title(layout)
        self._draw_customer(layout)
        self._draw_items_table(layout)
        self._draw_totals(layout)
        self._draw_installments(layout)
        self._draw_notes(layout)
        self._draw_signature(layout)

        pages = c.getPageNumber()
        c.showPage()
        c.save()
        return pages

    # ── Sections ──────────────────────────────────────────────────────────────

    def _draw_company_header(self, layout: _Layout) -> None:
        c, header = layout.c, layout.doc.header
        top = layout.y
        logo = layout.image(header.logo) if header.logo else None
        text_w = CONTENT_W - (80 if logo else 0)

        y = top - 14
        c.setFillColorRGB(*self.theme_rgb)
        c.setFont(self.font_bold, 14)
        for line in simpleSplit(header.company_name, self.font_bold, 14, text_w) or [""]:
            c.drawString(MARGIN_X, y, line)
            y -= 17
        c.setFont(self.font, 9)
        c.setFillColorRGB(*MUTED_RGB)
        for text in (header.address, header.contact_line, header.tax_line):
            if not text:
                continue
            for line in simpleSplit(text, self.font, 9, text_w):
                c.drawString(MARGIN_X, y, line)
                y -= 12

        if logo is not None:
            c.drawImage(logo, PAGE_W - MARGIN_X - 70, top - 50, width=70, height=50,
                        preserveAspectRatio=True, anchor="ne", mask="auto")
            y = min(y, top - 56)
        layout.y = y - 4

    def _draw_title(self, layout: _Layout) -> None:
        c = layout.c
        layout.y -= 28
        c.setFont(self.font_bold, 20)
        c.setFillColorRGB(*TEXT_RGB)
        c.drawCentredString(PAGE_W / 2, layout.y, layout.doc.title.upper())
        layout.y -= 20

    def _draw_customer(self, layout: _Layout) -> None:
        c, customer = layout.c, layout.doc.customer
        half = CONTENT_W / 2
        columns = (
            (("Khách hàng: ", customer.name), ("Địa chỉ: ", customer.address)),
            (("Số báo giá: ", customer.quote_id), ("Ngày: ", customer.date)),
        )
        wrapped = []
        for col in columns:
            entries = []
            for label, value in col:
                label_w = c.stringWidth(label, self.font_bold, 9)
                lines = simpleSplit(value, self.font, 9, half - 2 * CELL_PAD - label_w - 6) or [""]
                entries.append((label, label_w, lines))
            wrapped.append(entries)
        height = max(sum(len(lines) for _, _, lines in col) for col in wrapped) * 12 + 14

        layout.ensure(height)
        top = layout.y
        c.setStrokeColorRGB(*BORDER_RGB)
        c.setLineWidth(0.8)
        c.roundRect(MARGIN_X, top - height, CONTENT_W, height, 6, fill=0, stroke=1)
        for col_idx, entries in enumerate(wrapped):
            x = MARGIN_X + col_idx * half + CELL_PAD + 4
            y = top - 16
            for label, label_w, lines in entries:
                c.setFillColorRGB(*TEXT_RGB)
                c.setFont(self.font_bold, 9)
                c.drawString(x, y, label)
                c.setFont(self.font, 9)
                for line in lines:
                    c.drawString(x + label_w, y, line)
                    y -= 12
        layout.y = top - height - 14

    # -- item table ---------------------------------------------------------

    def _item_widths(self) -> List[float]:
        return [CONTENT_W * f for f in ITEM_COL_FRACTIONS]

    def _draw_table_header(self, layout: _Layout, labels: Sequence[str], widths: Sequence[float]) -> None:
        cells = [layout.cell_lines([_Run(label, self.font_bold, 8, MUTED_RGB, "center")], w)
                 for label, w in zip(labels, widths)]
        height = max(layout.lines_height(lines) for lines in cells) + 2 * CELL_PAD
        layout.ensure(height)
        self._draw_row(layout, cells, widths, height, fill=HEADER_FILL_RGB)

    def _draw_row(self, layout: _Layout, cells, widths, height: float, fill: Optional[tuple] = None) -> None:
        c = layout.c
        top = layout.y
        if fill is not None:
            c.setFillColorRGB(*fill)
            c.rect(MARGIN_X, top - height, sum(widths), height, fill=1, stroke=0)
        c.setStrokeColorRGB(*BORDER_RGB)
        c.setLineWidth(0.5)
        x = MARGIN_X
        for lines, w in zip(cells, widths):
            c.rect(x, top - height, w, height, fill=0, stroke=1)
            if lines:
                layout.draw_lines(lines, x, w, top)
            x += w
        layout.y = top - height

    def _item_cells(self, layout: _Layout, row: ItemRowView, widths: Sequence[float]):
        f, b = self.font, self.font_bold
        name_runs = [_Run(row.name, b, 9)]
        if row.dimensions:
            name_runs.append(_Run(row.dimensions, f, 8, MUTED_RGB))
        if row.spec:
            name_runs.append(_Run(row.spec, f, 8, MUTED_RGB))
        price_runs = []
        if row.discounted:
            price_runs.append(_Run(row.original_price, f, 8, MUTED_RGB, "right", strike=True))
        price_runs.append(_Run(row.price, b, 9, TEXT_RGB, "right"))
        if row.discount_badge:
            price_runs.append(_Run(row.discount_badge, f, 8, DANGER_RGB, "right"))

        runs = [
            [_Run(str(row.index), f, 9, TEXT_RGB, "center")],
            [],
            name_runs,
            [_Run(row.unit, f, 9, TEXT_RGB, "center")],
            [_Run(row.measure, f, 9, TEXT_RGB, "right")],
            [_Run(row.quantity, f, 9, TEXT_RGB, "right")],
            price_runs,
            [_Run(row.line_total, f, 9, TEXT_RGB, "right")],
            [_Run(row.notes, f, 8, MUTED_RGB)],
        ]
        return [layout.cell_lines(r, w) for r, w in zip(runs, widths)]

    def _draw_items_table(self, layout: _Layout) -> None:
        doc = layout.doc
        widths = self._item_widths()
        labels = [label for label, _ in doc.columns]
        self._draw_table_header(layout, labels, widths)

        for row in doc.rows:
            if isinstance(row, CategoryRowView):
                self._draw_category_row(layout, row, widths, labels)
                continue
            cells = self._item_cells(layout, row, widths)
            image = layout.image(row.image) if row.image else None
            height = max(layout.lines_height(lines) for lines in cells) + 2 * CELL_PAD
            if image is not None:
                height = max(height, ITEM_IMAGE_H + 2 * CELL_PAD)
            if layout.ensure(height):
                self._draw_table_header(layout, labels, widths)
            top = layout.y
            self._draw_row(layout, cells, widths, height)
            if image is not None:
                img_x = MARGIN_X + widths[0] + (widths[1] - min(ITEM_IMAGE_W, widths[1] - 4)) / 2
                layout.c.drawImage(image, img_x, top - CELL_PAD - ITEM_IMAGE_H,
                                   width=min(ITEM_IMAGE_W, widths[1] - 4), height=ITEM_IMAGE_H,
                                   preserveAspectRatio=True, anchor="c", mask="auto")

    def _draw_category_row(self, layout: _Layout, row: CategoryRowView, widths, labels) -> None:
        b = self.font_bold
        merged = [widths[0], sum(widths[1:7]), widths[7], widths[8]]
        cells = [
            layout.cell_lines([_Run(row.label, b, 9.5, self.theme_rgb, "center")], merged[0]),
            layout.cell_lines([_Run(row.name, b, 9.5, self.theme_rgb)], merged[1]),
            layout.cell_lines([_Run(row.total, b, 9.5, self.theme_rgb, "right")], merged[2]),
            [],
        ]
        height = max(layout.lines_height(lines) for lines in cells) + 2 * CELL_PAD
        if layout.ensure(height):
            self._draw_table_header(layout, labels, widths)
        self._draw_row(layout, cells, merged, height, fill=CATEGORY_FILL_RGB)

    # -- totals / installments / notes / signature --------------------------

    def _draw_totals(self, layout: _Layout) -> None:
        c = layout.c
        lines = layout.doc.totals
        box_w = 90 * mm
        row_h = 16
        height = len(lines) * row_h + 12
        layout.y -= 12
        layout.ensure(height)
        top = layout.y
        x0 = PAGE_W - MARGIN_X - box_w
        c.setStrokeColorRGB(*BORDER_RGB)
        c.setLineWidth(0.8)
        c.roundRect(x0, top - height, box_w, height, 6, fill=0, stroke=1)

        y = top - 6
        for line in lines:
            y -= row_h
            if line.emphasis:
                c.setStrokeColorRGB(*BORDER_RGB)
                c.line(x0 + 6, y + row_h - 3, x0 + box_w - 6, y + row_h - 3)
                c.setFillColorRGB(*self.theme_rgb)
                c.setFont(self.font_bold, 11)
            else:
                c.setFillColorRGB(*MUTED_RGB)
                c.setFont(self.font, 9)
            c.drawRightString(x0 + box_w * 0.55, y + 4, line.label)
            if not line.emphasis:
                c.setFillColorRGB(*TEXT_RGB)
                c.setFont(self.font_bold, 9)
            c.drawRightString(x0 + box_w - 8, y + 4, line.value)
        layout.y = top - height - 10

    def _draw_installments(self, layout: _Layout) -> None:
        block = layout.doc.installments
        if block is None:
            return
        c = layout.c
        f, b = self.font, self.font_bold
        widths = [CONTENT_W * frac for frac in INSTALLMENT_COL_FRACTIONS]

        layout.y -= 10
        layout.ensure(60)
        c.setFont(b, 11)
        c.setFillColorRGB(*TEXT_RGB)
        c.drawString(MARGIN_X, layout.y - 11, "LỊCH THANH TOÁN")
        layout.y -= 18
        self._draw_table_header(layout, INSTALLMENT_COLUMNS, widths)

        for r in block.rows:
            cells = [
                layout.cell_lines([_Run(str(r.index), f, 9)], widths[0]),
                layout.cell_lines([_Run(r.name, f, 9)], widths[1]),
                layout.cell_lines([_Run(r.value, f, 9, TEXT_RGB, "right")], widths[2]),
                layout.cell_lines([_Run(r.amount, f, 9, TEXT_RGB, "right")], widths[3]),
            ]
            height = max(layout.lines_height(lines) for lines in cells) + 2 * CELL_PAD
            if layout.ensure(height):
                self._draw_table_header(layout, INSTALLMENT_COLUMNS, widths)
            self._draw_row(layout, cells, widths, height)

        merged = [sum(widths[:3]), widths[3]]
        for label, value in (("TỔNG CỘNG CÁC ĐỢT", block.allocated), ("CÒN LẠI", block.remaining)):
            cells = [
                layout.cell_lines([_Run(label, b, 9, TEXT_RGB, "right")], merged[0]),
                layout.cell_lines([_Run(value, b, 9, TEXT_RGB, "right")], merged[1]),
            ]
            height = max(layout.lines_height(lines) for lines in cells) + 2 * CELL_PAD
            layout.ensure(height)
            self._draw_row(layout, cells, merged, height, fill=HEADER_FILL_RGB)

    def _draw_section_text(self, layout: _Layout, heading: str, lines: Sequence[str]) -> None:
        c = layout.c
        layout.ensure(30)
        layout.y -= 14
        c.setFont(self.font_bold, 11)
        c.setFillColorRGB(*TEXT_RGB)
        c.drawString(MARGIN_X, layout.y, heading)
        layout.y -= 6
        c.setFont(self.font, 9)
        for text in lines:
            for line in simpleSplit(text, self.font, 9, CONTENT_W) or [""]:
                layout.ensure(12)
                layout.y -= 12
                c.setFont(self.font, 9)
                c.setFillColorRGB(*TEXT_RGB)
                c.drawString(MARGIN_X, layout.y, line)

    def _draw_notes(self, layout: _Layout) -> None:
        notes = layout.doc.notes
        if notes.empty:
            return
        layout.y -= 16
        if notes.bank_lines:
            self._draw_section_text(layout, "THÔNG TIN CHUYỂN KHOẢN", notes.bank_lines)
        if notes.notes:
            layout.y -= 8
            self._draw_section_text(layout, "GHI CHÚ CHUNG", notes.notes.splitlines())

    def _draw_signature(self, layout: _Layout) -> None:
        c, sig = layout.c, layout.doc.signature
        layout.y -= 30
        layout.ensure(90)
        center_x = PAGE_W - MARGIN_X - CONTENT_W * 0.2
        y = layout.y
        c.setFillColorRGB(*TEXT_RGB)
        c.setFont(self.font, 9)
        c.drawCentredString(center_x, y, sig.place_date)
        y -= 13
        c.setFont(self.font_bold, 9)
        c.drawCentredString(center_x, y, sig.role)
        y -= 48
        if sig.creator:
            c.drawCentredString(center_x, y, sig.creator)
        layout.y = y - 10
