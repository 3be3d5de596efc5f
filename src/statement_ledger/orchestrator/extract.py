"""Thin file readers producing ExtractedDocument values for chunking.

PDFs are rasterised page by page so table layouts survive OCR; spreadsheets
(.xlsx through openpyxl, legacy .xls through xlrd) are rendered sheet by
sheet as CSV text; Word documents become their paragraphs and table rows in
body order; plain text is read as UTF-8.
"""

from __future__ import annotations

import base64
import csv
import io
import mimetypes
import os
from typing import Iterable, List, Sequence

import fitz  # PyMuPDF
import xlrd
from docx import Document
from docx.table import Table
from openpyxl import load_workbook

from ..domain.models import ExtractedDocument, ImageAttachment
from ..errors import UnsupportedDocumentError
from ..logging import get_logger

LOG = get_logger("extract")

MAX_PDF_PAGES = 10
PDF_RENDER_SCALE = 2.0

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"}
SPREADSHEET_EXTS = {".xlsx", ".xlsm"}
LEGACY_SPREADSHEET_EXTS = {".xls"}
WORD_EXTS = {".docx"}
TEXT_EXTS = {".txt", ".csv", ".tsv", ".md", ".json"}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def rasterize_pdf(path: str, *, max_pages: int = MAX_PDF_PAGES, scale: float = PDF_RENDER_SCALE) -> List[ImageAttachment]:
    images: List[ImageAttachment] = []
    with fitz.open(path) as doc:
        pages = min(doc.page_count, max_pages)
        if doc.page_count > max_pages:
            LOG.warning("PDF has %d pages; only the first %d are processed", doc.page_count, max_pages)
        mat = fitz.Matrix(scale, scale)
        for page_index in range(pages):
            pix = doc.load_page(page_index).get_pixmap(matrix=mat)
            images.append(ImageAttachment(mime_type="image/jpeg", data=_b64(pix.tobytes("jpeg"))))
            LOG.debug("Rendered page %d (%dx%d)", page_index + 1, pix.width, pix.height)
    LOG.info("Rasterised %d page(s) from %s", len(images), os.path.basename(path))
    return images


def read_image(path: str) -> ImageAttachment:
    mime = mimetypes.guess_type(path)[0] or "image/jpeg"
    with open(path, "rb") as f:
        return ImageAttachment(mime_type=mime, data=_b64(f.read()))


def _cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _sheet_section(title: str, rows: Iterable[Sequence[object]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return f"--- SHEET: {title} ---\n{buf.getvalue().rstrip()}"


def spreadsheet_text(path: str) -> str:
    """Every sheet as CSV text under a ``--- SHEET: name ---`` marker."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        parts = [_sheet_section(ws.title, ws.iter_rows(values_only=True)) for ws in wb.worksheets]
    finally:
        wb.close()
    return "\n".join(parts)


def _xls_value(cell: xlrd.sheet.Cell, datemode: int) -> object:
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate_as_datetime(cell.value, datemode)
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    return cell.value


def legacy_spreadsheet_text(path: str) -> str:
    """Same layout as :func:`spreadsheet_text` for the old binary .xls format."""
    book = xlrd.open_workbook(path, on_demand=True)
    try:
        parts = []
        for sheet in book.sheets():
            rows = ([_xls_value(c, book.datemode) for c in sheet.row(i)] for i in range(sheet.nrows))
            parts.append(_sheet_section(sheet.name, rows))
    finally:
        book.release_resources()
    return "\n".join(parts)


def word_text(path: str) -> str:
    """Paragraphs and table rows of a .docx in reading order; cells joined by ' | '."""
    doc = Document(path)
    lines: List[str] = []
    for block in doc.iter_inner_content():
        if isinstance(block, Table):
            for row in block.rows:
                cells = [c.text.strip() for c in row.cells]
                if any(cells):
                    lines.append(" | ".join(cells))
        elif block.text.strip():
            lines.append(block.text)
    LOG.debug("Read %d line(s) from %s", len(lines), os.path.basename(path))
    return "\n".join(lines)


def extract_file(path: str) -> ExtractedDocument:
    ext = os.path.splitext(path)[1].lower()
    if ext == ".pdf":
        return ExtractedDocument(images=tuple(rasterize_pdf(path)), source=path)
    if ext in IMAGE_EXTS:
        return ExtractedDocument(images=(read_image(path),), source=path)
    if ext in SPREADSHEET_EXTS:
        return ExtractedDocument(text=spreadsheet_text(path), source=path)
    if ext in LEGACY_SPREADSHEET_EXTS:
        return ExtractedDocument(text=legacy_spreadsheet_text(path), source=path)
    if ext in WORD_EXTS:
        return ExtractedDocument(text=word_text(path), source=path)
    if ext in TEXT_EXTS or not ext:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return ExtractedDocument(text=f.read(), source=path)
    raise UnsupportedDocumentError(f"Unsupported file type: {ext} ({os.path.basename(path)})")


def extract_files(paths: Sequence[str]) -> List[ExtractedDocument]:
    docs: List[ExtractedDocument] = []
    for path in paths:
        doc = extract_file(path)
        if doc.is_empty:
            LOG.warning("No content extracted from %s", path)
            continue
        docs.append(doc)
    return docs
