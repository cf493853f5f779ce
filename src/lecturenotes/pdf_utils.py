from __future__ import annotations

import io

import fitz  # PyMuPDF
from pypdf import PdfReader


def open_pdf(pdf_bytes: bytes) -> PdfReader:
    return PdfReader(io.BytesIO(pdf_bytes))


def render_page_png(pdf_bytes: bytes, page_num: int, scale: float = 2.0) -> bytes:
    """Rasterize page ``page_num`` (1-indexed) to PNG bytes for OCR."""
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        page = doc.load_page(page_num - 1)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
        return pix.tobytes("png")
