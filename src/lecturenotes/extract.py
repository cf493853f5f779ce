"""Text extraction for uploaded notes.

PDF pages are read for their embedded text with pypdf. Pages that carry
almost no text (scans, photographed slides) are rasterized with PyMuPDF and
run through Tesseract instead. Images go straight to Tesseract; text and
markdown files are decoded as-is.
"""
from __future__ import annotations

import io
import logging
import re
from pathlib import PurePath
from typing import Callable

import pytesseract
from PIL import Image, UnidentifiedImageError
from pypdf.errors import PdfReadError

from lecturenotes import config
from lecturenotes.models import DocumentStats, ExtractionStatus, FileType
from lecturenotes.pdf_utils import open_pdf, render_page_png

log = logging.getLogger(__name__)

MAX_PAGES_PER_BATCH = 5
MIN_PAGE_TEXT = 50  # fewer stripped characters than this triggers OCR
OCR_SCALE = 2.0
CHUNK_SIZE = 1000

ProgressCallback = Callable[[int, int, ExtractionStatus, str], None]

_EXTENSION_TYPES: dict[str, FileType] = {
    ".pdf": "pdf",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "text",
}
_GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


class ExtractionError(Exception):
    """Raised when a document cannot be turned into text."""


class UnsupportedFileTypeError(Exception):
    """Raised for uploads that are not PDF, image, text or markdown."""

    def __init__(self, filename: str, content_type: str | None):
        self.filename = filename
        self.content_type = content_type
        super().__init__(
            f"Unsupported file '{filename}' ({content_type or 'unknown type'}). "
            "Upload a PDF, PNG/JPEG image, .txt or .md file."
        )


def detect_file_type(filename: str, content_type: str | None) -> FileType:
    ctype = (content_type or "").lower()
    if ctype not in _GENERIC_CONTENT_TYPES:
        if "pdf" in ctype:
            return "pdf"
        if "image" in ctype:
            return "image"
        if "markdown" in ctype:
            return "markdown"
        # browsers often send .md files as text/plain
        if _EXTENSION_TYPES.get(PurePath(filename).suffix.lower()) == "markdown":
            return "markdown"
        return "text"

    suffix = PurePath(filename).suffix.lower()
    try:
        return _EXTENSION_TYPES[suffix]
    except KeyError:
        raise UnsupportedFileTypeError(filename, content_type) from None


def _ocr_png(png_bytes: bytes) -> str:
    with Image.open(io.BytesIO(png_bytes)) as image:
        return pytesseract.image_to_string(image, lang=config.TESSERACT_LANG)


def extract_image_text(image_bytes: bytes) -> str:
    """OCR an image upload. Raises ExtractionError if Tesseract cannot read it."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            text = pytesseract.image_to_string(
                image.convert("RGB"), lang=config.TESSERACT_LANG
            )
    except (UnidentifiedImageError, pytesseract.TesseractError, OSError) as e:
        log.exception("OCR failed for image upload")
        raise ExtractionError("Failed to process image text") from e
    return text.strip()


def extract_pdf_text(
    pdf_bytes: bytes, on_progress: ProgressCallback | None = None
) -> str:
    """Extract text from every page, falling back to OCR on near-empty pages.

    Pages are walked in batches of MAX_PAGES_PER_BATCH and progress is
    reported per page and after each batch.
    """

    def report(page: int, total: int, status: ExtractionStatus, message: str) -> None:
        if on_progress is not None:
            on_progress(page, total, status, message)

    try:
        reader = open_pdf(pdf_bytes)
        total_pages = len(reader.pages)
    except PdfReadError as e:
        log.exception("Could not open PDF")
        report(0, 0, "error", "Failed to extract text from PDF")
        raise ExtractionError("Failed to extract text from PDF") from e

    parts: list[str] = []
    current = 1
    while current <= total_pages:
        batch_end = min(current + MAX_PAGES_PER_BATCH - 1, total_pages)

        for page_num in range(current, batch_end + 1):
            report(
                page_num,
                total_pages,
                "extracting",
                f"Extracting text from page {page_num} of {total_pages}...",
            )
            page_text = reader.pages[page_num - 1].extract_text() or ""

            if len(page_text.strip()) < MIN_PAGE_TEXT:
                report(page_num, total_pages, "ocr", f"Running OCR on page {page_num}...")
                try:
                    png = render_page_png(pdf_bytes, page_num, OCR_SCALE)
                    page_text = _ocr_png(png)
                except (pytesseract.TesseractError, RuntimeError, OSError):
                    log.exception("OCR failed on page %d, keeping embedded text", page_num)

            parts.append(page_text)

        current = batch_end + 1
        done = current > total_pages
        report(
            current,
            total_pages,
            "complete" if done else "extracting",
            "Text extraction complete" if done
            else f"Processed {current - 1} of {total_pages} pages",
        )

    if total_pages == 0:
        report(0, 0, "complete", "Text extraction complete")

    return "\n\n".join(parts).strip()


def extract_text(
    file_type: FileType, data: bytes, on_progress: ProgressCallback | None = None
) -> str:
    if file_type == "pdf":
        return extract_pdf_text(data, on_progress)
    if file_type == "image":
        return extract_image_text(data)
    return data.decode("utf-8", errors="replace").strip()


_SENTENCE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


def split_text_into_chunks(text: str, chunk_size: int = CHUNK_SIZE) -> list[str]:
    """Group whole sentences into chunks of roughly ``chunk_size`` characters."""
    sentences = [s.strip() for s in _SENTENCE.findall(text) if s.strip()] or [text.strip()]
    chunks: list[str] = []
    current = ""
    for sentence in sentences:
        if current and len(current) + 1 + len(sentence) > chunk_size:
            chunks.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if current:
        chunks.append(current)
    return chunks


def count_words(text: str) -> int:
    return len(text.split())


def count_characters(text: str) -> int:
    return len(text)


def count_paragraphs(text: str) -> int:
    return len([p for p in re.split(r"\n\s*\n", text) if p.strip()])


def get_document_stats(text: str) -> DocumentStats:
    return DocumentStats(
        words=count_words(text),
        characters=count_characters(text),
        paragraphs=count_paragraphs(text),
    )
