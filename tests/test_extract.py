import pytest
import pytesseract

from lecturenotes import extract
from lecturenotes.extract import (
    ExtractionError,
    UnsupportedFileTypeError,
    detect_file_type,
    extract_pdf_text,
    extract_text,
    get_document_stats,
    split_text_into_chunks,
)

LONG_PAGE = (
    "Photosynthesis converts light energy into chemical energy stored in glucose. "
    "It takes place in the chloroplasts of plant cells."
)


@pytest.mark.parametrize(
    ("filename", "content_type", "expected"),
    [
        ("slides.pdf", "application/pdf", "pdf"),
        ("board.jpg", "image/jpeg", "image"),
        ("readme.md", "text/markdown", "markdown"),
        ("readme.md", "text/plain", "markdown"),
        ("notes.txt", "text/plain", "text"),
        ("scan.png", "application/octet-stream", "image"),
        ("week1.markdown", None, "markdown"),
        ("paper.PDF", "", "pdf"),
    ],
)
def test_detect_file_type(filename, content_type, expected):
    assert detect_file_type(filename, content_type) == expected


def test_detect_file_type_rejects_unknown_binary():
    with pytest.raises(UnsupportedFileTypeError) as exc_info:
        detect_file_type("archive.zip", "application/octet-stream")
    assert exc_info.value.filename == "archive.zip"


def test_extract_pdf_text_reads_embedded_text(pdf_factory, monkeypatch):
    def no_ocr(_png):
        raise AssertionError("OCR should not run on pages with text")

    monkeypatch.setattr(extract, "_ocr_png", no_ocr)
    text = extract_pdf_text(pdf_factory([LONG_PAGE, LONG_PAGE.replace("glucose", "sugar")]))

    assert "Photosynthesis" in text
    assert "sugar" in text
    assert "\n\n" in text


def test_extract_pdf_text_falls_back_to_ocr_on_blank_pages(pdf_factory, monkeypatch):
    monkeypatch.setattr(extract, "_ocr_png", lambda png: "Handwritten derivation of Bayes rule")
    events = []

    text = extract_pdf_text(
        pdf_factory([LONG_PAGE, ""]),
        on_progress=lambda *event: events.append(event),
    )

    assert "Photosynthesis" in text
    assert text.endswith("Handwritten derivation of Bayes rule")
    assert (2, 2, "ocr", "Running OCR on page 2...") in events


def test_extract_pdf_text_keeps_going_when_ocr_fails(pdf_factory, monkeypatch):
    def broken(_png):
        raise pytesseract.TesseractError(1, "tesseract crashed")

    monkeypatch.setattr(extract, "_ocr_png", broken)
    text = extract_pdf_text(pdf_factory(["", LONG_PAGE]))

    assert "Photosynthesis" in text


def test_extract_pdf_text_reports_progress_per_batch(pdf_factory, monkeypatch):
    monkeypatch.setattr(extract, "_ocr_png", lambda png: "")
    events = []

    extract_pdf_text(pdf_factory([LONG_PAGE] * 7), on_progress=lambda *e: events.append(e))

    page_events = [e for e in events if e[2] == "extracting" and e[3].startswith("Extracting")]
    assert [e[0] for e in page_events] == [1, 2, 3, 4, 5, 6, 7]
    assert (6, 7, "extracting", "Processed 5 of 7 pages") in events
    assert events[-1] == (8, 7, "complete", "Text extraction complete")


def test_extract_pdf_text_rejects_garbage():
    events = []
    with pytest.raises(ExtractionError):
        extract_pdf_text(b"definitely not a pdf", on_progress=lambda *e: events.append(e))
    assert events == [(0, 0, "error", "Failed to extract text from PDF")]


def test_extract_text_decodes_markdown():
    data = "# Week 3\n\nLimits and continuity\n".encode("utf-8")
    assert extract_text("markdown", data) == "# Week 3\n\nLimits and continuity"


def test_extract_text_replaces_undecodable_bytes():
    assert extract_text("text", b"caf\xe9 notes") == "caf\ufffd notes"


def test_extract_text_dispatches_images(monkeypatch):
    monkeypatch.setattr(extract, "extract_image_text", lambda data: "whiteboard")
    assert extract_text("image", b"\x89PNG") == "whiteboard"


def test_extract_image_text_wraps_unreadable_images():
    with pytest.raises(ExtractionError):
        extract.extract_image_text(b"not an image")


def test_split_text_into_chunks_keeps_sentences_whole():
    text = "First sentence here. Second one follows! Is this the third? Trailing words"
    chunks = split_text_into_chunks(text, chunk_size=40)

    assert chunks == [
        "First sentence here. Second one follows!",
        "Is this the third? Trailing words",
    ]


def test_split_text_without_terminators_is_one_chunk():
    assert split_text_into_chunks("no punctuation at all") == ["no punctuation at all"]


def test_document_stats():
    stats = get_document_stats("One two three.\n\nFour five.\n  \nSix")
    assert stats.words == 6
    assert stats.paragraphs == 3
    assert stats.characters == len("One two three.\n\nFour five.\n  \nSix")


def test_document_stats_for_empty_text():
    stats = get_document_stats("")
    assert (stats.words, stats.characters, stats.paragraphs) == (0, 0, 0)
