"""Background text extraction for uploaded notes, with progress tracking."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from lecturenotes import chat_sessions
from lecturenotes.classify import detect_category, generate_summary, normalize_tags, suggest_tags
from lecturenotes.extract import extract_text
from lecturenotes.models import ExtractionProgress, ExtractionStatus, FileType
from lecturenotes.store import NoteStore

log = logging.getLogger(__name__)

# Latest progress per note id. Lost on restart.
_progress: dict[str, ExtractionProgress] = {}


def get_progress(note_id: str) -> ExtractionProgress | None:
    return _progress.get(note_id)


def is_running(note_id: str) -> bool:
    progress = _progress.get(note_id)
    return progress is not None and progress.status in ("extracting", "ocr")


def start(note_id: str) -> ExtractionProgress:
    """Mark extraction as queued so clients polling right away see it."""
    progress = ExtractionProgress(note_id=note_id, status="extracting", message="Queued")
    _progress[note_id] = progress
    return progress


def forget(note_id: str) -> None:
    _progress.pop(note_id, None)


def run_extraction(
    store: NoteStore,
    note_id: str,
    file_type: FileType,
    data: bytes,
    category: str | None = None,
    tags: Sequence[str] = (),
) -> ExtractionProgress:
    """Extract text, infer category and tags, and save the results on the note.

    A user-chosen category is never overwritten. Suggested tags are appended
    to the ones the user already gave.
    """
    start(note_id)

    def on_progress(page: int, total: int, status: ExtractionStatus, message: str) -> None:
        _progress[note_id] = ExtractionProgress(
            note_id=note_id,
            current_page=page,
            total_pages=total,
            status=status,
            message=message,
        )

    try:
        text = extract_text(file_type, data, on_progress)

        inferred = detect_category(text) if text and not category else None
        current_tags = normalize_tags(tags)
        merged = normalize_tags([*current_tags, *suggest_tags(text, current_tags)])

        store.set_content(
            note_id,
            text,
            generate_summary(text),
            category=inferred,
            tags=merged if merged != current_tags else None,
        )
        chat_sessions.invalidate(note_id=note_id)
    except Exception as e:
        log.exception("Extraction failed for note %s", note_id)
        previous = _progress.get(note_id)
        _progress[note_id] = ExtractionProgress(
            note_id=note_id,
            current_page=previous.current_page if previous else 0,
            total_pages=previous.total_pages if previous else 0,
            status="error",
            message=str(e) or "Failed to extract text",
        )
        return _progress[note_id]

    pages = _progress[note_id].total_pages or 1
    _progress[note_id] = ExtractionProgress(
        note_id=note_id,
        current_page=pages,
        total_pages=pages,
        status="complete",
        message=f"Extracted {len(text)} characters",
    )
    log.info("Extraction finished for note %s (%d chars)", note_id, len(text))
    return _progress[note_id]
