from lecturenotes import chat_sessions, jobs
from lecturenotes.extract import ExtractionError

SCANNED = "Lecture on the French Revolution and the war that followed. Exam next week."


def _fake_extract(text, pages=3):
    def extract(file_type, data, on_progress=None):
        for page in range(1, pages + 1):
            on_progress(page, pages, "extracting", f"Extracting text from page {page} of {pages}...")
        return text

    return extract


def test_run_extraction_saves_text_category_and_tags(store, monkeypatch):
    monkeypatch.setattr(jobs, "extract_text", _fake_extract(SCANNED))
    note = store.create_note("Scan", "pdf", tags=["exam"])

    progress = jobs.run_extraction(store, note.id, "pdf", b"%PDF", tags=["exam"])

    assert progress.status == "complete"
    assert (progress.current_page, progress.total_pages) == (3, 3)
    assert progress.message == f"Extracted {len(SCANNED)} characters"
    saved = store.get_note(note.id)
    assert saved.content == SCANNED
    assert saved.summary == SCANNED
    assert saved.category == "History"
    assert saved.tags == ["exam", "lecture"]
    assert jobs.get_progress(note.id) == progress
    assert not jobs.is_running(note.id)


def test_run_extraction_keeps_user_category(store, monkeypatch):
    monkeypatch.setattr(jobs, "extract_text", _fake_extract(SCANNED))
    note = store.create_note("Scan", "pdf", category="Literature")

    jobs.run_extraction(store, note.id, "pdf", b"%PDF", category="Literature")

    assert store.get_note(note.id).category == "Literature"


def test_run_extraction_leaves_tags_alone_when_nothing_new(store, fake_client, monkeypatch):
    monkeypatch.setattr(jobs, "extract_text", _fake_extract("Plain words only", pages=1))
    note = store.create_note("Scan", "image", tags=["mine"])
    fake_client.calls.clear()

    jobs.run_extraction(store, note.id, "image", b"\x89PNG", tags=["mine"])

    assert ("note_tags", "delete") not in fake_client.calls
    assert store.get_note(note.id).tags == ["mine"]


def test_run_extraction_drops_stale_chat_sessions(store, monkeypatch):
    monkeypatch.setattr(jobs, "extract_text", _fake_extract(SCANNED))
    note = store.create_note("Scan", "pdf")
    chat_sessions.get_or_create("user-1", note.id)

    jobs.run_extraction(store, note.id, "pdf", b"%PDF")

    assert chat_sessions.get("user-1", note.id) is None


def test_run_extraction_records_failures(store, monkeypatch):
    def broken(file_type, data, on_progress=None):
        on_progress(2, 4, "ocr", "Running OCR on page 2...")
        raise ExtractionError("Failed to extract text from PDF")

    monkeypatch.setattr(jobs, "extract_text", broken)
    note = store.create_note("Scan", "pdf")

    progress = jobs.run_extraction(store, note.id, "pdf", b"%PDF")

    assert progress.status == "error"
    assert progress.message == "Failed to extract text from PDF"
    assert (progress.current_page, progress.total_pages) == (2, 4)
    assert store.get_note(note.id).content is None


def test_start_and_forget():
    progress = jobs.start("n1")
    assert progress.message == "Queued"
    assert jobs.is_running("n1")

    jobs.forget("n1")
    assert jobs.get_progress("n1") is None
    assert not jobs.is_running("n1")
