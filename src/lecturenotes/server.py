from __future__ import annotations

import logging
import os
import re
from pathlib import Path, PurePath
from urllib.parse import quote

from dotenv import load_dotenv
load_dotenv()

import logfire

from lecturenotes import config

logfire.configure(
    service_name="lecturenotes-server",
    environment=config.ENVIRONMENT,
)
logfire.instrument_pydantic_ai()
logfire.instrument_httpx()

import httpx
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic_ai.exceptions import AgentRunError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from lecturenotes import auth, chat_sessions, jobs
from lecturenotes.auth import AuthError
from lecturenotes.chat import ChatError
from lecturenotes.classify import (
    analyze_note,
    detect_category,
    generate_summary,
    normalize_tags,
    suggest_tags,
)
from lecturenotes.export import export_text
from lecturenotes.extract import (
    UnsupportedFileTypeError,
    detect_file_type,
    extract_text,
    get_document_stats,
)
from lecturenotes.models import (
    Annotation,
    AnnotationCreate,
    AuthSession,
    ChatRequest,
    ChatResponse,
    ChatState,
    Credentials,
    DocumentStats,
    ExtractionProgress,
    Note,
    NoteAnalysis,
    NoteUpdate,
    TextMatch,
    UploadResponse,
)
from lecturenotes.search import filter_notes, find_in_text, list_categories, list_tags
from lecturenotes.store import (
    AnnotationNotFoundError,
    NoteNotFoundError,
    NoteStore,
    SessionExpiredError,
    StoreError,
    user_client,
)

log = logging.getLogger(__name__)

app = FastAPI(title="Lecture Notes", description="Upload, annotate and chat with your notes")
logfire.instrument_fastapi(app)

SESSION_KEY = "auth"
_PUBLIC_PREFIXES = ("/auth", "/health", "/docs", "/openapi.json")
_PAGE_PATHS = {"/", "/upload"}


async def _require_auth(request: Request, call_next):
    """Turn away requests that carry neither a bearer token nor a login session."""
    path = request.url.path
    if path.startswith(_PUBLIC_PREFIXES):
        return await call_next(request)
    if request.headers.get("authorization", "").startswith("Bearer "):
        return await call_next(request)
    if request.session.get(SESSION_KEY):
        return await call_next(request)
    if path in _PAGE_PATHS:
        return RedirectResponse(url="/auth/login", status_code=302)
    return JSONResponse(status_code=401, content={"detail": "Not authenticated"})


app.add_middleware(BaseHTTPMiddleware, dispatch=_require_auth)
app.add_middleware(SessionMiddleware, secret_key=config.SECRET_KEY)

templates = Jinja2Templates(
    directory=str(Path(__file__).parent / "templates")
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def current_user(request: Request) -> AuthSession:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return auth.get_user(header[7:])
    data = request.session.get(SESSION_KEY)
    if not data:
        raise AuthError("Not authenticated")
    session = AuthSession.model_validate(data)
    if auth.is_expired(session):
        session = auth.refresh(session)
        request.session[SESSION_KEY] = session.model_dump()
    return session


def get_store(user: AuthSession = Depends(current_user)) -> NoteStore:
    return NoteStore(user_client(user.access_token), user.user_id)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(AuthError)
@app.exception_handler(SessionExpiredError)
async def _unauthorized(request: Request, exc: Exception):
    """Drop a dead login session; pages go back to the login form."""
    if SESSION_KEY in request.session:
        request.session.pop(SESSION_KEY)
    if request.url.path in _PAGE_PATHS:
        return RedirectResponse(url="/auth/login", status_code=303)
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(NoteNotFoundError)
@app.exception_handler(AnnotationNotFoundError)
async def _not_found(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ChatError)
async def _chat_error(request: Request, exc: ChatError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------
@app.get("/auth/login", response_class=HTMLResponse)
async def auth_login(request: Request, signed_up: str = ""):
    ctx: dict = {"request": request, "message": None, "message_type": ""}
    if signed_up:
        ctx["message"] = "Account created. Confirm your email if asked, then sign in."
        ctx["message_type"] = "success"
    return templates.TemplateResponse(request, "login.html", ctx)


@app.post("/auth/login", response_class=HTMLResponse)
async def auth_login_submit(request: Request, email: str = Form(...), password: str = Form(...)):
    try:
        session = auth.sign_in(email.strip().lower(), password)
    except AuthError as e:
        ctx = {"request": request, "message": str(e), "message_type": "error"}
        return templates.TemplateResponse(request, "login.html", ctx, status_code=401)
    request.session[SESSION_KEY] = session.model_dump()
    return RedirectResponse(url="/", status_code=303)


@app.post("/auth/signup", response_class=HTMLResponse)
async def auth_signup(request: Request, email: str = Form(...), password: str = Form(...)):
    try:
        session = auth.sign_up(email.strip().lower(), password)
    except AuthError as e:
        ctx = {"request": request, "message": str(e), "message_type": "error"}
        return templates.TemplateResponse(request, "login.html", ctx, status_code=400)
    if session is None:
        return RedirectResponse(url="/auth/login?signed_up=1", status_code=303)
    request.session[SESSION_KEY] = session.model_dump()
    return RedirectResponse(url="/", status_code=303)


@app.post("/auth/token", response_model=AuthSession)
async def auth_token(credentials: Credentials):
    """Exchange email and password for an access token (API clients)."""
    return auth.sign_in(credentials.email.strip().lower(), credentials.password)


@app.get("/auth/me", response_model=AuthSession, response_model_exclude={"access_token", "refresh_token"})
async def auth_me(user: AuthSession = Depends(current_user)):
    return user


@app.post("/auth/logout")
async def auth_logout(request: Request):
    data = request.session.get(SESSION_KEY)
    if data:
        auth.sign_out(data["access_token"])
        chat_sessions.invalidate(user_id=data["user_id"])
    request.session.clear()
    return RedirectResponse(url="/auth/login", status_code=303)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------
@app.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    q: str = "",
    category: str = "",
    tag: str = "",
    user: AuthSession = Depends(current_user),
    store: NoteStore = Depends(get_store),
):
    notes = store.list_notes()
    return templates.TemplateResponse(request, "index.html", {
        "request": request,
        "user": user,
        "notes": filter_notes(notes, q or None, category or None, tag or None),
        "categories": list_categories(notes),
        "tags": list_tags(notes),
        "q": q,
        "category": category,
        "tag": tag,
    })


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------
@app.get("/notes", response_model=list[Note])
async def list_notes(
    q: str | None = None,
    category: str | None = None,
    tag: str | None = None,
    store: NoteStore = Depends(get_store),
):
    """List the user's notes, newest first, optionally filtered."""
    return filter_notes(store.list_notes(), q, category, tag)


@app.get("/notes/categories", response_model=list[str])
async def note_categories(store: NoteStore = Depends(get_store)):
    return list_categories(store.list_notes())


@app.get("/notes/tags", response_model=list[str])
async def note_tags(store: NoteStore = Depends(get_store)):
    return list_tags(store.list_notes())


async def _save_upload(
    file: UploadFile,
    title: str,
    category: str,
    tags: str,
    store: NoteStore,
    background_tasks: BackgroundTasks,
) -> UploadResponse:
    filename = file.filename or "upload"
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max size: {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB",
        )
    try:
        file_type = detect_file_type(filename, file.content_type)
    except UnsupportedFileTypeError as e:
        raise HTTPException(status_code=415, detail=str(e))

    title = title.strip() or PurePath(filename).stem or filename
    category = category.strip()
    tag_list = normalize_tags(tags.split(","))

    content = summary = None
    if file_type in ("text", "markdown"):
        content = extract_text(file_type, data)
        category = category or detect_category(content) or ""
        tag_list = [*tag_list, *suggest_tags(content, tag_list)]
        summary = generate_summary(content)

    _, public_url = store.upload_file(filename, data, file.content_type)
    try:
        note = store.create_note(
            title=title,
            file_type=file_type,
            content=content,
            file_url=public_url,
            category=category or None,
            summary=summary,
            tags=tag_list,
        )
    except StoreError:
        try:
            store.remove_file(public_url)
        except StoreError:
            log.warning("Could not remove %s after a failed note insert", public_url)
        raise

    extraction = None
    if file_type in ("pdf", "image"):
        extraction = jobs.start(note.id)
        background_tasks.add_task(
            jobs.run_extraction, store, note.id, file_type, data, category or None, tag_list
        )
    return UploadResponse(note=note, extraction=extraction)


@app.post("/notes", response_model=UploadResponse, status_code=201)
async def upload_note(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    title: str = Form(""),
    category: str = Form(""),
    tags: str = Form(""),
    store: NoteStore = Depends(get_store),
):
    """Upload a document. PDFs and images are extracted in the background."""
    return await _save_upload(file, title, category, tags, store, background_tasks)


@app.post("/upload")
async def upload_from_dashboard(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    title: str = Form(""),
    category: str = Form(""),
    tags: str = Form(""),
    store: NoteStore = Depends(get_store),
):
    """Dashboard upload form; same as POST /notes but lands back on the dashboard."""
    await _save_upload(file, title, category, tags, store, background_tasks)
    return RedirectResponse(url="/", status_code=303)


@app.get("/notes/{note_id}", response_model=Note)
async def get_note(note_id: str, store: NoteStore = Depends(get_store)):
    return store.get_note(note_id)


@app.patch("/notes/{note_id}", response_model=Note)
async def update_note(note_id: str, update: NoteUpdate, store: NoteStore = Depends(get_store)):
    """Rename, recategorize or retag a note. ``tags`` replaces the set."""
    if update.tags is not None:
        update.tags = normalize_tags(update.tags)
    return store.update_note(note_id, update)


@app.delete("/notes/{note_id}", status_code=204)
async def delete_note(note_id: str, store: NoteStore = Depends(get_store)):
    store.delete_note(note_id)
    chat_sessions.invalidate(user_id=store.user_id, note_id=note_id)
    jobs.forget(note_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Extracted text
# ---------------------------------------------------------------------------
@app.get("/notes/{note_id}/extraction", response_model=ExtractionProgress)
async def extraction_progress(note_id: str, store: NoteStore = Depends(get_store)):
    note = store.get_note(note_id)
    progress = jobs.get_progress(note_id)
    if progress is not None:
        return progress
    if note.content:
        return ExtractionProgress(note_id=note_id, status="complete", message="Text available")
    return ExtractionProgress(
        note_id=note_id, status="error", message="No extracted text for this note"
    )


@app.post("/notes/{note_id}/extract", response_model=ExtractionProgress, status_code=202)
async def rerun_extraction(
    note_id: str, background_tasks: BackgroundTasks, store: NoteStore = Depends(get_store)
):
    """Extract text again from the stored file."""
    note = store.get_note(note_id)
    if jobs.is_running(note_id):
        raise HTTPException(status_code=409, detail="Extraction already in progress")
    if not note.file_url:
        raise HTTPException(status_code=400, detail="Note has no stored file")
    data = store.download_file(note.file_url)
    progress = jobs.start(note_id)
    background_tasks.add_task(
        jobs.run_extraction, store, note_id, note.file_type, data, note.category, note.tags
    )
    return progress


@app.get("/notes/{note_id}/stats", response_model=DocumentStats)
async def note_stats(note_id: str, store: NoteStore = Depends(get_store)):
    return get_document_stats(store.get_note(note_id).content or "")


@app.get("/notes/{note_id}/search", response_model=list[TextMatch])
async def search_note(note_id: str, q: str = Query(..., min_length=1), store: NoteStore = Depends(get_store)):
    """Find every occurrence of ``q`` in the note's extracted text."""
    return find_in_text(store.get_note(note_id).content or "", q)


def _content_disposition(title: str, filename: str) -> str:
    """ASCII ``filename`` for every client, plus RFC 5987 ``filename*`` for non-ASCII titles."""
    suffix = PurePath(filename).suffix
    value = f'attachment; filename="{filename}"'
    unicode_name = re.sub(r"[^\w\-]+", "_", title).strip("_")
    if unicode_name and not unicode_name.isascii():
        value += f"; filename*=UTF-8''{quote(unicode_name + suffix)}"
    return value


@app.get("/notes/{note_id}/export")
async def export_note(note_id: str, format: str = "txt", store: NoteStore = Depends(get_store)):
    note = store.get_note(note_id)
    # header values are latin-1, so the plain filename stays ASCII
    file_name = re.sub(r"[^A-Za-z0-9_\-]+", "_", note.title).strip("_") or "extracted_text"
    try:
        body, media_type, filename = export_text(note.content or "", format, file_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": _content_disposition(note.title, filename)},
    )


@app.post("/notes/{note_id}/analyze", response_model=NoteAnalysis)
async def analyze(note_id: str, apply: bool = False, store: NoteStore = Depends(get_store)):
    """Ask the model for a summary, category and tags; optionally save them."""
    note = store.get_note(note_id)
    if not note.content:
        raise HTTPException(status_code=422, detail="Note has no extracted text")
    try:
        analysis = await analyze_note(note.content)
    except (AgentRunError, httpx.HTTPError) as e:
        log.error("Analysis failed for note %s: %s", note_id, e)
        raise HTTPException(status_code=502, detail=f"Analysis failed: {e}")
    if apply:
        store.set_content(
            note_id,
            note.content,
            analysis.summary,
            category=analysis.category,
            tags=normalize_tags([*note.tags, *analysis.tags]),
        )
    return analysis


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------
@app.get("/notes/{note_id}/annotations", response_model=list[Annotation])
async def list_annotations(note_id: str, page: int | None = None, store: NoteStore = Depends(get_store)):
    return store.list_annotations(note_id, page)


@app.post("/notes/{note_id}/annotations", response_model=Annotation, status_code=201)
async def add_annotation(note_id: str, annotation: AnnotationCreate, store: NoteStore = Depends(get_store)):
    return store.add_annotation(note_id, annotation)


@app.delete("/notes/{note_id}/annotations/{annotation_id}", status_code=204)
async def delete_annotation(note_id: str, annotation_id: str, store: NoteStore = Depends(get_store)):
    store.delete_annotation(note_id, annotation_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
@app.post("/notes/{note_id}/chat", response_model=ChatResponse)
async def chat(note_id: str, request: ChatRequest, store: NoteStore = Depends(get_store)):
    """Ask a question about the note. The last few exchanges are kept as context."""
    session = chat_sessions.get_or_create(store.user_id, note_id)
    if not session.has_document:
        note = store.get_note(note_id)
        if not note.content:
            raise HTTPException(
                status_code=422,
                detail="Note has no extracted text yet. Wait for extraction to finish.",
            )
        session.set_document(note.content)
    answer = await session.ask(request.question)
    return ChatResponse(answer=answer, history=session.history())


@app.get("/notes/{note_id}/chat", response_model=ChatState)
async def chat_state(note_id: str, store: NoteStore = Depends(get_store)):
    session = chat_sessions.get(store.user_id, note_id)
    if session is None:
        return ChatState()
    return ChatState(
        state=session.state, last_error=session.last_error, history=session.history()
    )


@app.delete("/notes/{note_id}/chat/history", status_code=204)
async def clear_chat(note_id: str, store: NoteStore = Depends(get_store)):
    session = chat_sessions.get(store.user_id, note_id)
    if session is not None:
        session.clear_history()
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
