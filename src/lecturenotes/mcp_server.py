from __future__ import annotations

import logging
import os
from typing import Callable, TypeVar

from dotenv import load_dotenv
load_dotenv()

import logfire

from lecturenotes import config

logfire.configure(
    service_name="lecturenotes-mcp",
    environment=config.ENVIRONMENT,
)
logfire.instrument_pydantic_ai()
logfire.instrument_httpx()

from fastmcp import FastMCP

from lecturenotes import auth, chat_sessions
from lecturenotes.auth import AuthError
from lecturenotes.chat import ChatError
from lecturenotes.extract import split_text_into_chunks
from lecturenotes.models import AuthSession
from lecturenotes.search import find_in_text
from lecturenotes.store import NoteNotFoundError, NoteStore, SessionExpiredError, user_client

log = logging.getLogger(__name__)

mcp = FastMCP(name="lecturenotes")

MAX_MATCHES = 20

T = TypeVar("T")

_session: AuthSession | None = None
_store: NoteStore | None = None


def _sign_in() -> AuthSession:
    return auth.sign_in(
        os.environ.get("MCP_EMAIL", ""), os.environ.get("MCP_PASSWORD", "")
    )


def _get_store() -> NoteStore:
    """Sign in as the configured MCP user, refreshing the token before it expires."""
    global _session, _store
    if _session is None:
        _session = _sign_in()
        _store = None
    elif auth.is_expired(_session):
        try:
            _session = auth.refresh(_session)
        except AuthError:
            _session = _sign_in()
        _store = None
    if _store is None:
        _store = NoteStore(user_client(_session.access_token), _session.user_id)
    return _store


def _reset_session() -> None:
    global _session, _store
    _session = None
    _store = None


def _with_store(action: Callable[[NoteStore], T]) -> T:
    """Run ``action`` against the store, signing in again once if the token was rejected."""
    try:
        return action(_get_store())
    except SessionExpiredError:
        log.info("MCP session expired, signing in again")
        _reset_session()
        return action(_get_store())


@mcp.tool()
def list_notes() -> str:
    """List the user's notes with their IDs, types, categories, tags and summaries.

    Start here to discover which notes exist. Each entry includes the note ID
    needed by the other tools.
    """
    notes = _with_store(lambda store: store.list_notes())
    if not notes:
        return "No notes have been uploaded yet."
    lines = []
    for note in notes:
        lines.append(
            f"- **{note.title}** (id: `{note.id}`)\n"
            f"  Type: {note.file_type} | Category: {note.category or 'None'} | "
            f"Tags: {', '.join(note.tags) or 'None'}\n"
            f"  Summary: {note.summary or 'No text extracted yet.'}"
        )
    return "\n\n".join(lines)


@mcp.tool()
def get_note_text(note_id: str, chunk: int = 1) -> str:
    """Read a note's extracted text, one chunk of roughly 1000 characters at a time.

    Args:
        note_id: The ID of the note (from list_notes).
        chunk: Which chunk to return (1-indexed). The reply says how many exist.
    """
    try:
        note = _with_store(lambda store: store.get_note(note_id))
    except NoteNotFoundError:
        return f"Note {note_id} not found."
    if not note.content:
        return f"'{note.title}' has no extracted text yet."

    chunks = split_text_into_chunks(note.content)
    if chunk < 1 or chunk > len(chunks):
        return f"'{note.title}' has {len(chunks)} chunks; pick 1-{len(chunks)}."
    return f"# {note.title} (chunk {chunk} of {len(chunks)})\n\n{chunks[chunk - 1]}"


@mcp.tool()
def find_in_note(note_id: str, query: str) -> str:
    """Find where a term or phrase occurs in a note (like Ctrl+F).

    Returns character offsets with short context snippets.

    Args:
        note_id: The ID of the note to search.
        query: The term or phrase to search for.
    """
    try:
        note = _with_store(lambda store: store.get_note(note_id))
    except NoteNotFoundError:
        return f"Note {note_id} not found."

    matches = find_in_text(note.content or "", query)
    if not matches:
        return f'No occurrences of "{query}" in \'{note.title}\'.'

    lines = [f"  offset {m.offset}: …{m.snippet}…" for m in matches[:MAX_MATCHES]]
    header = f'Found "{query}" {len(matches)} time{"s" if len(matches) != 1 else ""}'
    if len(matches) > MAX_MATCHES:
        header += f" (showing first {MAX_MATCHES})"
    return header + ":\n" + "\n".join(lines)


@mcp.tool()
async def ask_note(note_id: str, question: str) -> str:
    """Ask a question answered only from one note's content.

    Follow-up questions on the same note share the conversation history.

    Args:
        note_id: The ID of the note.
        question: The question to answer.
    """
    try:
        note = _with_store(lambda store: store.get_note(note_id))
    except NoteNotFoundError:
        return f"Note {note_id} not found."
    if not note.content:
        return f"'{note.title}' has no extracted text yet."

    session = chat_sessions.get_or_create(note.user_id, note_id)
    try:
        if not session.has_document:
            session.set_document(note.content)
        return await session.ask(question)
    except ChatError as e:
        return f"Could not answer: {e}"


def main():
    mcp.run()


if __name__ == "__main__":
    main()
