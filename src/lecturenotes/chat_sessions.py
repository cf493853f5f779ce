"""In-memory registry of chat sessions.

Keyed by (user_id, note_id). Shared between the API server routes so a
note's conversation survives across requests until the note changes.

Sessions are lost on process restart; clients simply start a new
conversation.
"""
from __future__ import annotations

from lecturenotes.chat import ChatSession

_sessions: dict[tuple[str, str], ChatSession] = {}


def get(user_id: str, note_id: str) -> ChatSession | None:
    return _sessions.get((user_id, note_id))


def get_or_create(user_id: str, note_id: str) -> ChatSession:
    key = (user_id, note_id)
    session = _sessions.get(key)
    if session is None:
        session = _sessions[key] = ChatSession()
    return session


def put(user_id: str, note_id: str, session: ChatSession) -> None:
    _sessions[(user_id, note_id)] = session


def invalidate(user_id: str | None = None, note_id: str | None = None) -> int:
    """Drop sessions matching the given user and/or note, or all of them.

    Returns the number of sessions dropped.
    """
    global _sessions
    if user_id is None and note_id is None:
        count = len(_sessions)
        _sessions = {}
        return count
    keys = [
        k for k in _sessions
        if (user_id is None or k[0] == user_id) and (note_id is None or k[1] == note_id)
    ]
    for k in keys:
        del _sessions[k]
    return len(keys)


def size() -> int:
    return len(_sessions)
