from __future__ import annotations

import re
from collections.abc import Iterable

from lecturenotes.models import Note, TextMatch

SNIPPET_CONTEXT = 60


def _matches_term(note: Note, term: str) -> bool:
    fields = [note.title, note.content or "", note.category or ""]
    if any(term in f.lower() for f in fields):
        return True
    return any(term in tag.lower() for tag in note.tags)


def filter_notes(
    notes: Iterable[Note],
    term: str | None = None,
    category: str | None = None,
    tag: str | None = None,
) -> list[Note]:
    """Dashboard filtering: free-text term, exact category, tag membership."""
    result = list(notes)
    if term:
        lowered = term.lower()
        result = [n for n in result if _matches_term(n, lowered)]
    if category:
        result = [n for n in result if n.category == category]
    if tag:
        result = [n for n in result if tag in n.tags]
    return result


def list_categories(notes: Iterable[Note]) -> list[str]:
    seen: list[str] = []
    for note in notes:
        if note.category and note.category not in seen:
            seen.append(note.category)
    return seen


def list_tags(notes: Iterable[Note]) -> list[str]:
    seen: list[str] = []
    for note in notes:
        for tag in note.tags:
            if tag and tag not in seen:
                seen.append(tag)
    return seen


def find_in_text(
    text: str, query: str, context: int = SNIPPET_CONTEXT
) -> list[TextMatch]:
    """Every case-insensitive occurrence of ``query`` with a context snippet.

    Matching runs on ``text`` itself so offsets stay valid even where
    lowercasing would change a string's length.
    """
    query = query.strip()
    if not query or not text:
        return []

    # lookahead so overlapping occurrences are all reported
    pattern = re.compile(f"(?=({re.escape(query)}))", re.IGNORECASE)
    matches: list[TextMatch] = []
    for m in pattern.finditer(text):
        pos, end = m.start(1), m.end(1)
        start = max(0, pos - context)
        stop = min(len(text), end + context)
        snippet = " ".join(text[start:stop].split())
        matches.append(TextMatch(offset=pos, snippet=snippet))
    return matches
