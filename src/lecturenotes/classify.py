"""Category, tag and summary inference for freshly extracted notes.

The keyword rules run on every upload. The LLM analysis (``analyze_note``)
only runs on request.
"""
from __future__ import annotations

from collections.abc import Iterable

from pydantic_ai import Agent
from pydantic_ai.models import Model

from lecturenotes import config
from lecturenotes.models import NoteAnalysis

SUMMARY_LENGTH = 150
MAX_SUGGESTED_TAGS = 3
ANALYSIS_MAX_CHARS = 30000

# Checked in order, first hit wins.
CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Math", ("math", "equation", "calculus")),
    ("Science", ("science", "biology", "chemistry")),
    ("History", ("history", "century", "war")),
    ("Literature", ("literature", "novel", "poetry")),
    ("Computer Science", ("computer", "programming", "algorithm")),
]

TAG_KEYWORDS = (
    "research", "exam", "homework", "project", "lecture", "tutorial",
    "important", "review", "summary", "notes", "assignment",
)


def detect_category(text: str) -> str | None:
    lower = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in lower for k in keywords):
            return category
    return None


def suggest_tags(text: str, existing: Iterable[str] = ()) -> list[str]:
    """Keyword tags found in ``text`` that are not already applied."""
    lower = text.lower()
    have = set(existing)
    found = [k for k in TAG_KEYWORDS if k in lower and k not in have]
    return found[:MAX_SUGGESTED_TAGS]


def generate_summary(text: str | None) -> str | None:
    if not text:
        return None
    if len(text) > SUMMARY_LENGTH:
        return text[:SUMMARY_LENGTH] + "..."
    return text


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Strip whitespace, drop blanks and duplicates, keep first-seen order."""
    out: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in out:
            out.append(tag)
    return out


ANALYSIS_SYSTEM_PROMPT = (
    "You are a study assistant. You will receive the text of a student's "
    "lecture notes or course document. Produce:\n\n"
    "1. **Summary** - 2-3 sentences on what the material covers.\n"
    "2. **Category** - one broad subject (e.g. Math, Science, History, "
    "Literature, Computer Science) or null if none fits.\n"
    "3. **Tags** - up to 5 short lowercase keywords.\n"
    "Base everything on the provided text only."
)

_analysis_agent: Agent[None, NoteAnalysis] | None = None


def _get_analysis_agent() -> Agent[None, NoteAnalysis]:
    global _analysis_agent
    if _analysis_agent is None:
        _analysis_agent = Agent(
            config.gemini_model_name(),
            output_type=NoteAnalysis,
            system_prompt=ANALYSIS_SYSTEM_PROMPT,
            model_settings={
                "temperature": config.GEMINI_TEMPERATURE,
                "max_tokens": config.GEMINI_MAX_OUTPUT_TOKENS,
                "timeout": config.GEMINI_TIMEOUT_SECONDS,
            },
            defer_model_check=True,
        )
    return _analysis_agent


async def analyze_note(text: str, model: Model | str | None = None) -> NoteAnalysis:
    """Ask the model for a summary, category and tags for ``text``."""
    result = await _get_analysis_agent().run(
        f"Notes:\n{text[:ANALYSIS_MAX_CHARS]}\n\nAnalyze these notes.",
        model=model,
    )
    analysis = result.output
    analysis.tags = normalize_tags(t.lower() for t in analysis.tags)
    return analysis
