"""Question answering over a single note's text with Gemini."""
from __future__ import annotations

import logging

import httpx
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, ModelHTTPError
from pydantic_ai.models import Model

from lecturenotes import config
from lecturenotes.models import ChatMessage, ProcessingState

log = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 60000
MAX_PROMPT_CHARS = 30000
FALLBACK_CHARS = 10000
MAX_HISTORY = 10

_LENGTH_ERROR_MARKERS = ("too long", "token", "limit")


class ChatError(Exception):
    """Raised when a question cannot be answered."""


CHAT_SYSTEM_PROMPT = (
    "You answer questions about a student's uploaded document. Use only the "
    "document content you are given. Quote or paraphrase the relevant part "
    "when it helps. If the document does not contain the answer, say so."
)

_chat_agent: Agent[None, str] | None = None


def _get_chat_agent() -> Agent[None, str]:
    global _chat_agent
    if _chat_agent is None:
        _chat_agent = Agent(
            config.gemini_model_name(),
            system_prompt=CHAT_SYSTEM_PROMPT,
            model_settings={
                "temperature": config.GEMINI_TEMPERATURE,
                "max_tokens": config.GEMINI_MAX_OUTPUT_TOKENS,
                "timeout": config.GEMINI_TIMEOUT_SECONDS,
            },
            defer_model_check=True,
        )
    return _chat_agent


class ChatSession:
    """One document plus the recent conversation about it.

    Pass ``model`` to run against something other than the configured
    Gemini model.
    """

    def __init__(self, model: Model | str | None = None, max_history: int = MAX_HISTORY):
        self.model = model
        self.max_history = max_history
        self.state: ProcessingState = "idle"
        self.last_error: str | None = None
        self._document = ""
        self._history: list[ChatMessage] = []

    @property
    def document(self) -> str:
        return self._document

    @property
    def has_document(self) -> bool:
        return bool(self._document)

    def set_document(self, text: str | None) -> None:
        """Load document text, normalizing whitespace. Clears the history."""
        self.state = "processing"
        if not text or not text.strip():
            self.state = "error"
            self.last_error = "Failed to process document content"
            raise ChatError("Document text is empty")

        cleaned = " ".join(text.split())
        if len(cleaned) > MAX_DOCUMENT_CHARS:
            log.warning(
                "Document too large (%d chars), truncating to %d",
                len(cleaned), MAX_DOCUMENT_CHARS,
            )
            cleaned = cleaned[:MAX_DOCUMENT_CHARS]
        self._document = cleaned
        self.clear_history()
        self.state = "idle"

    def history(self) -> list[ChatMessage]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history = []

    def _remember(self, role: str, content: str) -> None:
        self._history.append(ChatMessage(role=role, content=content))
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]

    def _conversation_context(self) -> str:
        return "\n".join(
            f"{'Human' if m.role == 'human' else 'AI'}: {m.content}"
            for m in self._history
        )

    def build_prompt(self, question: str) -> str:
        content = self._document
        if len(content) > MAX_PROMPT_CHARS:
            content = content[:MAX_PROMPT_CHARS] + "... [Content truncated due to length]"

        parts = [f"Document content:\n{content}"]
        context = self._conversation_context()
        if context:
            parts.append(f"Conversation so far:\n{context}")
        parts.append(f"Question: {question}")
        parts.append(
            "Please answer the question based only on the document content above.\n"
            "If you cannot find the answer in the document, say so clearly."
        )
        return "\n\n".join(parts)

    def build_fallback_prompt(self, question: str) -> str:
        return (
            f"Document excerpt:\n{self._document[:FALLBACK_CHARS]}... [Content truncated]\n\n"
            f"Question: {question}\n\n"
            "Please answer based on this excerpt from the document.\n"
            "If you cannot find the answer in this excerpt, say so clearly."
        )

    async def _generate(self, prompt: str) -> str:
        result = await _get_chat_agent().run(prompt, model=self.model)
        if not result.output or not result.output.strip():
            raise ChatError("Empty response from Gemini API")
        return result.output

    async def _answer(self, question: str) -> str:
        try:
            return await self._generate(self.build_prompt(question))
        except ModelHTTPError as e:
            log.error("Gemini API error: %s", e)
            if e.status_code == 404:
                raise ChatError(
                    "The Gemini model is not available. Please check your configuration."
                ) from e
            if e.status_code in (401, 403):
                raise ChatError(
                    "Invalid API key or insufficient permissions. Please check your API key."
                ) from e
            if not any(m in str(e).lower() for m in _LENGTH_ERROR_MARKERS):
                raise ChatError(f"API request failed: {e}") from e

        log.info("Retrying with shorter content")
        try:
            return await self._generate(self.build_fallback_prompt(question))
        except (AgentRunError, httpx.HTTPError) as e:
            raise ChatError(f"API request failed: {e}") from e

    async def ask(self, question: str) -> str:
        """Answer ``question`` from the loaded document and record the exchange."""
        self.state = "processing"
        try:
            if not self._document:
                raise ChatError(
                    "No document has been loaded. Please load a document first."
                )
            try:
                answer = await self._answer(question)
            except (AgentRunError, httpx.HTTPError) as e:
                raise ChatError(f"API request failed: {e}") from e
        except ChatError as e:
            log.error("Chat failed: %s", e)
            self.state = "error"
            self.last_error = str(e)
            raise

        self._remember("human", question)
        self._remember("ai", answer)
        self.state = "idle"
        return answer
