from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

FileType = Literal["pdf", "image", "text", "markdown"]
ProcessingState = Literal["idle", "processing", "error"]
ExtractionStatus = Literal["extracting", "ocr", "complete", "error"]
ExportFormat = Literal["txt", "html", "pdf", "json"]

DEFAULT_HIGHLIGHT = "#ffeb3b"


class AnnotationPosition(BaseModel):
    """Where a highlight sits on the rendered document."""

    x: float
    y: float
    page_number: int | None = Field(
        default=None, validation_alias=AliasChoices("page_number", "pageNumber")
    )


class Annotation(BaseModel):
    id: str
    note_id: str
    text: str  # the highlighted passage
    content: str  # the user's comment on it
    color: str = DEFAULT_HIGHLIGHT
    position: AnnotationPosition
    created_at: datetime | None = None


class AnnotationCreate(BaseModel):
    """Request body for POST /notes/{id}/annotations."""

    text: str = Field(min_length=1)
    content: str = Field(min_length=1)
    color: str = DEFAULT_HIGHLIGHT
    position: AnnotationPosition


class Note(BaseModel):
    """A note row joined with its tags and (when fetched singly) annotations."""

    id: str
    user_id: str
    title: str
    content: str | None = None
    file_url: str | None = None
    file_type: FileType
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    summary: str | None = None
    annotations: list[Annotation] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NoteUpdate(BaseModel):
    """Request body for PATCH /notes/{id}. ``tags`` replaces the whole set."""

    title: str | None = None
    category: str | None = None
    tags: list[str] | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("title must not be blank")
        return value.strip() if value is not None else None


class ExtractionProgress(BaseModel):
    note_id: str
    current_page: int = 0
    total_pages: int = 0
    status: ExtractionStatus = "extracting"
    message: str = ""


class ChatMessage(BaseModel):
    role: Literal["human", "ai"]
    content: str


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)


class ChatResponse(BaseModel):
    answer: str
    history: list[ChatMessage]


class ChatState(BaseModel):
    """Response for GET /notes/{id}/chat."""

    state: ProcessingState = "idle"
    last_error: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)


class DocumentStats(BaseModel):
    words: int
    characters: int
    paragraphs: int


class TextMatch(BaseModel):
    offset: int
    snippet: str


class NoteAnalysis(BaseModel):
    """Structured output the LLM returns when analysing a note."""

    summary: str = Field(
        description="A 2-3 sentence summary of what the notes cover."
    )
    category: str | None = Field(
        default=None,
        description=(
            "One broad subject such as Math, Science, History, Literature "
            "or Computer Science. Null if none fits."
        ),
    )
    tags: list[str] = Field(
        default_factory=list,
        description="Up to 5 short lowercase keywords describing the notes.",
    )


class AuthSession(BaseModel):
    user_id: str
    email: str
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None  # unix seconds


class Credentials(BaseModel):
    """Request body for POST /auth/login and /auth/signup."""

    email: str
    password: str = Field(min_length=6)


class UploadResponse(BaseModel):
    note: Note
    extraction: ExtractionProgress | None = None
