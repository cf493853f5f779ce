"""Supabase-backed persistence for notes, tags, annotations and files.

Row-level security on the Supabase side decides who may touch which rows.
The ``user_id`` filters here mirror those policies.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Iterator

import httpx
from postgrest.exceptions import APIError
from storage3.utils import StorageException
from supabase import Client, ClientOptions, create_client

from lecturenotes import config
from lecturenotes.models import (
    Annotation,
    AnnotationCreate,
    AnnotationPosition,
    FileType,
    Note,
    NoteUpdate,
)

log = logging.getLogger(__name__)

NOTE_COLUMNS = "*, note_tags(tag)"
NOTE_DETAIL_COLUMNS = (
    "*, note_tags(tag), "
    "annotations(id, note_id, text, content, color, position, created_at)"
)

_BACKEND_ERRORS = (APIError, StorageException, httpx.HTTPError)


class StoreError(Exception):
    """Raised when the hosted backend rejects or fails a request."""


class SessionExpiredError(StoreError):
    """Raised when PostgREST rejects the user's access token as expired."""


class NoteNotFoundError(Exception):
    def __init__(self, note_id: str):
        self.note_id = note_id
        super().__init__(f"Note {note_id} not found")


class AnnotationNotFoundError(Exception):
    def __init__(self, note_id: str, annotation_id: str):
        self.note_id = note_id
        self.annotation_id = annotation_id
        super().__init__(f"Annotation {annotation_id} not found on note {note_id}")


def user_client(access_token: str) -> Client:
    """A Supabase client that acts as the signed-in user (RLS applies)."""
    client = create_client(
        config.SUPABASE_URL,
        config.SUPABASE_ANON_KEY,
        options=ClientOptions(
            headers={"Authorization": f"Bearer {access_token}"},
            persist_session=False,
            auto_refresh_token=False,
        ),
    )
    client.postgrest.auth(access_token)
    return client


_JWT_EXPIRED_CODES = {"PGRST301", "PGRST303"}


def _jwt_expired(error: APIError) -> bool:
    return error.code in _JWT_EXPIRED_CODES or "jwt expired" in (error.message or "").lower()


@contextmanager
def _backend_call(action: str) -> Iterator[None]:
    try:
        yield
    except _BACKEND_ERRORS as e:
        if isinstance(e, APIError) and _jwt_expired(e):
            log.warning("Access token expired while trying to %s", action)
            raise SessionExpiredError("Session expired, please sign in again") from e
        log.exception("Supabase request failed while trying to %s", action)
        raise StoreError(f"Failed to {action}") from e


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _position_to_row(position: AnnotationPosition) -> dict[str, Any]:
    return {"x": position.x, "y": position.y, "pageNumber": position.page_number}


def _annotation_from_row(row: dict[str, Any]) -> Annotation:
    return Annotation(
        id=row["id"],
        note_id=row["note_id"],
        text=row["text"],
        content=row["content"],
        color=row["color"],
        position=AnnotationPosition.model_validate(row["position"]),
        created_at=row.get("created_at"),
    )


def _note_from_row(row: dict[str, Any]) -> Note:
    return Note(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        content=row.get("content"),
        file_url=row.get("file_url"),
        file_type=row["file_type"],
        category=row.get("category"),
        tags=[t["tag"] for t in row.get("note_tags") or []],
        summary=row.get("summary"),
        annotations=[_annotation_from_row(a) for a in row.get("annotations") or []],
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class NoteStore:
    """Note operations for a single user."""

    def __init__(self, client: Client, user_id: str, bucket: str = config.NOTES_BUCKET):
        self.client = client
        self.user_id = user_id
        self.bucket = bucket

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------
    def list_notes(self) -> list[Note]:
        with _backend_call("load notes"):
            resp = (
                self.client.table("notes")
                .select(NOTE_COLUMNS)
                .eq("user_id", self.user_id)
                .order("created_at", desc=True)
                .execute()
            )
        return [_note_from_row(row) for row in resp.data]

    def get_note(self, note_id: str) -> Note:
        with _backend_call("load note"):
            resp = (
                self.client.table("notes")
                .select(NOTE_DETAIL_COLUMNS)
                .eq("id", note_id)
                .eq("user_id", self.user_id)
                .execute()
            )
        if not resp.data:
            raise NoteNotFoundError(note_id)
        return _note_from_row(resp.data[0])

    def _require_note(self, note_id: str) -> None:
        with _backend_call("load note"):
            resp = (
                self.client.table("notes")
                .select("id")
                .eq("id", note_id)
                .eq("user_id", self.user_id)
                .execute()
            )
        if not resp.data:
            raise NoteNotFoundError(note_id)

    def create_note(
        self,
        title: str,
        file_type: FileType,
        content: str | None = None,
        file_url: str | None = None,
        category: str | None = None,
        summary: str | None = None,
        tags: list[str] | None = None,
    ) -> Note:
        with _backend_call("create note"):
            resp = (
                self.client.table("notes")
                .insert({
                    "user_id": self.user_id,
                    "title": title,
                    "file_url": file_url,
                    "file_type": file_type,
                    "category": category or None,
                    "content": content or None,
                    "summary": summary,
                })
                .execute()
            )
        row = resp.data[0]
        if tags:
            self._insert_tags(row["id"], tags)
        row["note_tags"] = [{"tag": t} for t in tags or []]
        log.info("Created note %s for user %s", row["id"], self.user_id)
        return _note_from_row(row)

    def _insert_tags(self, note_id: str, tags: list[str]) -> None:
        with _backend_call("save tags"):
            self.client.table("note_tags").insert(
                [{"note_id": note_id, "tag": tag} for tag in tags]
            ).execute()

    def _replace_tags(self, note_id: str, tags: list[str]) -> None:
        with _backend_call("save tags"):
            self.client.table("note_tags").delete().eq("note_id", note_id).execute()
        if tags:
            self._insert_tags(note_id, tags)

    def update_note(self, note_id: str, update: NoteUpdate) -> Note:
        self._require_note(note_id)
        fields: dict[str, Any] = {"updated_at": _now()}
        if update.title is not None:
            fields["title"] = update.title
        if update.category is not None:
            fields["category"] = update.category or None
        with _backend_call("update note"):
            (
                self.client.table("notes")
                .update(fields)
                .eq("id", note_id)
                .eq("user_id", self.user_id)
                .execute()
            )
        if update.tags is not None:
            self._replace_tags(note_id, update.tags)
        return self.get_note(note_id)

    def set_content(
        self,
        note_id: str,
        content: str,
        summary: str | None,
        category: str | None = None,
        tags: list[str] | None = None,
    ) -> None:
        """Store extraction results. ``tags`` replaces the tag set when given."""
        fields: dict[str, Any] = {
            "content": content or None,
            "summary": summary,
            "updated_at": _now(),
        }
        if category is not None:
            fields["category"] = category
        with _backend_call("save extracted text"):
            (
                self.client.table("notes")
                .update(fields)
                .eq("id", note_id)
                .eq("user_id", self.user_id)
                .execute()
            )
        if tags is not None:
            self._replace_tags(note_id, tags)

    def delete_note(self, note_id: str) -> None:
        """Delete a note (tags and annotations cascade) and its stored file."""
        with _backend_call("delete note"):
            resp = (
                self.client.table("notes")
                .delete()
                .eq("id", note_id)
                .eq("user_id", self.user_id)
                .execute()
            )
        if not resp.data:
            raise NoteNotFoundError(note_id)

        file_url = resp.data[0].get("file_url")
        if file_url:
            try:
                self.remove_file(file_url)
            except StoreError:
                log.warning("Left orphaned file behind for note %s", note_id)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------
    def list_annotations(self, note_id: str, page_number: int | None = None) -> list[Annotation]:
        self._require_note(note_id)
        with _backend_call("load annotations"):
            resp = (
                self.client.table("annotations")
                .select("*")
                .eq("note_id", note_id)
                .order("created_at")
                .execute()
            )
        annotations = [_annotation_from_row(row) for row in resp.data]
        if page_number is not None:
            annotations = [a for a in annotations if a.position.page_number == page_number]
        return annotations

    def add_annotation(self, note_id: str, annotation: AnnotationCreate) -> Annotation:
        self._require_note(note_id)
        with _backend_call("add annotation"):
            resp = (
                self.client.table("annotations")
                .insert({
                    "note_id": note_id,
                    "text": annotation.text,
                    "content": annotation.content,
                    "color": annotation.color,
                    "position": _position_to_row(annotation.position),
                })
                .execute()
            )
        return _annotation_from_row(resp.data[0])

    def delete_annotation(self, note_id: str, annotation_id: str) -> None:
        self._require_note(note_id)
        with _backend_call("delete annotation"):
            resp = (
                self.client.table("annotations")
                .delete()
                .eq("id", annotation_id)
                .eq("note_id", note_id)
                .execute()
            )
        if not resp.data:
            raise AnnotationNotFoundError(note_id, annotation_id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def _storage_path(self, file_url: str) -> str:
        return f"notes/{self.user_id}/{file_url.rstrip('/').split('/')[-1]}"

    def upload_file(self, filename: str, data: bytes, content_type: str | None) -> tuple[str, str]:
        """Upload to the notes bucket. Returns (storage path, public URL)."""
        extension = PurePath(filename).suffix.lstrip(".") or "bin"
        path = f"notes/{self.user_id}/{uuid.uuid4()}.{extension}"
        bucket = self.client.storage.from_(self.bucket)
        with _backend_call("upload file"):
            bucket.upload(
                path,
                data,
                {
                    "content-type": content_type or "application/octet-stream",
                    "cache-control": "3600",
                    "upsert": "false",
                },
            )
            public_url = bucket.get_public_url(path)
        log.info("Uploaded %s (%d bytes) to %s", filename, len(data), path)
        return path, public_url

    def download_file(self, file_url: str) -> bytes:
        with _backend_call("download file"):
            return self.client.storage.from_(self.bucket).download(self._storage_path(file_url))

    def remove_file(self, file_url: str) -> None:
        with _backend_call("remove file"):
            self.client.storage.from_(self.bucket).remove([self._storage_path(file_url)])
