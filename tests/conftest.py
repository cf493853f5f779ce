"""In-memory stand-ins for the Supabase client used across the test suite."""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import fitz
import pytest
from postgrest.exceptions import APIError
from storage3.utils import StorageException
from supabase import AuthError as SupabaseAuthError

from lecturenotes import auth, chat_sessions, jobs
from lecturenotes.store import NoteStore

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Just enough of the postgrest query builder for NoteStore."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.action = "select"
        self.columns = "*"
        self.payload = None
        self.filters: list[tuple[str, object]] = []
        self.order_by: tuple[str, bool] | None = None

    def select(self, columns="*"):
        self.action, self.columns = "select", columns
        return self

    def insert(self, payload):
        self.action, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.action, self.payload = "update", payload
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def _matches(self, row):
        return all(row.get(c) == v for c, v in self.filters)

    def _shape(self, row):
        if self.columns == "id":
            return {"id": row["id"]}
        out = dict(row)
        if self.table == "notes":
            if "note_tags(" in self.columns:
                out["note_tags"] = [
                    {"tag": t["tag"]} for t in self.db.tables["note_tags"]
                    if t["note_id"] == row["id"]
                ]
            if "annotations(" in self.columns:
                out["annotations"] = [
                    dict(a) for a in self.db.tables["annotations"]
                    if a["note_id"] == row["id"]
                ]
        return out

    def execute(self):
        if self.table in self.db.expired_tables:
            raise APIError({"message": "JWT expired", "code": "PGRST301", "hint": None, "details": None})
        if self.table in self.db.failing_tables:
            raise APIError({"message": "backend unavailable", "code": "500", "hint": None, "details": None})
        self.db.calls.append((self.table, self.action))
        rows = self.db.tables[self.table]

        if self.action == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in items:
                row = {"id": str(uuid.uuid4()), "created_at": self.db.tick(), **item}
                if self.table == "notes":
                    row.setdefault("updated_at", row["created_at"])
                rows.append(row)
                inserted.append(dict(row))
            return FakeResponse(inserted)

        matched = [r for r in rows if self._matches(r)]

        if self.action == "select":
            if self.order_by:
                column, desc = self.order_by
                matched.sort(key=lambda r: r.get(column) or "", reverse=desc)
            return FakeResponse([self._shape(r) for r in matched])

        if self.action == "update":
            for r in matched:
                r.update(self.payload)
            return FakeResponse([dict(r) for r in matched])

        # delete
        for r in matched:
            rows.remove(r)
            if self.table == "notes":
                for child in ("note_tags", "annotations"):
                    self.db.tables[child] = [
                        c for c in self.db.tables[child] if c["note_id"] != r["id"]
                    ]
        return FakeResponse([dict(r) for r in matched])


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self.storage = storage
        self.name = name

    def upload(self, path, data, file_options=None):
        if self.storage.fail:
            raise StorageException({"message": "upload failed"})
        self.storage.files[path] = data
        self.storage.options[path] = file_options or {}
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path):
        return f"https://example.supabase.co/storage/v1/object/public/{self.name}/{path}"

    def download(self, path):
        if self.storage.fail or path not in self.storage.files:
            raise StorageException({"message": f"{path} not found"})
        return self.storage.files[path]

    def remove(self, paths):
        if self.storage.fail:
            raise StorageException({"message": "remove failed"})
        for path in paths:
            self.storage.files.pop(path, None)
        return []


class FakeStorage:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.options: dict[str, dict] = {}
        self.fail = False

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {
            "notes": [], "note_tags": [], "annotations": [],
        }
        self.storage = FakeStorage()
        self.failing_tables: set[str] = set()
        self.expired_tables: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self._clock = datetime(2025, 3, 12, tzinfo=timezone.utc)

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def table(self, name):
        return FakeQuery(self, name)


class FakeAuthAdmin:
    def __init__(self, auth: "FakeAuth"):
        self.auth = auth

    def sign_out(self, jwt, scope="global"):
        self.auth.signed_out.append(jwt)


class FakeAuth:
    """The slice of the Supabase Auth client that lecturenotes.auth calls."""

    def __init__(self):
        self.users: dict[str, tuple[str, str]] = {}
        self.tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.signed_out: list[str] = []
        self.refreshed = 0
        self.confirm_email = False
        self.expires_in = 3600
        self.admin = FakeAuthAdmin(self)

    def _user(self, email):
        return SimpleNamespace(id=self.users[email][0], email=email)

    def _issue(self, email):
        n = len(self.tokens) + 1
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.tokens[access] = email
        self.refresh_tokens[refresh] = email
        session = SimpleNamespace(
            access_token=access,
            refresh_token=refresh,
            expires_at=int(time.time()) + self.expires_in,
        )
        return SimpleNamespace(user=self._user(email), session=session)

    def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.users:
            raise SupabaseAuthError("User already registered", "user_already_exists")
        self.users[email] = (f"user-{len(self.users) + 1}", credentials["password"])
        if self.confirm_email:
            return SimpleNamespace(user=self._user(email), session=None)
        return self._issue(email)

    def sign_in_with_password(self, credentials):
        user = self.users.get(credentials["email"])
        if user is None or user[1] != credentials["password"]:
            raise SupabaseAuthError("Invalid login credentials", "invalid_credentials")
        return self._issue(credentials["email"])

    def refresh_session(self, refresh_token=None):
        email = self.refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise SupabaseAuthError("Invalid Refresh Token: Already Used", "refresh_token_already_used")
        self.refreshed += 1
        return self._issue(email)

    def get_user(self, jwt=None):
        email = self.tokens.get(jwt)
        if email is None:
            raise SupabaseAuthError("invalid JWT", "bad_jwt")
        return SimpleNamespace(user=self._user(email))


@pytest.fixture
def fake_auth(monkeypatch) -> FakeAuth:
    fake = FakeAuth()
    monkeypatch.setattr(auth, "_client", SimpleNamespace(auth=fake))
    return fake


@pytest.fixture
def fake_client() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def store(fake_client) -> NoteStore:
    return NoteStore(fake_client, USER_ID)


@pytest.fixture(autouse=True)
def reset_registries():
    chat_sessions.invalidate()
    jobs._progress.clear()
    yield
    chat_sessions.invalidate()
    jobs._progress.clear()


def make_pdf(pages: list[str]) -> bytes:
    """Build a PDF with one page per string; an empty string gives a blank page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_textbox(fitz.Rect(72, 72, 540, 720), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def pdf_factory():
    return make_pdf
