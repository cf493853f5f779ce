"""Email + password authentication backed by Supabase Auth."""

from __future__ import annotations

import logging
import time

from supabase import AuthError as SupabaseAuthError
from supabase import Client, ClientOptions, create_client

from lecturenotes import config
from lecturenotes.models import AuthSession

log = logging.getLogger(__name__)

# Refresh this many seconds before the access token actually expires.
EXPIRY_LEEWAY = 60

_client: Client | None = None


class AuthError(Exception):
    """Raised when credentials or an access token are rejected."""


def _auth_client() -> Client:
    global _client
    if _client is None:
        # Shared by every user, so it must never hold a session of its own.
        _client = create_client(
            config.SUPABASE_URL,
            config.SUPABASE_ANON_KEY,
            options=ClientOptions(persist_session=False, auto_refresh_token=False),
        )
    return _client


def _to_session(response) -> AuthSession | None:
    if response.session is None or response.user is None:
        return None
    return AuthSession(
        user_id=response.user.id,
        email=response.user.email or "",
        access_token=response.session.access_token,
        refresh_token=response.session.refresh_token,
        expires_at=response.session.expires_at,
    )


def sign_up(email: str, password: str) -> AuthSession | None:
    """Create an account. Returns None when the project requires email confirmation."""
    try:
        response = _auth_client().auth.sign_up({"email": email, "password": password})
    except SupabaseAuthError as e:
        log.warning("Sign-up failed for %s: %s", email, e)
        raise AuthError(str(e)) from e
    log.info("Signed up %s", email)
    return _to_session(response)


def sign_in(email: str, password: str) -> AuthSession:
    try:
        response = _auth_client().auth.sign_in_with_password(
            {"email": email, "password": password}
        )
    except SupabaseAuthError as e:
        log.warning("Sign-in failed for %s: %s", email, e)
        raise AuthError("Invalid email or password") from e
    session = _to_session(response)
    if session is None:
        raise AuthError("Invalid email or password")
    return session


def is_expired(session: AuthSession, leeway: int = EXPIRY_LEEWAY) -> bool:
    if session.expires_at is None:
        return False
    return time.time() >= session.expires_at - leeway


def refresh(session: AuthSession) -> AuthSession:
    """Exchange the refresh token for a new access token."""
    if not session.refresh_token:
        raise AuthError("Session expired, please sign in again")
    try:
        response = _auth_client().auth.refresh_session(session.refresh_token)
    except SupabaseAuthError as e:
        log.warning("Token refresh failed for %s: %s", session.email, e)
        raise AuthError("Session expired, please sign in again") from e
    refreshed = _to_session(response)
    if refreshed is None:
        raise AuthError("Session expired, please sign in again")
    log.info("Refreshed session for %s", refreshed.email)
    return refreshed


def sign_out(access_token: str) -> None:
    """Revoke the user's refresh tokens. Failures are logged, not raised."""
    try:
        _auth_client().auth.admin.sign_out(access_token)
    except SupabaseAuthError:
        log.exception("Sign-out call failed")


def get_user(access_token: str) -> AuthSession:
    """Resolve a bearer access token to its user."""
    try:
        response = _auth_client().auth.get_user(access_token)
    except SupabaseAuthError as e:
        raise AuthError("Invalid or expired access token") from e
    if response is None or response.user is None:
        raise AuthError("Invalid or expired access token")
    return AuthSession(
        user_id=response.user.id,
        email=response.user.email or "",
        access_token=access_token,
    )
