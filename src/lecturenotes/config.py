"""Environment-driven settings shared by the API server and the MCP server."""
from __future__ import annotations

import os

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
NOTES_BUCKET = os.environ.get("NOTES_BUCKET", "notes")

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
APP_URL = os.environ.get("APP_URL", "http://localhost:8000")
ENVIRONMENT = os.environ.get("RAILWAY_ENVIRONMENT", "development")

GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_TEMPERATURE = float(os.environ.get("GEMINI_TEMPERATURE", "0.4"))
GEMINI_MAX_OUTPUT_TOKENS = int(os.environ.get("GEMINI_MAX_OUTPUT_TOKENS", "2048"))
GEMINI_TIMEOUT_SECONDS = float(os.environ.get("GEMINI_TIMEOUT_SECONDS", "60"))

TESSERACT_LANG = os.environ.get("TESSERACT_LANG", "eng")
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))


def gemini_model_name() -> str:
    """pydantic-ai model string for the configured Gemini model."""
    if ":" in GEMINI_MODEL:
        return GEMINI_MODEL
    return f"google-gla:{GEMINI_MODEL}"
