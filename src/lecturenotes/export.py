"""Download formats for a note's extracted text."""
from __future__ import annotations

import html
import json
from datetime import datetime, timezone

HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 40px; line-height: 1.5; }}
    pre {{ white-space: pre-wrap; }}
  </style>
</head>
<body>
  <h1>{title}</h1>
  <pre>{body}</pre>
</body>
</html>
"""


def _as_text(text: str, file_name: str) -> tuple[bytes, str, str]:
    return text.encode("utf-8"), "text/plain; charset=utf-8", f"{file_name}.txt"


def _as_html(text: str, file_name: str) -> tuple[bytes, str, str]:
    page = HTML_TEMPLATE.format(title=html.escape(file_name), body=html.escape(text))
    return page.encode("utf-8"), "text/html; charset=utf-8", f"{file_name}.html"


def _as_json(text: str, file_name: str) -> tuple[bytes, str, str]:
    payload = {
        "content": text,
        "exportDate": datetime.now(timezone.utc).isoformat(),
        "metadata": {
            "characterCount": len(text),
            "wordCount": len(text.split()),
            "lineCount": len(text.split("\n")),
        },
    }
    return (
        json.dumps(payload, indent=2).encode("utf-8"),
        "application/json",
        f"{file_name}.json",
    )


# "pdf" produces a printable HTML page; print it to PDF from the browser.
_EXPORTERS = {
    "txt": _as_text,
    "html": _as_html,
    "pdf": _as_html,
    "json": _as_json,
}


def export_text(
    text: str, fmt: str, file_name: str = "extracted_text"
) -> tuple[bytes, str, str]:
    """Render ``text`` for download. Returns (body, media_type, filename)."""
    try:
        exporter = _EXPORTERS[fmt]
    except KeyError:
        raise ValueError(
            f"Unknown export format '{fmt}'. Use one of: {', '.join(_EXPORTERS)}"
        ) from None
    return exporter(text, file_name)
