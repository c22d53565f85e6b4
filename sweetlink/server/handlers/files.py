from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

SCREENSHOT_DIR = ".tmp/sweetlink-screenshots"
HMR_SCREENSHOT_DIR = ".tmp/hmr-screenshots"

MAX_SLUG_LENGTH = 50
MAX_LOG_MESSAGE_LENGTH = 200


def iso_timestamp(timestamp_ms: int | float) -> str:
    dt = datetime.fromtimestamp(float(timestamp_ms) / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def format_timestamp_for_filename(timestamp_ms: int | float) -> str:
    """2024-01-15T10:30:45.123Z -> 2024-01-15T10-30-45-123Z"""
    return re.sub(r"[:.]", "-", iso_timestamp(timestamp_ms))


def safe_name_part(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]+", "-", str(value or "")).strip("-")[:MAX_SLUG_LENGTH]


def generate_base_filename(kind: str, timestamp_ms: int | float, slug: str | None = None) -> str:
    date_str = format_timestamp_for_filename(timestamp_ms)
    if slug:
        return f"{kind}-{slug}-{date_str}"
    return f"{kind}-{date_str}"


def truncate_message(message: str, max_length: int = MAX_LOG_MESSAGE_LENGTH) -> str:
    if len(message) <= max_length:
        return message
    return message[:max_length]


def local_timestamp(timestamp_ms: int | float) -> str:
    return datetime.fromtimestamp(float(timestamp_ms) / 1000.0).strftime("%Y-%m-%d %H:%M:%S")


def slug_from_url(url: str | None, title: str | None = None) -> str:
    """URL path as a filename slug (``/company/acme`` -> ``company-acme``); title when the URL is unusable."""
    parts = urlsplit(url or "")
    if parts.scheme and parts.netloc:
        slug = re.sub(r"[^a-zA-Z0-9-]", "", parts.path.strip("/").replace("/", "-"))[:MAX_SLUG_LENGTH]
    else:
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", (title or "page").lower()).strip("-")[:MAX_SLUG_LENGTH]
    return slug or "index"


def write_markdown_document(
    project_root: str | Path,
    kind: str,
    data: dict[str, Any],
    *,
    heading: str,
    body: str,
) -> Path:
    """Write ``<kind>-<slug>-<time>.md`` with frontmatter under the screenshot dir."""
    out_dir = Path(project_root) / SCREENSHOT_DIR
    out_dir.mkdir(parents=True, exist_ok=True)

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = int(datetime.now(tz=timezone.utc).timestamp() * 1000)
    url = str(data.get("url") or "")
    title = str(data.get("title") or "")

    path = out_dir / f"{generate_base_filename(kind, timestamp, slug_from_url(url, title))}.md"
    text = "\n".join(
        [
            "---",
            f"title: {title or heading}",
            f"url: {url}",
            f"timestamp: {iso_timestamp(timestamp)}",
            "---",
            "",
            f"# {heading}",
            "",
            f"> Page: {title or url}",
            f"> Generated: {local_timestamp(timestamp)}",
            "",
            body,
            "",
        ]
    )
    path.write_text(text, encoding="utf-8")
    return path
