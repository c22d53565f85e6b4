from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .files import iso_timestamp, write_markdown_document

logger = logging.getLogger("sweetlink.server")


def _render_logs(logs: list[Any]) -> str:
    lines = []
    for log in logs:
        if not isinstance(log, dict):
            continue
        ts = log.get("timestamp")
        stamp = iso_timestamp(ts) if isinstance(ts, (int, float)) else "?"
        lines.append(f"- `{stamp}` **{str(log.get('level') or 'log').upper()}** {log.get('message') or ''}")
    return "\n".join(lines)


def save_console_logs(project_root: str | Path, data: dict[str, Any]) -> str:
    """Save the runtime's console history; uses its own markdown when given, else renders ``logs``."""
    markdown = data.get("markdown")
    if isinstance(markdown, str) and markdown.strip():
        body = markdown
    else:
        logs = data.get("logs")
        body = _render_logs(logs if isinstance(logs, list) else []) or "_No console logs recorded_"
    path = write_markdown_document(project_root, "console-logs", data, heading="Console Logs", body=body)
    logger.info("Console logs saved: %s", path)
    return str(path)
