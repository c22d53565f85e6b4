from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .files import write_markdown_document

logger = logging.getLogger("sweetlink.server")


def save_schema(project_root: str | Path, data: dict[str, Any]) -> str:
    """Save a page's structured data as markdown plus the raw JSON it came from."""
    markdown = data.get("markdown")
    summary = markdown if isinstance(markdown, str) and markdown.strip() else "_No structured data found on this page_"
    raw = json.dumps(data.get("schema"), indent=2, ensure_ascii=False, default=str)
    body = "\n".join([summary, "", "---", "", "## Raw JSON", "", "```json", raw, "```"])
    path = write_markdown_document(project_root, "schema", data, heading="Page Schema", body=body)
    logger.info("Page schema saved: %s", path)
    return str(path)
