from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .files import write_markdown_document

logger = logging.getLogger("sweetlink.server")


def save_outline(project_root: str | Path, data: dict[str, Any]) -> str:
    """Save a page's heading outline (already rendered to markdown by the runtime)."""
    markdown = data.get("markdown")
    body = markdown if isinstance(markdown, str) and markdown.strip() else "_No headings found in this document_"
    path = write_markdown_document(project_root, "outline", data, heading="Document Outline", body=body)
    logger.info("Document outline saved: %s", path)
    return str(path)
