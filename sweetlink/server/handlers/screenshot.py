from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ...errors import HandlerFailure
from ...protocol import now_ms
from ...screenshot_utils import decode_data_url
from .files import SCREENSHOT_DIR, generate_base_filename, iso_timestamp

logger = logging.getLogger("sweetlink.server")


def save_screenshot(project_root: str | Path, data: dict[str, Any]) -> str:
    """Write a runtime-supplied screenshot (and its console logs) to disk."""
    screenshot = data.get("screenshot")
    if not isinstance(screenshot, str) or not screenshot:
        raise HandlerFailure("save-screenshot requires data.screenshot")

    out_dir = Path(project_root) / SCREENSHOT_DIR
    out_dir.mkdir(parents=True, exist_ok=True)

    timestamp = data.get("timestamp") if isinstance(data.get("timestamp"), (int, float)) else now_ms()
    base = generate_base_filename("screenshot", timestamp)
    screenshot_path = out_dir / f"{base}.jpg"
    screenshot_path.write_bytes(decode_data_url(screenshot))

    url = data.get("url")
    width = data.get("width")
    height = data.get("height")
    logs = [log for log in (data.get("logs") or []) if isinstance(log, dict)]
    if logs:
        lines = [
            f"[{iso_timestamp(log.get('timestamp') or timestamp)}] {str(log.get('level') or 'log').upper()}: "
            f"{log.get('message') or ''}"
            for log in logs
        ]
        text = "\n".join(
            [
                f"Screenshot captured at: {iso_timestamp(timestamp)}",
                f"URL: {url}",
                f"Dimensions: {width}x{height}",
                "",
                "=== CONSOLE LOGS ===",
                "",
                *lines,
            ]
        )
        logs_path = out_dir / f"{base}-logs.txt"
        logs_path.write_text(text, encoding="utf-8")

        doc = {
            "meta": {
                "capturedAt": iso_timestamp(timestamp),
                "url": url,
                "dimensions": {"width": width, "height": height},
            },
            "logs": [
                {
                    "timestamp": iso_timestamp(log.get("timestamp") or timestamp),
                    "level": log.get("level"),
                    "message": log.get("message"),
                }
                for log in logs
            ],
        }
        (out_dir / f"{base}-logs.json").write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Console logs saved: %s", logs_path)

    a11y = data.get("a11y")
    if isinstance(a11y, list) and a11y:
        (out_dir / f"{base}-a11y.json").write_text(json.dumps(a11y, indent=2, ensure_ascii=False), encoding="utf-8")

    logger.info("Screenshot saved to %s", screenshot_path)
    return str(screenshot_path)
