from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ...protocol import now_ms
from ...screenshot_utils import decode_data_url
from .files import HMR_SCREENSHOT_DIR, generate_base_filename, iso_timestamp, safe_name_part, truncate_message

logger = logging.getLogger("sweetlink.server")


@dataclass(frozen=True, slots=True)
class HmrCaptureResult:
    screenshot_path: str | None
    logs_path: str
    log_summary: dict[str, Any] = field(default_factory=dict)


def _as_log_list(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [entry for entry in raw if isinstance(entry, dict)]


def _format_log(entry: dict[str, Any]) -> dict[str, Any]:
    ts = entry.get("timestamp")
    return {
        "timestamp": iso_timestamp(ts) if isinstance(ts, (int, float)) else None,
        "level": entry.get("level"),
        "message": entry.get("message"),
        **({"stack": entry["stack"]} if entry.get("stack") else {}),
        **({"source": entry["source"]} if entry.get("source") else {}),
    }


def save_hmr_capture(project_root: str | Path, data: dict[str, Any]) -> HmrCaptureResult:
    """Persist one auto-capture (image + logs JSON) under the project's tmp dir."""
    out_dir = Path(project_root) / HMR_SCREENSHOT_DIR
    out_dir.mkdir(parents=True, exist_ok=True)

    timestamp = data.get("timestamp") if isinstance(data.get("timestamp"), (int, float)) else now_ms()
    trigger = str(data.get("trigger") or "unknown")
    base = generate_base_filename("hmr", timestamp, safe_name_part(trigger) or None)

    screenshot_path: Path | None = None
    screenshot = data.get("screenshot")
    if isinstance(screenshot, str) and screenshot:
        screenshot_path = out_dir / f"{base}.jpg"
        screenshot_path.write_bytes(decode_data_url(screenshot))

    logs = data.get("logs") if isinstance(data.get("logs"), dict) else {}
    all_logs = _as_log_list(logs.get("all"))
    errors = _as_log_list(logs.get("errors"))
    warnings = _as_log_list(logs.get("warnings"))
    summary = {
        "totalLogs": len(all_logs),
        "errorCount": len(errors),
        "warningCount": len(warnings),
        "hasNewErrors": len(errors) > 0,
    }

    logs_path = out_dir / f"{base}-logs.json"
    doc = {
        "meta": {
            "capturedAt": iso_timestamp(timestamp),
            "url": data.get("url"),
            "trigger": trigger,
            "changedFile": data.get("changedFile"),
            "sequenceNumber": data.get("sequenceNumber"),
            "hmrMetadata": data.get("hmrMetadata"),
        },
        "summary": summary,
        "logs": {
            "all": [_format_log(e) for e in all_logs],
            "errors": [_format_log(e) for e in errors],
            "warnings": [_format_log(e) for e in warnings],
        },
    }
    logs_path.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")

    logger.info("HMR screenshot saved: %s", screenshot_path or "(no image)")
    logger.info(
        "Logs: %s total | %s warnings | %s errors", len(all_logs), len(warnings), len(errors)
    )
    for err in errors[:3]:
        logger.info("  error: %s", truncate_message(str(err.get("message") or ""), 100))
    if len(errors) > 3:
        logger.info("  ... and %s more errors", len(errors) - 3)

    return HmrCaptureResult(
        screenshot_path=str(screenshot_path) if screenshot_path else None,
        logs_path=str(logs_path),
        log_summary=summary,
    )
