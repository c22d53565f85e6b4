"""Wire protocol shared by the server, the runtime bridge and controllers.

Frames are UTF-8 JSON objects. Messages whose ``type`` is listed in
``RESERVED_TYPES`` are interpreted by the router; every other frame is opaque
and forwarded verbatim between a controller and a runtime.
"""

from __future__ import annotations

import json
import time
from typing import Any

from .errors import MalformedMessage

PROTOCOL_VERSION = "1.4.0"
SERVER_NAME = "sweetlink"

# Message types
BROWSER_CLIENT_READY = "browser-client-ready"
SERVER_INFO = "server-info"
CHECK_API_KEY = "check-api-key"
API_KEY_STATUS = "api-key-status"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"
LOG_SUBSCRIBE = "log-subscribe"
LOG_UNSUBSCRIBE = "log-unsubscribe"
LOG_SUBSCRIBED = "log-subscribed"
LOG_UNSUBSCRIBED = "log-unsubscribed"
REQUEST_SCREENSHOT = "request-screenshot"
SCREENSHOT_RESPONSE = "screenshot-response"
HMR_SCREENSHOT = "hmr-screenshot"
HMR_SCREENSHOT_SAVED = "hmr-screenshot-saved"
LOG_EVENT = "log-event"
SAVE_SCREENSHOT = "save-screenshot"
SCREENSHOT_SAVED = "screenshot-saved"
SAVE_OUTLINE = "save-outline"
OUTLINE_SAVED = "outline-saved"
OUTLINE_ERROR = "outline-error"
SAVE_SCHEMA = "save-schema"
SCHEMA_SAVED = "schema-saved"
SCHEMA_ERROR = "schema-error"
SAVE_CONSOLE_LOGS = "save-console-logs"
CONSOLE_LOGS_SAVED = "console-logs-saved"
CONSOLE_LOGS_ERROR = "console-logs-error"

RESERVED_TYPES = frozenset(
    {
        BROWSER_CLIENT_READY,
        SERVER_INFO,
        CHECK_API_KEY,
        API_KEY_STATUS,
        SUBSCRIBE,
        UNSUBSCRIBE,
        SUBSCRIBED,
        UNSUBSCRIBED,
        LOG_SUBSCRIBE,
        LOG_UNSUBSCRIBE,
        LOG_SUBSCRIBED,
        LOG_UNSUBSCRIBED,
        REQUEST_SCREENSHOT,
        SCREENSHOT_RESPONSE,
        HMR_SCREENSHOT,
        HMR_SCREENSHOT_SAVED,
        LOG_EVENT,
        SAVE_SCREENSHOT,
        SCREENSHOT_SAVED,
        SAVE_OUTLINE,
        OUTLINE_SAVED,
        OUTLINE_ERROR,
        SAVE_SCHEMA,
        SCHEMA_SAVED,
        SCHEMA_ERROR,
        SAVE_CONSOLE_LOGS,
        CONSOLE_LOGS_SAVED,
        CONSOLE_LOGS_ERROR,
    }
)

# Channel carrying auto-capture notifications.
HMR_CHANNEL = "hmr-screenshots"

# Close code sent to browser origins that are not loopback.
CLOSE_ORIGIN_REJECTED = 4001
ORIGIN_REJECTED_REASON = "Only localhost connections allowed"

NO_RUNTIME_ERROR = "No browser client connected. Is the dev server running with the page open?"


def now_ms() -> int:
    return int(time.time() * 1000)


def success(data: Any = None, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {**extra, "success": True}
    if data is not None:
        payload["data"] = data
    payload["timestamp"] = now_ms()
    return payload


def failure(error: str, **extra: Any) -> dict[str, Any]:
    return {**extra, "success": False, "error": str(error or "Unknown error"), "timestamp": now_ms()}


def encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def as_text(raw: str | bytes | bytearray) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", "replace")
    return raw


def decode(raw: str | bytes | bytearray) -> dict[str, Any]:
    """Parse one frame; anything but a JSON object raises MalformedMessage."""
    text = as_text(raw)
    try:
        msg = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"Invalid JSON message: {exc}") from exc
    if not isinstance(msg, dict):
        raise MalformedMessage("Message must be a JSON object")
    return msg


def message_type(msg: dict[str, Any]) -> str | None:
    mtype = msg.get("type")
    if isinstance(mtype, str) and mtype.strip():
        return mtype.strip()
    return None


def is_reserved(msg: dict[str, Any]) -> bool:
    return message_type(msg) in RESERVED_TYPES
