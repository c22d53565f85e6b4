from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from ..errors import HandlerFailure
from ..protocol import REQUEST_SCREENSHOT, SCREENSHOT_RESPONSE, failure, message_type, now_ms, success
from ..screenshot_utils import DEFAULT_SCREENSHOT_QUALITY, DEFAULT_SCREENSHOT_SCALE, encode_capture
from .console import LogRingBuffer

logger = logging.getLogger("sweetlink.bridge")

MAX_TEXT_CONTENT = 200


class PageAdapter(Protocol):
    """Access to the live page a bridge serves."""

    async def capture(self, selector: str | None, options: dict[str, Any]) -> bytes | None:
        """Raw image bytes of ``selector`` (or the whole page); None if not found."""
        ...

    async def query(self, selector: str, prop: str | None) -> list[dict[str, Any]]:
        ...

    async def evaluate(self, code: str) -> Any:
        ...

    async def metadata(self) -> dict[str, Any]:
        """``{"url": ..., "viewport": {"width": ..., "height": ...}}``"""
        ...


def js_type_name(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if callable(value):
        return "function"
    return "object"


def _plain(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.loads(json.dumps(value, default=str))
    if js_type_name(value) in {"object", "function"}:
        return str(value)
    return value


CommandHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class CommandHandlers:
    """Runtime-side commands, keyed by message ``type``."""

    def __init__(self, page: PageAdapter, logs: LogRingBuffer) -> None:
        self.page = page
        self.logs = logs
        self._handlers: dict[str, CommandHandler] = {
            "screenshot": self.screenshot,
            REQUEST_SCREENSHOT: self.request_screenshot,
            "query-dom": self.query_dom,
            "get-logs": self.get_logs,
            "exec-js": self.exec_js,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        command = message_type(msg)
        handler = self._handlers.get(command) if command else None
        if handler is None:
            return failure(f"Unknown command: {command}")
        logger.debug("command %s", command)
        try:
            return await handler(msg)
        except HandlerFailure as exc:
            return self._failure_for(command, msg, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.warning("command %s failed: %s", command, exc)
            return self._failure_for(command, msg, str(exc) or f"{command} failed")

    @staticmethod
    def _failure_for(command: str, msg: dict[str, Any], error: str) -> dict[str, Any]:
        if command == REQUEST_SCREENSHOT:
            return failure(error, type=SCREENSHOT_RESPONSE, requestId=msg.get("requestId"))
        return failure(error)

    async def _capture(self, msg: dict[str, Any]) -> bytes:
        selector = msg.get("selector") or None
        options = msg.get("options") if isinstance(msg.get("options"), dict) else {}
        raw = await self.page.capture(selector, options)
        if raw is None:
            raise HandlerFailure(f"Element not found: {selector}")
        return raw

    async def screenshot(self, msg: dict[str, Any]) -> dict[str, Any]:
        raw = await self._capture(msg)
        data_url, width, height = await asyncio.to_thread(encode_capture, raw, scale=1.0, fmt="png")
        return success(
            {"screenshot": data_url, "width": width, "height": height, "selector": msg.get("selector") or "body"}
        )

    async def request_screenshot(self, msg: dict[str, Any]) -> dict[str, Any]:
        raw = await self._capture(msg)
        data_url, width, height = await asyncio.to_thread(
            encode_capture,
            raw,
            scale=msg.get("scale") or DEFAULT_SCREENSHOT_SCALE,
            fmt=msg.get("format") or "jpeg",
            quality=msg.get("quality") or DEFAULT_SCREENSHOT_QUALITY,
        )
        data: dict[str, Any] = {
            "screenshot": data_url,
            "width": width,
            "height": height,
            "selector": msg.get("selector") or "body",
        }
        if msg.get("includeMetadata") is not False:
            meta = await self.page.metadata()
            data["url"] = meta.get("url")
            data["timestamp"] = now_ms()
            data["viewport"] = meta.get("viewport")
        return success(data, type=SCREENSHOT_RESPONSE, requestId=msg.get("requestId"))

    async def query_dom(self, msg: dict[str, Any]) -> dict[str, Any]:
        selector = msg.get("selector")
        if not selector:
            raise HandlerFailure("Selector is required")
        prop = msg.get("property") or None
        found = await self.page.query(str(selector), prop)
        elements = []
        for index, el in enumerate(found):
            item = {"index": index, **el}
            text = item.get("textContent")
            if isinstance(text, str):
                item["textContent"] = text[:MAX_TEXT_CONTENT] or None
            elements.append(item)
        return success({"found": bool(elements), "count": len(elements), "elements": elements})

    async def get_logs(self, msg: dict[str, Any]) -> dict[str, Any]:
        term = msg.get("filter")
        logs = self.logs.filter(str(term) if term else None)
        return success(
            {
                "logs": [e.to_dict() for e in logs],
                "totalCount": len(self.logs),
                "filteredCount": len(logs),
            }
        )

    async def exec_js(self, msg: dict[str, Any]) -> dict[str, Any]:
        code = msg.get("code")
        if not code:
            raise HandlerFailure("Code is required")
        result = await self.page.evaluate(str(code))
        return success({"result": _plain(result), "type": js_type_name(result)})
