from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import ServerConfig
from ..errors import HandlerFailure, MalformedMessage
from ..protocol import (
    API_KEY_STATUS,
    BROWSER_CLIENT_READY,
    CHECK_API_KEY,
    CONSOLE_LOGS_ERROR,
    CONSOLE_LOGS_SAVED,
    HMR_CHANNEL,
    HMR_SCREENSHOT,
    HMR_SCREENSHOT_SAVED,
    LOG_EVENT,
    LOG_SUBSCRIBE,
    LOG_SUBSCRIBED,
    LOG_UNSUBSCRIBE,
    LOG_UNSUBSCRIBED,
    NO_RUNTIME_ERROR,
    OUTLINE_ERROR,
    OUTLINE_SAVED,
    REQUEST_SCREENSHOT,
    SAVE_CONSOLE_LOGS,
    SAVE_OUTLINE,
    SAVE_SCHEMA,
    SAVE_SCREENSHOT,
    SCHEMA_ERROR,
    SCHEMA_SAVED,
    SCREENSHOT_RESPONSE,
    SCREENSHOT_SAVED,
    SERVER_INFO,
    SUBSCRIBE,
    SUBSCRIBED,
    UNSUBSCRIBE,
    UNSUBSCRIBED,
    as_text,
    decode,
    failure,
    is_reserved,
    message_type,
    now_ms,
)
from ..screenshot_utils import DEFAULT_SCREENSHOT_QUALITY, DEFAULT_SCREENSHOT_SCALE
from .connections import Connection, ConnectionTable, Controller, Runtime, RuntimeIdentity, Unclassified
from .handlers import (
    HmrCaptureResult,
    save_console_logs,
    save_hmr_capture,
    save_outline,
    save_schema,
    save_screenshot,
)
from .pending import PendingRequestLedger
from .subscriptions import LogFilter, SubscriptionRegistry

logger = logging.getLogger("sweetlink.router")

Handler = Callable[[Connection, dict[str, Any]], Awaitable[bool]]

# Runtime-supplied documents: save function, confirmation type, error type, path key.
_DOCUMENT_SAVES: dict[str, tuple[Callable[[str, dict[str, Any]], str], str, str, str]] = {
    SAVE_OUTLINE: (save_outline, OUTLINE_SAVED, OUTLINE_ERROR, "outlinePath"),
    SAVE_SCHEMA: (save_schema, SCHEMA_SAVED, SCHEMA_ERROR, "schemaPath"),
    SAVE_CONSOLE_LOGS: (save_console_logs, CONSOLE_LOGS_SAVED, CONSOLE_LOGS_ERROR, "consoleLogsPath"),
}


@dataclass(frozen=True, slots=True)
class ServerIdentity:
    bound_port: int
    app_port: int | None
    project_root: str


class MessageRouter:
    """Routes every inbound frame of one server.

    Reserved message types go through a dispatch table. A handler returns
    False to decline (e.g. a controller-only type arriving from a runtime);
    declined or unhandled reserved types are refused with a failure and never
    forwarded. Everything else takes the generic path: controller frames go
    verbatim to the first verified runtime, runtime frames go verbatim to
    whichever controller sent the last command.
    """

    def __init__(
        self,
        *,
        config: ServerConfig,
        table: ConnectionTable,
        registry: SubscriptionRegistry,
        ledger: PendingRequestLedger,
        save_hmr: Callable[[str, dict[str, Any]], HmrCaptureResult] = save_hmr_capture,
        save_capture: Callable[[str, dict[str, Any]], str] = save_screenshot,
    ) -> None:
        self.config = config
        self.table = table
        self.registry = registry
        self.ledger = ledger
        self.identity: ServerIdentity | None = None
        self._save_hmr = save_hmr
        self._save_capture = save_capture
        self._sub_counter = 0

        self._handlers: dict[str, Handler] = {
            BROWSER_CLIENT_READY: self._on_client_ready,
            CHECK_API_KEY: self._on_check_api_key,
            SUBSCRIBE: self._on_subscribe,
            UNSUBSCRIBE: self._on_unsubscribe,
            LOG_SUBSCRIBE: self._on_log_subscribe,
            LOG_UNSUBSCRIBE: self._on_log_unsubscribe,
            REQUEST_SCREENSHOT: self._on_request_screenshot,
            SCREENSHOT_RESPONSE: self._on_screenshot_response,
            HMR_SCREENSHOT: self._on_hmr_screenshot,
            LOG_EVENT: self._on_log_event,
            SAVE_SCREENSHOT: self._on_save_screenshot,
            **{mtype: self._on_save_document for mtype in _DOCUMENT_SAVES},
        }

    @property
    def app_port(self) -> int | None:
        if self.identity is not None:
            return self.identity.app_port
        return self.config.app_port

    @property
    def project_root(self) -> str:
        if self.identity is not None:
            return self.identity.project_root
        return os.getcwd()

    async def handle(self, conn: Connection, raw: str | bytes) -> None:
        text = as_text(raw)
        try:
            msg = decode(text)
        except MalformedMessage as exc:
            logger.warning("malformed frame from %s: %s", conn.client_id, exc)
            await conn.send_json(failure(str(exc)))
            return

        mtype = message_type(msg)
        if isinstance(conn.role, Unclassified) and mtype != BROWSER_CLIENT_READY:
            conn.role = Controller()
            logger.debug("%s classified as controller", conn.client_id)

        handler = self._handlers.get(mtype) if mtype else None
        try:
            if handler is not None and await handler(conn, msg):
                return
            if is_reserved(msg):
                logger.warning("reserved type %r from %s %s not accepted", mtype, conn.role_name, conn.client_id)
                error = f"Reserved message type {mtype} not accepted from {conn.role_name}"
                await conn.send_json(failure(error, type=mtype))
                return
            await self._forward(conn, text)
        except Exception as exc:  # noqa: BLE001
            logger.exception("error handling %r from %s", mtype, conn.client_id)
            await conn.send_json(failure(str(exc) or type(exc).__name__))

    # ─────────────────────────────────────────────────────────────────────────
    # Generic forwarding
    # ─────────────────────────────────────────────────────────────────────────

    async def _forward(self, conn: Connection, text: str) -> None:
        if conn.is_runtime:
            target = conn.reply_to
            conn.reply_to = None
            if target is None:
                logger.debug("reply from %s has no waiting controller; dropped", conn.client_id)
                return
            if not await target.send_text(text):
                logger.debug("controller %s went away before the reply", target.client_id)
            return

        runtime = self.table.first_verified_runtime(self.app_port)
        if runtime is None:
            await conn.send_json(failure(NO_RUNTIME_ERROR))
            return
        runtime.reply_to = conn
        if not await runtime.send_text(text):
            runtime.reply_to = None
            await conn.send_json(failure(NO_RUNTIME_ERROR))
            return
        logger.debug("forwarded %s -> %s", conn.client_id, runtime.client_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_client_ready(self, conn: Connection, msg: dict[str, Any]) -> bool:
        identity = RuntimeIdentity.from_message(msg)
        conn.role = Runtime(identity)
        logger.info(
            "runtime connected from %s (app port %s)",
            conn.client_id,
            identity.app_port if identity.app_port is not None else "unknown",
        )
        ident = self.identity
        await conn.send_json(
            {
                "type": SERVER_INFO,
                "appPort": ident.app_port if ident else self.config.app_port,
                "wsPort": ident.bound_port if ident else self.config.port,
                "projectDir": self.project_root,
                "timestamp": now_ms(),
            }
        )
        return True

    async def _on_check_api_key(self, conn: Connection, msg: dict[str, Any]) -> bool:
        await conn.send_json(
            {
                "type": API_KEY_STATUS,
                "configured": bool((os.environ.get("ANTHROPIC_API_KEY") or "").strip()),
                "model": self.config.review_model,
                "timestamp": now_ms(),
            }
        )
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _channel(msg: dict[str, Any]) -> str | None:
        channel = msg.get("channel")
        if isinstance(channel, str) and channel.strip():
            return channel.strip()
        return None

    async def _on_subscribe(self, conn: Connection, msg: dict[str, Any]) -> bool:
        channel = self._channel(msg)
        if channel is None:
            await conn.send_json(failure("subscribe requires a channel", type=SUBSCRIBED))
            return True
        self.registry.subscribe(channel, conn)
        logger.debug("%s subscribed to %s", conn.client_id, channel)
        await conn.send_json({"type": SUBSCRIBED, "channel": channel, "timestamp": now_ms()})
        return True

    async def _on_unsubscribe(self, conn: Connection, msg: dict[str, Any]) -> bool:
        channel = self._channel(msg)
        if channel is None:
            await conn.send_json(failure("unsubscribe requires a channel", type=UNSUBSCRIBED))
            return True
        self.registry.unsubscribe(channel, conn)
        await conn.send_json({"type": UNSUBSCRIBED, "channel": channel, "timestamp": now_ms()})
        return True

    def _next_subscription_id(self) -> str:
        self._sub_counter += 1
        return f"log-{now_ms()}-{self._sub_counter}"

    async def _on_log_subscribe(self, conn: Connection, msg: dict[str, Any]) -> bool:
        sub_id = msg.get("subscriptionId")
        sub_id = str(sub_id) if sub_id else self._next_subscription_id()
        try:
            log_filter = LogFilter.from_payload(msg.get("filters"))
        except MalformedMessage as exc:
            await conn.send_json(failure(str(exc), type=LOG_SUBSCRIBED, subscriptionId=sub_id))
            return True

        existing = self.registry.log_subscription(sub_id)
        if existing is not None and existing.connection is not conn:
            await conn.send_json(
                failure(f"Subscription {sub_id} already exists", type=LOG_SUBSCRIBED, subscriptionId=sub_id)
            )
            return True

        self.registry.add_log_subscription(sub_id, conn, log_filter)
        logger.debug("%s log subscription %s", conn.client_id, sub_id)
        await conn.send_json({"type": LOG_SUBSCRIBED, "subscriptionId": sub_id, "timestamp": now_ms()})
        return True

    async def _on_log_unsubscribe(self, conn: Connection, msg: dict[str, Any]) -> bool:
        sub_id = str(msg.get("subscriptionId") or "")
        if not self.registry.remove_log_subscription(sub_id, conn):
            await conn.send_json(
                failure(f"Unknown subscription: {sub_id}", type=LOG_UNSUBSCRIBED, subscriptionId=sub_id)
            )
            return True
        await conn.send_json({"type": LOG_UNSUBSCRIBED, "subscriptionId": sub_id, "timestamp": now_ms()})
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Correlated screenshots
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_request_screenshot(self, conn: Connection, msg: dict[str, Any]) -> bool:
        if conn.is_runtime:
            return False

        request_id = msg.get("requestId")
        request_id = str(request_id) if request_id else self.ledger.generate_request_id()

        runtime = self.table.first_verified_runtime(self.app_port)
        if runtime is None:
            await conn.send_json(failure(NO_RUNTIME_ERROR, type=SCREENSHOT_RESPONSE, requestId=request_id))
            return True

        try:
            self.ledger.issue(request_id, conn)
        except KeyError:
            await conn.send_json(
                failure(
                    f"Request {request_id} is already pending",
                    type=SCREENSHOT_RESPONSE,
                    requestId=request_id,
                )
            )
            return True

        forward = {
            "type": REQUEST_SCREENSHOT,
            "requestId": request_id,
            "selector": msg.get("selector"),
            "format": msg.get("format") or "jpeg",
            "quality": msg.get("quality") or DEFAULT_SCREENSHOT_QUALITY,
            "scale": msg.get("scale") or DEFAULT_SCREENSHOT_SCALE,
            "includeMetadata": msg.get("includeMetadata") is not False,
        }
        if not await runtime.send_json(forward):
            self.ledger.resolve(request_id)
            await conn.send_json(failure(NO_RUNTIME_ERROR, type=SCREENSHOT_RESPONSE, requestId=request_id))
            return True
        logger.debug("screenshot %s requested by %s", request_id, conn.client_id)
        return True

    async def _on_screenshot_response(self, conn: Connection, msg: dict[str, Any]) -> bool:
        request_id = msg.get("requestId")
        if not conn.is_runtime or not request_id:
            return False
        pending = self.ledger.resolve(str(request_id))
        if pending is None:
            logger.debug("late or unknown screenshot response %s dropped", request_id)
            return True
        await pending.origin.send_json(msg)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Runtime-originated events
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_hmr_screenshot(self, conn: Connection, msg: dict[str, Any]) -> bool:
        data = msg.get("data")
        if not isinstance(data, dict):
            await conn.send_json(failure("hmr-screenshot requires a data object", type=HMR_SCREENSHOT_SAVED))
            return True

        try:
            result = await asyncio.to_thread(self._save_hmr, self.project_root, data)
        except (OSError, ValueError) as exc:
            logger.warning("failed to save HMR screenshot: %s", exc)
            await conn.send_json(failure(str(exc), type=HMR_SCREENSHOT_SAVED))
            return True

        sequence = data.get("sequenceNumber")
        event = {
            "type": HMR_SCREENSHOT_SAVED,
            "channel": HMR_CHANNEL,
            "data": {
                "screenshotPath": result.screenshot_path,
                "logsPath": result.logs_path,
                "trigger": data.get("trigger"),
                "changedFile": data.get("changedFile"),
                "sequenceNumber": sequence,
                "logSummary": result.log_summary,
                "timestamp": data.get("timestamp") or now_ms(),
            },
        }
        sent = await self.registry.broadcast(HMR_CHANNEL, event)
        if sent:
            logger.debug("HMR capture %s broadcast to %s subscriber(s)", sequence, sent)

        await conn.send_json(
            {
                "type": HMR_SCREENSHOT_SAVED,
                "success": True,
                "sequenceNumber": sequence,
                "screenshotPath": result.screenshot_path,
                "logsPath": result.logs_path,
                "timestamp": now_ms(),
            }
        )
        return True

    async def _on_log_event(self, conn: Connection, msg: dict[str, Any]) -> bool:
        if not conn.is_runtime:
            return False
        entry = msg.get("data")
        if isinstance(entry, dict):
            await self.registry.publish_log(entry)
        return True

    async def _on_save_screenshot(self, conn: Connection, msg: dict[str, Any]) -> bool:
        data = msg.get("data")
        if not isinstance(data, dict):
            await conn.send_json(failure("save-screenshot requires a data object", type=SCREENSHOT_SAVED))
            return True
        try:
            path = await asyncio.to_thread(self._save_capture, self.project_root, data)
        except (HandlerFailure, OSError, ValueError) as exc:
            logger.warning("failed to save screenshot: %s", exc)
            await conn.send_json(failure(str(exc), type=SCREENSHOT_SAVED))
            return True
        await conn.send_json(
            {"type": SCREENSHOT_SAVED, "success": True, "path": str(Path(path)), "timestamp": now_ms()}
        )
        return True

    async def _on_save_document(self, conn: Connection, msg: dict[str, Any]) -> bool:
        if not conn.is_runtime:
            return False
        save, saved_type, error_type, path_key = _DOCUMENT_SAVES[str(message_type(msg))]
        data = msg.get("data")
        if not isinstance(data, dict):
            await conn.send_json(failure(f"{message_type(msg)} requires a data object", type=error_type))
            return True
        try:
            path = await asyncio.to_thread(save, self.project_root, data)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("failed to save %s: %s", message_type(msg), exc)
            await conn.send_json(failure(str(exc), type=error_type))
            return True
        await conn.send_json({"type": saved_type, "success": True, path_key: path, "timestamp": now_ms()})
        return True
