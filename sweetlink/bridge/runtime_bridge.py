from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from ..config import BridgeConfig
from ..errors import HandshakeMismatch, MalformedMessage
from ..protocol import (
    BROWSER_CLIENT_READY,
    CLOSE_ORIGIN_REJECTED,
    HMR_SCREENSHOT_SAVED,
    LOG_EVENT,
    SCREENSHOT_SAVED,
    SERVER_INFO,
    decode,
    encode,
    failure,
    message_type,
    now_ms,
)
from ..screenshot_utils import DEFAULT_SCREENSHOT_QUALITY, DEFAULT_SCREENSHOT_SCALE, encode_capture
from .capture import HmrCaptureScheduler, HmrTrigger
from .commands import CommandHandlers, PageAdapter
from .console import ConsoleCaptureHandler, ConsoleLogEntry, LogRingBuffer
from .handshake import BridgeState, NextAttempt, PortScan, ServerInfo, identity_matches

logger = logging.getLogger("sweetlink.bridge")


class RuntimeBridge:
    """Runtime end of the channel.

    Finds the server for this app by scanning ports from the configured base,
    verifies it through the ``server-info`` handshake, executes commands
    against the ``PageAdapter`` and pushes console records and auto-captures.
    Reconnects for as long as it runs.
    """

    def __init__(
        self,
        page: PageAdapter,
        config: BridgeConfig | None = None,
        *,
        logs: LogRingBuffer | None = None,
        capture_logging: bool = True,
    ) -> None:
        self.page = page
        self.config = config or BridgeConfig.from_env()
        self.logs = logs if logs is not None else LogRingBuffer(self.config.max_console_logs)
        self.commands = CommandHandlers(page, self.logs)
        self.scan = PortScan(self.config)
        self.hmr = HmrCaptureScheduler(
            self._capture_hmr,
            self._send_json,
            ready=lambda: self.is_connected,
            debounce=self.config.hmr_debounce,
            capture_delay=self.config.hmr_capture_delay,
        )

        self.state = BridgeState.DISCONNECTED
        self.server_info: ServerInfo | None = None
        self.port = self.scan.base_port
        self.sessions = 0

        self._log_handler = ConsoleCaptureHandler(self.logs, on_entry=self._on_log_entry) if capture_logging else None
        self._ws: ClientConnection | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop: asyncio.Event | None = None
        self._thread: threading.Thread | None = None
        self._tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        ws = self._ws
        return self.state is BridgeState.VERIFIED and ws is not None and ws.state is State.OPEN

    @property
    def hmr_sequence(self) -> int:
        return self.hmr.sequence

    # ─────────────────────────────────────────────────────────────────────────
    # Main loop
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        if self._log_handler is not None:
            logging.getLogger().addHandler(self._log_handler)

        port = self.scan.base_port
        try:
            while not self._stop.is_set():
                nxt = await self._session(port)
                self.state = nxt.state
                port = nxt.port
                if await self._sleep(nxt.delay):
                    break
        finally:
            self.hmr.cancel()
            if self._log_handler is not None:
                logging.getLogger().removeHandler(self._log_handler)
            self.state = BridgeState.DISCONNECTED
            self._stop = None
            self._loop = None

    async def _sleep(self, delay: float) -> bool:
        """Sleep unless stopped first; True means the bridge is stopping."""
        stop = self._stop
        if stop is None:
            return True
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return False
        return True

    async def _session(self, port: int) -> NextAttempt:
        self.port = port
        self.state = BridgeState.CONNECTING
        url = f"ws://{self.config.host}:{port}"
        ws: ClientConnection | None = None
        try:
            async with connect(
                url,
                origin=self.config.origin,  # type: ignore[arg-type]
                open_timeout=self.config.open_timeout,
                ping_interval=None,
                max_size=None,
            ) as ws:
                self._ws = ws
                self.sessions += 1
                if self._stop is not None and self._stop.is_set():
                    return self.scan.after_close(port)
                logger.info("Connected to server on port %s", port)
                self.state = BridgeState.AWAITING_IDENTITY
                await ws.send(
                    encode({"type": BROWSER_CLIENT_READY, "appPort": self.config.app_port, "url": self.config.url})
                )

                info = await self._await_identity(ws)
                if info is not None and not identity_matches(info, self.config.app_port):
                    raise HandshakeMismatch(info.app_port, self.config.app_port)

                self.server_info = info
                self.state = BridgeState.VERIFIED
                if info is None:
                    logger.info("Server on port %s sent no server-info; accepting it", port)
                else:
                    logger.info(
                        "Verified connection to server for port %s (project: %s)",
                        info.app_port if info.app_port is not None else "any",
                        info.project_dir,
                    )

                async for raw in ws:
                    await self._on_message(ws, raw)
        except HandshakeMismatch as exc:
            logger.info("%s. Trying next port...", exc)
            return self.scan.after_mismatch(port)
        except ConnectionClosed:
            pass
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            logger.debug("connect to %s failed: %s", url, exc)
        finally:
            self._ws = None
            self.server_info = None
            self.hmr.cancel()

        if ws is not None:
            logger.info("Disconnected from server on port %s", port)
            if ws.close_code == CLOSE_ORIGIN_REJECTED:
                logger.info("Origin rejected on port %s", port)
                return self.scan.after_origin_rejected(port)
        return self.scan.after_close(port)

    async def _await_identity(self, ws: ClientConnection) -> ServerInfo | None:
        """Wait for ``server-info``; None when the server never sends one."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.verification_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                return None
            try:
                msg = decode(raw)
            except MalformedMessage:
                continue
            if message_type(msg) == SERVER_INFO:
                return ServerInfo.from_message(msg)
            logger.warning("Ignoring command before verification")

    async def _on_message(self, ws: ClientConnection, raw: str | bytes) -> None:
        try:
            msg = decode(raw)
        except MalformedMessage as exc:
            await self._send_json(failure(str(exc)))
            return

        mtype = message_type(msg)
        if mtype == SCREENSHOT_SAVED:
            logger.info("Screenshot saved: %s", msg.get("path"))
            return
        if mtype == HMR_SCREENSHOT_SAVED:
            logger.debug("HMR capture %s saved", msg.get("sequenceNumber"))
            return
        if mtype == SERVER_INFO:
            if self.state is BridgeState.VERIFIED:
                logger.debug("Ignoring server-info after verification")
            else:
                self.server_info = ServerInfo.from_message(msg)
            return
        if "success" in msg:
            # Server replies and failure envelopes are terminal; never answer them.
            if msg.get("success") is False:
                logger.warning("Server reported: %s", msg.get("error"))
            return

        try:
            response = await self.commands.handle(msg)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error handling command %s", mtype)
            response = failure(str(exc) or "Unknown error")
        await self._send_json(response)

    async def _send_json(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.state is not State.OPEN:
            return False
        try:
            await ws.send(encode(payload))
        except ConnectionClosed:
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Log streaming
    # ─────────────────────────────────────────────────────────────────────────

    def _on_log_entry(self, entry: ConsoleLogEntry) -> None:
        loop = self._loop
        if loop is None or not self.config.stream_logs:
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(self._queue_log, entry)

    def _queue_log(self, entry: ConsoleLogEntry) -> None:
        if not self.is_connected:
            return
        task = asyncio.get_running_loop().create_task(self._send_json({"type": LOG_EVENT, "data": entry.to_dict()}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Auto-capture
    # ─────────────────────────────────────────────────────────────────────────

    def notify_hmr(self, trigger: str, changed_file: str | None = None, metadata: dict[str, Any] | None = None) -> None:
        """Report a hot reload; safe to call from any thread."""
        if not self.config.hmr_screenshots:
            return
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self.hmr.trigger(trigger, changed_file, metadata)
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(self.hmr.trigger, trigger, changed_file, metadata)

    async def _capture_hmr(self, trig: HmrTrigger) -> dict[str, Any] | None:
        raw = await self.page.capture(None, {})
        if raw is None:
            return None
        data_url, _, _ = await asyncio.to_thread(
            encode_capture, raw, scale=DEFAULT_SCREENSHOT_SCALE, fmt="jpeg", quality=DEFAULT_SCREENSHOT_QUALITY
        )
        meta = await self.page.metadata()
        entries = self.logs.entries()
        all_logs = [e.to_dict() for e in entries]
        return {
            "trigger": trig.trigger,
            "changedFile": trig.changed_file,
            "screenshot": data_url,
            "url": meta.get("url"),
            "timestamp": now_ms(),
            "logs": {
                "all": all_logs,
                "errors": [e for e in all_logs if e["level"] == "error"],
                "warnings": [e for e in all_logs if e["level"] == "warn"],
                "sinceLastCapture": len(all_logs),
            },
            "hmrMetadata": trig.metadata,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        stop = self._stop
        if stop is not None:
            stop.set()
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

    def start(self) -> None:
        """Run the bridge on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        t = threading.Thread(target=lambda: asyncio.run(self.run()), name="sweetlink-bridge", daemon=True)
        self._thread = t
        t.start()

    def close(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        if loop is not None:
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self.shutdown(), loop).result(timeout=timeout)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None
