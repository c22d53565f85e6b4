"""Controller side: a blocking client plus server discovery over HTTP."""

from __future__ import annotations

import http.client
import json
import logging
import os
import time
import urllib.request
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import websocket

from .config import DEFAULT_MAX_PORT_RETRIES, DEFAULT_WS_PORT, SCREENSHOT_REQUEST_TIMEOUT_S, ws_port_for_app
from .errors import MalformedMessage, RequestTimeout, SweetlinkError
from .protocol import (
    API_KEY_STATUS,
    CHECK_API_KEY,
    HMR_SCREENSHOT_SAVED,
    LOG_EVENT,
    LOG_SUBSCRIBE,
    LOG_SUBSCRIBED,
    LOG_UNSUBSCRIBE,
    LOG_UNSUBSCRIBED,
    REQUEST_SCREENSHOT,
    SCREENSHOT_RESPONSE,
    SERVER_NAME,
    SUBSCRIBE,
    SUBSCRIBED,
    UNSUBSCRIBE,
    UNSUBSCRIBED,
    decode,
    encode,
    message_type,
    now_ms,
)

logger = logging.getLogger("sweetlink.client")

DEFAULT_WS_URL = f"ws://localhost:{DEFAULT_WS_PORT}"
COMMON_APP_PORTS = (3000, 3001, 4000, 5173, 5174, 8000, 8080)

# Frames pushed by subscriptions rather than sent in reply to a command.
EVENT_TYPES = frozenset({LOG_EVENT, HMR_SCREENSHOT_SAVED})

_MAX_BACKLOG = 1000


class SweetlinkClient:
    """Blocking WebSocket client for a sweetlink server."""

    def __init__(self, url: str | None = None, *, timeout: float = 5.0) -> None:
        self.url = (url or os.environ.get("SWEETLINK_WS_URL") or DEFAULT_WS_URL).strip()
        self.timeout = float(timeout)
        self.ws: Any | None = None
        self._backlog: deque[dict[str, Any]] = deque(maxlen=_MAX_BACKLOG)
        self._counter = 0

    def connect(self) -> SweetlinkClient:
        if self.ws is None:
            try:
                self.ws = websocket.create_connection(self.url, timeout=self.timeout)
            except (OSError, websocket.WebSocketException) as exc:
                raise SweetlinkError(f"Cannot connect to {self.url}: {exc}") from exc
        return self

    def close(self) -> None:
        ws = self.ws
        self.ws = None
        if ws is not None:
            try:
                ws.close()
            except (OSError, websocket.WebSocketException):
                logger.debug("close failed", exc_info=True)

    def __enter__(self) -> SweetlinkClient:
        return self.connect()

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Frames
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, payload: dict[str, Any]) -> None:
        self.connect()
        assert self.ws is not None
        self.ws.send(encode(payload))

    def _recv_once(self, remaining: float) -> dict[str, Any] | None:
        assert self.ws is not None
        # websocket-client recv() blocks indefinitely without a socket timeout.
        self.ws.settimeout(max(0.01, min(0.5, remaining)))
        try:
            raw = self.ws.recv()
        except (websocket.WebSocketTimeoutException, TimeoutError):
            return None
        except websocket.WebSocketConnectionClosedException as exc:
            raise SweetlinkError("Connection closed by server") from exc
        try:
            return decode(raw)
        except MalformedMessage:
            logger.debug("ignoring malformed frame: %r", raw)
            return None

    def recv_until(self, predicate: Callable[[dict[str, Any]], bool], *, timeout: float | None = None) -> dict[str, Any]:
        """Return the first frame matching ``predicate``; others are kept for ``events()``."""
        for msg in list(self._backlog):
            if predicate(msg):
                self._backlog.remove(msg)
                return msg

        self.connect()
        deadline = time.time() + (self.timeout if timeout is None else float(timeout))
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise RequestTimeout("Command timeout - is the dev server running?")
            msg = self._recv_once(remaining)
            if msg is None:
                continue
            if predicate(msg):
                return msg
            self._backlog.append(msg)

    def events(self, *, timeout: float | None = None) -> Iterator[dict[str, Any]]:
        """Yield pushed frames; stops after ``timeout`` seconds without one (None: never)."""
        while self._backlog:
            yield self._backlog.popleft()
        self.connect()
        last = time.time()
        while True:
            if timeout is not None and time.time() - last >= timeout:
                return
            msg = self._recv_once(0.5 if timeout is None else max(0.01, timeout - (time.time() - last)))
            if msg is None:
                continue
            last = time.time()
            yield msg

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    def send_command(self, command: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        """Send one command and return the next reply frame."""
        self.send(command)
        return self.recv_until(lambda m: message_type(m) not in EVENT_TYPES, timeout=timeout)

    def exec_js(self, code: str, **kw: Any) -> dict[str, Any]:
        return self.send_command({"type": "exec-js", "code": code}, **kw)

    def query_dom(self, selector: str, prop: str | None = None, **kw: Any) -> dict[str, Any]:
        cmd: dict[str, Any] = {"type": "query-dom", "selector": selector}
        if prop:
            cmd["property"] = prop
        return self.send_command(cmd, **kw)

    def get_logs(self, filter: str | None = None, **kw: Any) -> dict[str, Any]:
        cmd: dict[str, Any] = {"type": "get-logs"}
        if filter:
            cmd["filter"] = filter
        return self.send_command(cmd, **kw)

    def screenshot(self, selector: str | None = None, **kw: Any) -> dict[str, Any]:
        cmd: dict[str, Any] = {"type": "screenshot"}
        if selector:
            cmd["selector"] = selector
        return self.send_command(cmd, **kw)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{now_ms()}-{os.getpid()}-{self._counter}"

    def request_screenshot(
        self,
        selector: str | None = None,
        *,
        fmt: str = "jpeg",
        quality: float | None = None,
        scale: float | None = None,
        include_metadata: bool = True,
        request_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        rid = request_id or self._next_id("cli")
        cmd: dict[str, Any] = {
            "type": REQUEST_SCREENSHOT,
            "requestId": rid,
            "format": fmt,
            "includeMetadata": include_metadata,
        }
        if selector:
            cmd["selector"] = selector
        if quality is not None:
            cmd["quality"] = quality
        if scale is not None:
            cmd["scale"] = scale
        self.send(cmd)
        wait = SCREENSHOT_REQUEST_TIMEOUT_S + 2.0 if timeout is None else timeout
        return self.recv_until(
            lambda m: message_type(m) == SCREENSHOT_RESPONSE and m.get("requestId") == rid, timeout=wait
        )

    def check_api_key(self, **kw: Any) -> dict[str, Any]:
        self.send({"type": CHECK_API_KEY})
        return self.recv_until(lambda m: message_type(m) == API_KEY_STATUS, **kw)

    # ─────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────────

    def subscribe(self, channel: str, **kw: Any) -> dict[str, Any]:
        self.send({"type": SUBSCRIBE, "channel": channel})
        return self.recv_until(lambda m: message_type(m) == SUBSCRIBED, **kw)

    def unsubscribe(self, channel: str, **kw: Any) -> dict[str, Any]:
        self.send({"type": UNSUBSCRIBE, "channel": channel})
        return self.recv_until(lambda m: message_type(m) == UNSUBSCRIBED, **kw)

    def log_subscribe(
        self,
        *,
        levels: Iterable[str] | None = None,
        pattern: str | None = None,
        source: str | None = None,
        subscription_id: str | None = None,
        **kw: Any,
    ) -> dict[str, Any]:
        sid = subscription_id or self._next_id("logs")
        filters: dict[str, Any] = {}
        if levels is not None:
            filters["levels"] = list(levels)
        if pattern:
            filters["pattern"] = pattern
        if source:
            filters["source"] = source
        msg: dict[str, Any] = {"type": LOG_SUBSCRIBE, "subscriptionId": sid}
        if filters:
            msg["filters"] = filters
        self.send(msg)
        return self.recv_until(
            lambda m: message_type(m) == LOG_SUBSCRIBED and m.get("subscriptionId") == sid, **kw
        )

    def log_unsubscribe(self, subscription_id: str, **kw: Any) -> dict[str, Any]:
        self.send({"type": LOG_UNSUBSCRIBE, "subscriptionId": subscription_id})
        return self.recv_until(
            lambda m: message_type(m) == LOG_UNSUBSCRIBED and m.get("subscriptionId") == subscription_id, **kw
        )


# ─────────────────────────────────────────────────────────────────────────────
# Discovery
# ─────────────────────────────────────────────────────────────────────────────


def probe_server(host: str, port: int, *, timeout: float = 0.5) -> dict[str, Any] | None:
    """Read the status document served on a sweetlink port (None if absent)."""
    url = f"http://{host}:{int(port)}/"
    req = urllib.request.Request(url, method="GET", headers={"Cache-Control": "no-store"})
    try:
        with urllib.request.urlopen(req, timeout=max(0.05, float(timeout))) as resp:  # noqa: S310
            raw = resp.read()
    except (OSError, http.client.HTTPException):
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("name") != SERVER_NAME:
        return None
    return {**data, "port": data.get("port") or int(port)}


def ports_to_scan(app_ports: Iterable[int] = COMMON_APP_PORTS, *, max_retries: int = DEFAULT_MAX_PORT_RETRIES) -> list[int]:
    ports: set[int] = set()
    bases = [DEFAULT_WS_PORT] + [ws_port_for_app(p) for p in app_ports]
    for base in bases:
        for i in range(max_retries + 1):
            p = base + i
            if 1 <= p <= 65535:
                ports.add(p)
    return sorted(ports)


def discover_servers(
    host: str = "127.0.0.1",
    *,
    app_ports: Iterable[int] = COMMON_APP_PORTS,
    timeout: float = 0.3,
    max_workers: int = 16,
) -> list[dict[str, Any]]:
    ports = ports_to_scan(app_ports)
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(ports)))) as pool:
        results = list(pool.map(lambda p: probe_server(host, p, timeout=timeout), ports))
    found = [r for r in results if r is not None]
    return sorted(found, key=lambda r: int(r.get("port") or 0))


def wait_for_server(host: str, port: int, *, timeout: float = 5.0, interval: float = 0.1) -> dict[str, Any] | None:
    deadline = time.time() + max(0.0, float(timeout))
    while True:
        info = probe_server(host, port, timeout=min(0.5, max(0.05, deadline - time.time())))
        if info is not None:
            return info
        if time.time() >= deadline:
            return None
        time.sleep(interval)


_LEVEL_ORDER = {"error": 0, "warn": 1, "info": 2, "log": 3}


def dedupe_logs(logs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Group identical log lines (level + first 200 chars), errors first then by count."""
    seen: dict[str, dict[str, Any]] = {}
    for log in logs:
        message = str(log.get("message") or "")
        level = str(log.get("level") or "log")
        key = f"{level}:{message[:200]}"
        ts = log.get("timestamp") or 0
        entry = seen.get(key)
        if entry is None:
            seen[key] = {"level": level, "message": message, "count": 1, "firstSeen": ts, "lastSeen": ts}
        else:
            entry["count"] += 1
            entry["lastSeen"] = max(entry["lastSeen"], ts)
    return sorted(seen.values(), key=lambda e: (_LEVEL_ORDER.get(e["level"], 4), -e["count"]))
