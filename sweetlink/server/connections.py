from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from ..protocol import encode, now_ms

logger = logging.getLogger("sweetlink.server")


@dataclass(frozen=True, slots=True)
class RuntimeIdentity:
    app_port: int | None = None
    url: str | None = None

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> RuntimeIdentity:
        raw_port = msg.get("appPort")
        app_port = None
        if isinstance(raw_port, int) and not isinstance(raw_port, bool) and raw_port > 0:
            app_port = raw_port
        elif isinstance(raw_port, str) and raw_port.strip().isdigit():
            app_port = int(raw_port.strip())
        url = msg.get("url") if isinstance(msg.get("url"), str) else None
        return cls(app_port=app_port, url=url)


@dataclass(frozen=True, slots=True)
class Unclassified:
    pass


@dataclass(frozen=True, slots=True)
class Controller:
    pass


@dataclass(frozen=True, slots=True)
class Runtime:
    identity: RuntimeIdentity


Role = Unclassified | Controller | Runtime


@dataclass(eq=False)
class Connection:
    """One accepted socket plus its routing state."""

    ws: Any
    client_id: str
    origin: str | None = None
    origin_port_mismatch: bool = False
    role: Role = field(default_factory=Unclassified)
    # Single-slot back-reference to the controller awaiting this runtime's reply.
    reply_to: Connection | None = None
    connected_at_ms: int = field(default_factory=now_ms)

    @property
    def is_runtime(self) -> bool:
        return isinstance(self.role, Runtime)

    @property
    def role_name(self) -> str:
        if isinstance(self.role, Runtime):
            return "runtime"
        if isinstance(self.role, Controller):
            return "controller"
        return "unclassified"

    @property
    def is_open(self) -> bool:
        return getattr(self.ws, "state", None) is State.OPEN

    def serves_app(self, app_port: int | None) -> bool:
        """True for a runtime whose identity is compatible with ``app_port``."""
        if not isinstance(self.role, Runtime):
            return False
        reported = self.role.identity.app_port
        return app_port is None or reported is None or reported == app_port

    async def send_text(self, text: str) -> bool:
        if not self.is_open:
            return False
        try:
            await self.ws.send(text)
        except ConnectionClosed:
            logger.debug("send to closed connection %s dropped", self.client_id)
            return False
        return True

    async def send_json(self, payload: dict[str, Any]) -> bool:
        return await self.send_text(encode(payload))


class ConnectionTable:
    """Live connections keyed by their websocket, in accept order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_ws: dict[Any, Connection] = {}

    def add(self, conn: Connection) -> Connection:
        with self._lock:
            self._by_ws[conn.ws] = conn
        return conn

    def remove(self, conn: Connection) -> bool:
        with self._lock:
            removed = self._by_ws.pop(conn.ws, None) is not None
            for other in self._by_ws.values():
                if other.reply_to is conn:
                    other.reply_to = None
        return removed

    def snapshot(self) -> list[Connection]:
        with self._lock:
            return list(self._by_ws.values())

    def first_verified_runtime(self, app_port: int | None) -> Connection | None:
        for conn in self.snapshot():
            if conn.serves_app(app_port) and conn.is_open:
                return conn
        return None

    def clear(self) -> None:
        with self._lock:
            self._by_ws.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_ws)
