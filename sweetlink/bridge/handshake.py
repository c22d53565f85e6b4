"""Runtime half of the identity handshake and the port scan it drives.

After connecting, the runtime announces itself and waits briefly for the
server's ``server-info``. A server bound to a different app is left at once and
the scan moves to the next port; when the range is used up it restarts from
the base port after a longer pause. The scan never gives up.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from ..config import BridgeConfig


class BridgeState(enum.Enum):
    CONNECTING = "connecting"
    AWAITING_IDENTITY = "awaiting-identity"
    VERIFIED = "verified"
    MISMATCHED_RETRY_NEXT = "mismatched-retry-next"
    MISMATCHED_RESTART_SCAN = "mismatched-restart-scan"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class ServerInfo:
    app_port: int | None
    ws_port: int | None
    project_dir: str | None
    timestamp: int | None = None

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> ServerInfo:
        def _int(value: Any) -> int | None:
            if isinstance(value, bool):
                return None
            if isinstance(value, int):
                return value
            if isinstance(value, str) and value.strip().isdigit():
                return int(value.strip())
            return None

        project_dir = msg.get("projectDir")
        return cls(
            app_port=_int(msg.get("appPort")),
            ws_port=_int(msg.get("wsPort")),
            project_dir=project_dir if isinstance(project_dir, str) else None,
            timestamp=_int(msg.get("timestamp")),
        )


def identity_matches(info: ServerInfo, app_port: int | None) -> bool:
    """A server with no app port, or the same one, belongs to this runtime."""
    if info.app_port is None or app_port is None:
        return True
    return info.app_port == app_port


@dataclass(frozen=True, slots=True)
class NextAttempt:
    port: int
    delay: float
    state: BridgeState


class PortScan:
    """Where to connect next after each kind of session end."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.base_port = int(config.base_port or 0)
        self.max_retries = max(1, int(config.max_port_retries))

    @property
    def last_port(self) -> int:
        return self.base_port + self.max_retries - 1

    def has_next(self, port: int) -> bool:
        return port + 1 < self.base_port + self.max_retries

    def after_mismatch(self, port: int) -> NextAttempt:
        if self.has_next(port):
            return NextAttempt(port + 1, self.config.port_retry_delay, BridgeState.MISMATCHED_RETRY_NEXT)
        return NextAttempt(self.base_port, self.config.port_search_fail_retry, BridgeState.MISMATCHED_RESTART_SCAN)

    def after_origin_rejected(self, port: int) -> NextAttempt:
        if self.has_next(port):
            return NextAttempt(port + 1, self.config.port_retry_delay, BridgeState.DISCONNECTED)
        return NextAttempt(self.base_port, self.config.reconnect_delay, BridgeState.DISCONNECTED)

    def after_close(self, port: int) -> NextAttempt:
        return NextAttempt(self.base_port, self.config.reconnect_delay, BridgeState.DISCONNECTED)
