from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from ..protocol import CLOSE_ORIGIN_REJECTED, ORIGIN_REJECTED_REASON

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


@dataclass(frozen=True, slots=True)
class OriginVerdict:
    accepted: bool
    origin: str | None = None
    port_mismatch: bool = False
    close_code: int | None = None
    reason: str | None = None


def _origin_host_port(origin: str) -> tuple[str | None, int | None]:
    try:
        parts = urlsplit(origin.strip())
        host = (parts.hostname or "").lower() or None
        port = parts.port
    except ValueError:
        return None, None
    if port is None and host is not None:
        port = _DEFAULT_PORTS.get(parts.scheme.lower())
    return host, port


def classify_origin(origin: str | None, app_port: int | None) -> OriginVerdict:
    """Decide whether a connection declaring ``origin`` may stay open.

    Local-trust model: anything without an Origin header (CLI, agents) is
    accepted, browsers must come from a loopback host. A loopback origin on an
    unexpected port is accepted and only flagged, so several app instances can
    share one machine.
    """
    if origin is None or not str(origin).strip():
        return OriginVerdict(accepted=True)

    host, port = _origin_host_port(str(origin))
    if host not in LOOPBACK_HOSTS:
        return OriginVerdict(
            accepted=False,
            origin=origin,
            close_code=CLOSE_ORIGIN_REJECTED,
            reason=ORIGIN_REJECTED_REASON,
        )

    mismatch = bool(app_port) and port != int(app_port)  # type: ignore[arg-type]
    return OriginVerdict(accepted=True, origin=origin, port_mismatch=mismatch)
