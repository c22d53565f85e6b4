from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_WS_PORT = 9223
# The WebSocket port for an app is app_port + offset (3000 -> 9223, 5173 -> 11396).
WS_PORT_OFFSET = 6223
DEFAULT_MAX_PORT_RETRIES = 10

SCREENSHOT_REQUEST_TIMEOUT_S = 10.0
DEFAULT_REVIEW_MODEL = "claude-opus-4-5-20251101"

# Runtime bridge timings (seconds)
RECONNECT_DELAY_S = 2.0
VERIFICATION_TIMEOUT_S = 1.0
PORT_RETRY_DELAY_S = 0.1
PORT_SEARCH_FAIL_RETRY_S = 3.0
DEFAULT_HMR_DEBOUNCE_S = 0.3
DEFAULT_HMR_CAPTURE_DELAY_S = 0.1
MAX_CONSOLE_LOGS = 100


def ws_port_for_app(app_port: int | None) -> int:
    if app_port and app_port > 0:
        return int(app_port) + WS_PORT_OFFSET
    return DEFAULT_WS_PORT


def _env_int(name: str, default: int | None) -> int | None:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class ServerConfig:
    port: int = DEFAULT_WS_PORT
    app_port: int | None = None
    host: str = "127.0.0.1"
    max_port_retries: int = DEFAULT_MAX_PORT_RETRIES
    request_timeout: float = SCREENSHOT_REQUEST_TIMEOUT_S
    review_model: str = DEFAULT_REVIEW_MODEL
    max_message_bytes: int = 16_000_000

    @classmethod
    def for_app(cls, app_port: int | None, **overrides: object) -> ServerConfig:
        return cls(port=ws_port_for_app(app_port), app_port=app_port, **overrides)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls) -> ServerConfig:
        app_port = _env_int("SWEETLINK_APP_PORT", None)
        port = _env_int("SWEETLINK_PORT", None) or ws_port_for_app(app_port)
        return cls(
            port=port,
            app_port=app_port,
            host=(os.environ.get("SWEETLINK_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            max_port_retries=max(1, _env_int("SWEETLINK_MAX_PORT_RETRIES", DEFAULT_MAX_PORT_RETRIES) or 1),
            request_timeout=max(0.1, _env_float("SWEETLINK_REQUEST_TIMEOUT", SCREENSHOT_REQUEST_TIMEOUT_S)),
            review_model=(os.environ.get("SWEETLINK_REVIEW_MODEL") or DEFAULT_REVIEW_MODEL).strip(),
        )


@dataclass
class BridgeConfig:
    app_port: int | None = None
    base_port: int | None = None
    host: str = "localhost"
    url: str | None = None
    max_port_retries: int = DEFAULT_MAX_PORT_RETRIES
    reconnect_delay: float = RECONNECT_DELAY_S
    verification_timeout: float = VERIFICATION_TIMEOUT_S
    port_retry_delay: float = PORT_RETRY_DELAY_S
    port_search_fail_retry: float = PORT_SEARCH_FAIL_RETRY_S
    open_timeout: float = 2.0
    hmr_screenshots: bool = False
    hmr_debounce: float = DEFAULT_HMR_DEBOUNCE_S
    hmr_capture_delay: float = DEFAULT_HMR_CAPTURE_DELAY_S
    max_console_logs: int = MAX_CONSOLE_LOGS
    stream_logs: bool = True

    def __post_init__(self) -> None:
        if self.base_port is None:
            self.base_port = ws_port_for_app(self.app_port)

    @property
    def origin(self) -> str | None:
        if self.app_port:
            return f"http://localhost:{int(self.app_port)}"
        return None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        app_port = _env_int("SWEETLINK_APP_PORT", None)
        return cls(
            app_port=app_port,
            base_port=_env_int("SWEETLINK_BASE_PORT", None),
            host=(os.environ.get("SWEETLINK_BRIDGE_HOST") or "localhost").strip() or "localhost",
            max_port_retries=max(1, _env_int("SWEETLINK_MAX_PORT_RETRIES", DEFAULT_MAX_PORT_RETRIES) or 1),
            hmr_screenshots=_env_flag("SWEETLINK_HMR_SCREENSHOTS"),
            hmr_debounce=(_env_int("SWEETLINK_HMR_DEBOUNCE_MS", 300) or 0) / 1000.0,
            hmr_capture_delay=(_env_int("SWEETLINK_HMR_CAPTURE_DELAY_MS", 100) or 0) / 1000.0,
        )
