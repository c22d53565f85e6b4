"""Persistence collaborators invoked by the router for runtime-originated captures."""

from __future__ import annotations

from .console_logs import save_console_logs
from .hmr import HmrCaptureResult, save_hmr_capture
from .outline import save_outline
from .schema import save_schema
from .screenshot import save_screenshot

__all__ = [
    "HmrCaptureResult",
    "save_console_logs",
    "save_hmr_capture",
    "save_outline",
    "save_schema",
    "save_screenshot",
]
