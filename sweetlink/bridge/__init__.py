"""Runtime bridge: embeds in the app process and connects it to a sweetlink server."""

from __future__ import annotations

from .capture import CaptureState, HmrCaptureScheduler, HmrTrigger
from .commands import CommandHandlers, PageAdapter
from .console import ConsoleCaptureHandler, ConsoleLogEntry, LogRingBuffer
from .handshake import BridgeState, PortScan, ServerInfo
from .runtime_bridge import RuntimeBridge

__all__ = [
    "BridgeState",
    "CaptureState",
    "CommandHandlers",
    "ConsoleCaptureHandler",
    "ConsoleLogEntry",
    "HmrCaptureScheduler",
    "HmrTrigger",
    "LogRingBuffer",
    "PageAdapter",
    "PortScan",
    "RuntimeBridge",
    "ServerInfo",
]
