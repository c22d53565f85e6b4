"""Sweetlink server: port allocation, origin checks, routing and subscriptions."""

from __future__ import annotations

from .gateway import SweetlinkServer
from .router import MessageRouter, ServerIdentity

__all__ = ["MessageRouter", "ServerIdentity", "SweetlinkServer"]
