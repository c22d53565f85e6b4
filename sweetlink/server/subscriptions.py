from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from ..errors import MalformedMessage
from ..protocol import LOG_EVENT, now_ms
from .connections import Connection

logger = logging.getLogger("sweetlink.server")


@dataclass(frozen=True, slots=True)
class LogFilter:
    levels: frozenset[str] | None = None
    pattern: re.Pattern[str] | None = None
    source: str | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> LogFilter | None:
        """Build a filter from a ``filters`` object; None means "match everything"."""
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise MalformedMessage("filters must be an object")

        levels = None
        raw_levels = raw.get("levels")
        if raw_levels is not None:
            if not isinstance(raw_levels, list):
                raise MalformedMessage("filters.levels must be a list")
            levels = frozenset(str(level) for level in raw_levels)

        pattern = None
        raw_pattern = raw.get("pattern")
        if raw_pattern is not None and raw_pattern != "":
            try:
                pattern = re.compile(str(raw_pattern), re.IGNORECASE)
            except re.error as exc:
                raise MalformedMessage(f"Invalid log filter pattern: {exc}") from exc

        source = raw.get("source")
        source = str(source) if source is not None else None

        return cls(levels=levels, pattern=pattern, source=source)

    def matches(self, entry: dict[str, Any]) -> bool:
        if self.levels is not None and entry.get("level") not in self.levels:
            return False
        if self.pattern is not None and not self.pattern.search(str(entry.get("message") or "")):
            return False
        if self.source is not None and entry.get("source") != self.source:
            return False
        return True


@dataclass(slots=True)
class LogSubscription:
    subscription_id: str
    connection: Connection
    filter: LogFilter | None = None

    def accepts(self, entry: dict[str, Any]) -> bool:
        return self.filter is None or self.filter.matches(entry)


class SubscriptionRegistry:
    """Channel and log-stream subscriptions for one server.

    Lives on the server's event loop; callers never touch it from other threads.
    """

    def __init__(self) -> None:
        self._channels: dict[str, list[Connection]] = {}
        self._logs: dict[str, LogSubscription] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Channels
    # ─────────────────────────────────────────────────────────────────────────

    def subscribe(self, channel: str, conn: Connection) -> None:
        subs = self._channels.setdefault(channel, [])
        if conn not in subs:
            subs.append(conn)

    def unsubscribe(self, channel: str, conn: Connection) -> bool:
        subs = self._channels.get(channel)
        if not subs or conn not in subs:
            return False
        subs.remove(conn)
        if not subs:
            self._channels.pop(channel, None)
        return True

    def subscribers(self, channel: str) -> list[Connection]:
        return list(self._channels.get(channel, ()))

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> int:
        """Send ``payload`` to every open subscriber; returns how many were sent."""
        targets = [c for c in self.subscribers(channel) if c.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send_json(payload) for c in targets), return_exceptions=True)
        return sum(1 for r in results if r is True)

    # ─────────────────────────────────────────────────────────────────────────
    # Log streams
    # ─────────────────────────────────────────────────────────────────────────

    def add_log_subscription(self, subscription_id: str, conn: Connection, log_filter: LogFilter | None) -> LogSubscription:
        sub = LogSubscription(subscription_id=subscription_id, connection=conn, filter=log_filter)
        self._logs[subscription_id] = sub
        return sub

    def remove_log_subscription(self, subscription_id: str, conn: Connection) -> bool:
        sub = self._logs.get(subscription_id)
        if sub is None or sub.connection is not conn:
            return False
        del self._logs[subscription_id]
        return True

    def log_subscription(self, subscription_id: str) -> LogSubscription | None:
        return self._logs.get(subscription_id)

    def matching_log_subscriptions(self, entry: dict[str, Any]) -> list[LogSubscription]:
        return [sub for sub in self._logs.values() if sub.accepts(entry)]

    async def publish_log(self, entry: dict[str, Any]) -> int:
        delivered = 0
        for sub in self.matching_log_subscriptions(entry):
            if not sub.connection.is_open:
                continue
            sent = await sub.connection.send_json(
                {"type": LOG_EVENT, "subscriptionId": sub.subscription_id, "log": entry, "timestamp": now_ms()}
            )
            if sent:
                delivered += 1
        return delivered

    # ─────────────────────────────────────────────────────────────────────────
    # Cleanup
    # ─────────────────────────────────────────────────────────────────────────

    def purge(self, conn: Connection) -> int:
        """Drop every channel and log subscription owned by ``conn``."""
        removed = 0
        for channel in list(self._channels):
            subs = self._channels[channel]
            if conn in subs:
                subs.remove(conn)
                removed += 1
            if not subs:
                del self._channels[channel]
        for sub_id in [sid for sid, sub in self._logs.items() if sub.connection is conn]:
            del self._logs[sub_id]
            removed += 1
        if removed:
            logger.debug("removed %s subscription(s) for %s", removed, conn.client_id)
        return removed

    def references(self, conn: Connection) -> bool:
        if any(conn in subs for subs in self._channels.values()):
            return True
        return any(sub.connection is conn for sub in self._logs.values())

    def counts(self) -> dict[str, int]:
        return {
            "channels": len(self._channels),
            "channelSubscriptions": sum(len(s) for s in self._channels.values()),
            "logSubscriptions": len(self._logs),
        }
