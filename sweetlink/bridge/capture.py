from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..config import DEFAULT_HMR_CAPTURE_DELAY_S, DEFAULT_HMR_DEBOUNCE_S
from ..protocol import HMR_SCREENSHOT

logger = logging.getLogger("sweetlink.bridge")


class CaptureState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    CAPTURING = "capturing"


@dataclass(frozen=True, slots=True)
class HmrTrigger:
    trigger: str
    changed_file: str | None = None
    metadata: dict[str, Any] | None = field(default=None)


class HmrCaptureScheduler:
    """Debounced auto-capture after hot reloads.

    Every trigger pushes the deadline to ``now + debounce``; one capture runs
    when the window closes, using the latest trigger. A trigger that lands
    while a capture is in flight schedules exactly one follow-up. The sequence
    number advances once per completed capture, before it is handed to the
    publisher; captures that fail or yield nothing leave it unchanged.
    """

    def __init__(
        self,
        capture: Callable[[HmrTrigger], Awaitable[dict[str, Any] | None]],
        publish: Callable[[dict[str, Any]], Awaitable[Any]],
        *,
        ready: Callable[[], bool] = lambda: True,
        debounce: float = DEFAULT_HMR_DEBOUNCE_S,
        capture_delay: float = DEFAULT_HMR_CAPTURE_DELAY_S,
    ) -> None:
        self._capture = capture
        self._publish = publish
        self._ready = ready
        self.debounce = max(0.0, float(debounce))
        self.capture_delay = max(0.0, float(capture_delay))

        self.state = CaptureState.IDLE
        self.sequence = 0
        self.deadline: float | None = None
        self._latest: HmrTrigger | None = None
        self._rerun = False
        self._task: asyncio.Task | None = None

    def trigger(self, trigger: str, changed_file: str | None = None, metadata: dict[str, Any] | None = None) -> bool:
        """Record a reload; must be called on the event loop. Returns False when not ready."""
        if not self._ready():
            return False
        loop = asyncio.get_running_loop()
        self._latest = HmrTrigger(trigger=trigger, changed_file=changed_file, metadata=metadata)

        if self.state is CaptureState.CAPTURING:
            self._rerun = True
            return True

        self.deadline = loop.time() + self.debounce
        self.state = CaptureState.PENDING
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._run())
        return True

    async def _wait_for_deadline(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            remaining = (self.deadline or 0.0) - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    async def _run(self) -> None:
        try:
            while True:
                await self._wait_for_deadline()
                if not self._ready():
                    logger.debug("skipping HMR capture: bridge not connected")
                    break

                self.state = CaptureState.CAPTURING
                self.deadline = None
                trig = self._latest
                await asyncio.sleep(self.capture_delay)
                if trig is not None:
                    await self._capture_once(trig)

                if not self._rerun:
                    break
                self._rerun = False
                self.deadline = asyncio.get_running_loop().time() + self.debounce
                self.state = CaptureState.PENDING
        finally:
            self.state = CaptureState.IDLE
            self.deadline = None

    async def _capture_once(self, trig: HmrTrigger) -> None:
        try:
            payload = await self._capture(trig)
        except Exception:  # noqa: BLE001
            logger.exception("HMR screenshot capture failed")
            return
        if payload is None:
            return
        self.sequence += 1
        await self._publish({"type": HMR_SCREENSHOT, "data": {**payload, "sequenceNumber": self.sequence}})
        logger.info("HMR screenshot captured (%s)", trig.trigger)

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        self.state = CaptureState.IDLE
        self.deadline = None
        self._rerun = False

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
