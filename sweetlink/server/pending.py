from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass

from ..protocol import SCREENSHOT_RESPONSE, failure, now_ms
from .connections import Connection

logger = logging.getLogger("sweetlink.server")

REQUEST_TIMEOUT_ERROR = "Screenshot request timed out"


@dataclass(slots=True)
class PendingRequest:
    request_id: str
    origin: Connection
    deadline: float
    handle: asyncio.TimerHandle
    response_type: str = SCREENSHOT_RESPONSE


class PendingRequestLedger:
    """Explicit request/response correlation keyed by ``requestId``.

    Each entry ends exactly once: either ``resolve()`` pops it when the matching
    response arrives, or its timer pops it and sends a synthesized failure to
    the requester. Whichever pops first wins; the other finds nothing.
    """

    def __init__(self, *, timeout: float = 10.0, timeout_error: str = REQUEST_TIMEOUT_ERROR) -> None:
        self.timeout = float(timeout)
        self.timeout_error = timeout_error
        self._entries: dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def generate_request_id(self) -> str:
        return f"req-{now_ms()}-{next(self._counter)}"

    def issue(
        self,
        request_id: str,
        origin: Connection,
        *,
        timeout: float | None = None,
        response_type: str = SCREENSHOT_RESPONSE,
    ) -> PendingRequest:
        if request_id in self._entries:
            raise KeyError(f"Request {request_id} is already pending")
        loop = asyncio.get_running_loop()
        delay = self.timeout if timeout is None else max(0.0, float(timeout))
        handle = loop.call_later(delay, self._expire, request_id)
        pending = PendingRequest(
            request_id=request_id,
            origin=origin,
            deadline=loop.time() + delay,
            handle=handle,
            response_type=response_type,
        )
        self._entries[request_id] = pending
        return pending

    def resolve(self, request_id: str) -> PendingRequest | None:
        pending = self._entries.pop(request_id, None)
        if pending is not None:
            pending.handle.cancel()
        return pending

    def _expire(self, request_id: str) -> None:
        pending = self._entries.pop(request_id, None)
        if pending is None:
            return
        logger.warning("request %s timed out", request_id)
        payload = failure(self.timeout_error, type=pending.response_type, requestId=request_id)
        task = asyncio.get_running_loop().create_task(pending.origin.send_json(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def drop_for(self, conn: Connection) -> int:
        """Cancel every request issued by ``conn`` (no response is sent)."""
        ids = [rid for rid, p in self._entries.items() if p.origin is conn]
        for rid in ids:
            pending = self._entries.pop(rid)
            pending.handle.cancel()
        return len(ids)

    def cancel_all(self) -> None:
        for pending in self._entries.values():
            pending.handle.cancel()
        self._entries.clear()

    def get(self, request_id: str) -> PendingRequest | None:
        return self._entries.get(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
