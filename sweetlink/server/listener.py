from __future__ import annotations

import errno
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..errors import BindFailure

logger = logging.getLogger("sweetlink.server")

T = TypeVar("T")


def port_candidates(base_port: int, max_retries: int) -> list[int]:
    """Ports tried for one bind attempt: base, base+1, ... (max_retries in total)."""
    ports: list[int] = []
    for p in range(int(base_port), int(base_port) + max(1, int(max_retries))):
        if p < 1 or p > 65535:
            continue
        ports.append(p)
    return ports


async def bind_first_free(
    serve: Callable[[int], Awaitable[T]],
    base_port: int,
    max_retries: int,
) -> tuple[T, int]:
    """Bind the first free port starting at ``base_port``.

    ``serve(port)`` must create and return a listening server or raise OSError.
    Address-in-use moves on to the next port; any other OSError is re-raised
    as-is. Running out of candidates raises BindFailure.
    """
    candidates = port_candidates(base_port, max_retries)
    if not candidates:
        raise BindFailure(
            f"No valid port candidates starting at {base_port}",
            first_port=int(base_port),
            last_port=int(base_port),
            attempts=0,
        )

    attempts = 0
    for port in candidates:
        attempts += 1
        try:
            listener = await serve(port)
        except OSError as exc:
            if getattr(exc, "errno", None) == errno.EADDRINUSE:
                if attempts < len(candidates):
                    logger.info("Port %s in use, trying %s...", port, port + 1)
                continue
            raise
        if port != candidates[0]:
            logger.info("Using alternative port %s (original %s was in use)", port, candidates[0])
        return listener, port

    raise BindFailure(
        f"Could not find available port after {attempts} attempts (tried {candidates[0]}-{candidates[-1]})",
        first_port=candidates[0],
        last_port=candidates[-1],
        attempts=attempts,
    )
