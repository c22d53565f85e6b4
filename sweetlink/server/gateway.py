from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import threading
import time
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from ..config import ServerConfig
from ..protocol import PROTOCOL_VERSION, SERVER_NAME
from .connections import Connection, ConnectionTable
from .gatekeeper import classify_origin
from .listener import bind_first_free
from .pending import PendingRequestLedger
from .router import MessageRouter, ServerIdentity
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger("sweetlink.server")

SERVER_DESCRIPTION = "WebSocket bridge between automation controllers and a running app"
SERVER_NOTE = "This is a WebSocket server. Connect with a WebSocket client, not plain HTTP."


class SweetlinkServer:
    """WebSocket server that pairs controllers with app runtimes.

    Async API (``initialize`` / ``close``) for callers already on an event loop;
    sync API (``start`` / ``stop``) that runs the loop in a daemon thread.
    Tables are per instance and may be injected.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        table: ConnectionTable | None = None,
        registry: SubscriptionRegistry | None = None,
        ledger: PendingRequestLedger | None = None,
        router: MessageRouter | None = None,
    ) -> None:
        self.config = config or ServerConfig.from_env()
        self.table = table if table is not None else ConnectionTable()
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.ledger = ledger if ledger is not None else PendingRequestLedger(timeout=self.config.request_timeout)
        self.router = router or MessageRouter(
            config=self.config, table=self.table, registry=self.registry, ledger=self.ledger
        )

        self.identity: ServerIdentity | None = None
        self._server: Server | None = None
        self._init_lock = asyncio.Lock()
        self._started_at: float | None = None

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stop_event: asyncio.Event | None = None
        self._bind_error: Exception | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Async lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def port(self) -> int | None:
        return self.identity.bound_port if self.identity else None

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    async def initialize(self) -> Server:
        """Bind the listener once; later calls return the same server."""
        async with self._init_lock:
            if self._server is not None:
                return self._server

            def _serve(port: int):
                return serve(
                    self._handle_connection,
                    self.config.host,
                    port,
                    process_request=self._process_request,
                    max_size=self.config.max_message_bytes,
                    ping_interval=None,
                )

            server, port = await bind_first_free(_serve, self.config.port, self.config.max_port_retries)
            self._server = server
            self._started_at = time.time()
            self.identity = ServerIdentity(bound_port=port, app_port=self.config.app_port, project_root=os.getcwd())
            self.router.identity = self.identity
            logger.info("Sweetlink server listening on ws://%s:%s", self.config.host, port)
            if self.config.app_port:
                logger.info("Associated with app on port %s", self.config.app_port)
            return server

    async def close(self) -> None:
        async with self._init_lock:
            server = self._server
            self._server = None
            if server is None:
                return
            self.ledger.cancel_all()
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
            self.table.clear()
            self.identity = None
            self.router.identity = None
            self._started_at = None
            logger.info("Sweetlink server closed")

    # ─────────────────────────────────────────────────────────────────────────
    # Sync lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> int:
        """Run the server on a daemon thread; returns the bound port."""
        if self._thread is not None and self._thread.is_alive():
            if self.port is None:
                raise RuntimeError("Sweetlink server thread is running but not listening")
            return self.port

        self._ready.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="sweetlink-server", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Sweetlink server failed to start on {self.config.host}:{self.config.port}")

        with self._lock:
            bind_error = self._bind_error
        if bind_error is not None:
            t.join(timeout=1.0)
            raise bind_error
        assert self.port is not None
        return self.port

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_event.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        # The init lock may have been created outside this loop.
        self._init_lock = asyncio.Lock()
        try:
            await self.initialize()
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._bind_error = exc
            self._ready.set()
            return
        self._ready.set()
        try:
            await self._stop_event.wait()
        finally:
            await self.close()
            self._loop = None
            self._stop_event = None

    # ─────────────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        started = self._started_at
        return {
            "name": SERVER_NAME,
            "version": PROTOCOL_VERSION,
            "description": SERVER_DESCRIPTION,
            "protocol": "websocket",
            "note": SERVER_NOTE,
            "status": "running" if self._server is not None else "stopped",
            "port": self.port,
            "associatedApplicationPort": self.config.app_port,
            "connectedClientCount": len(self.table),
            "uptimeSeconds": int(time.time() - started) if started else 0,
        }

    def _process_request(self, _conn: ServerConnection, request: Request) -> Response | None:
        # WebSocket upgrades proceed; plain HTTP gets the status document.
        upgrade = str(request.headers.get("Upgrade") or "").lower()
        if upgrade == "websocket":
            return None

        body = json.dumps(self.status(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = Headers()
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        headers["Connection"] = "close"
        headers["Access-Control-Allow-Origin"] = "*"
        return Response(200, "OK", headers, body)

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    async def _handle_connection(self, ws: ServerConnection) -> None:
        origin = ws.request.headers.get("Origin") if ws.request is not None else None
        verdict = classify_origin(origin, self.config.app_port)
        if not verdict.accepted:
            logger.warning("rejected connection from origin %s", origin)
            with contextlib.suppress(ConnectionClosed):
                await ws.close(verdict.close_code or 1008, verdict.reason or "")
            return

        host, port = ws.remote_address[:2] if ws.remote_address else ("?", 0)
        conn = Connection(
            ws=ws,
            client_id=f"{host}:{port}",
            origin=verdict.origin,
            origin_port_mismatch=verdict.port_mismatch,
        )
        if verdict.port_mismatch:
            logger.info(
                "connection from %s (origin %s) does not match app port %s",
                conn.client_id,
                origin,
                self.config.app_port,
            )
        self.table.add(conn)
        logger.debug("client connected: %s", conn.client_id)

        try:
            async for raw in ws:
                await self.router.handle(conn, raw)
        except ConnectionClosed:
            pass
        finally:
            self.registry.purge(conn)
            self.ledger.drop_for(conn)
            self.table.remove(conn)
            logger.debug("client disconnected: %s (%s)", conn.client_id, conn.role_name)
