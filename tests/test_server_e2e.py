from __future__ import annotations

import asyncio
import contextlib
import json
import socket
import threading
import time
import urllib.request
from typing import Any

import pytest

from sweetlink.config import ServerConfig
from sweetlink.errors import BindFailure


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _require_websockets() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")


def _server(app_port: int | None = 3000, **kw: Any):  # type: ignore[no-untyped-def]
    from sweetlink.server import SweetlinkServer

    config = ServerConfig(port=_free_port(), app_port=app_port, host="127.0.0.1", **kw)
    return SweetlinkServer(config)


QUERY_DOM_REPLY: dict[str, Any] = {
    "success": True,
    "data": {
        "found": True,
        "count": 1,
        "elements": [{"index": 0, "tagName": "DIV", "id": "app", "className": "", "textContent": "Hello"}],
    },
    "timestamp": 1,
}


def _wait_until(pred, timeout: float = 2.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.02)
    return bool(pred())


class _FakeRuntime:
    """Answers forwarded commands like a page would, from a background thread."""

    def __init__(self, port: int, *, app_port: int | None = 3000) -> None:
        from websockets.sync.client import connect

        origin = f"http://localhost:{app_port}" if app_port else None
        self._stack = contextlib.ExitStack()
        self.ws = self._stack.enter_context(
            connect(f"ws://127.0.0.1:{port}", origin=origin, ping_interval=None)  # type: ignore[arg-type]
        )
        self.ws.send(json.dumps({"type": "browser-client-ready", "appPort": app_port}))
        self.server_info = json.loads(self.ws.recv(timeout=2.0))
        self.received: list[dict[str, Any]] = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                raw = self.ws.recv(timeout=0.1)
            except TimeoutError:
                continue
            except Exception:  # noqa: BLE001
                return
            msg = json.loads(raw)
            self.received.append(msg)
            if msg.get("type") == "exec-js":
                self.ws.send(json.dumps({"success": True, "data": {"result": 2, "type": "number"}, "timestamp": 1}))
            elif msg.get("type") == "query-dom":
                self.ws.send(json.dumps(QUERY_DOM_REPLY))
            elif msg.get("type") == "request-screenshot":
                self.ws.send(
                    json.dumps(
                        {
                            "type": "screenshot-response",
                            "requestId": msg["requestId"],
                            "success": True,
                            "data": {"screenshot": "data:image/jpeg;base64,AA==", "width": 1, "height": 1},
                            "timestamp": 1,
                        }
                    )
                )

    def close(self) -> None:
        self._stop.set()
        with contextlib.suppress(Exception):
            self._stack.close()
        self._thread.join(timeout=1.0)


def test_plain_http_get_returns_status_document() -> None:
    _require_websockets()
    server = _server(app_port=3000)
    port = server.start()
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=2.0) as resp:  # noqa: S310
            assert resp.headers.get("Access-Control-Allow-Origin") == "*"
            doc = json.loads(resp.read().decode("utf-8"))
    finally:
        server.stop()

    assert doc["name"] == "sweetlink"
    assert doc["status"] == "running"
    assert doc["port"] == port
    assert doc["associatedApplicationPort"] == 3000
    assert doc["connectedClientCount"] == 0
    assert doc["uptimeSeconds"] >= 0
    for key in ("version", "description", "protocol", "note"):
        assert doc[key]


def test_foreign_origin_is_closed_with_4001() -> None:
    _require_websockets()
    from websockets.sync.client import connect

    server = _server()
    port = server.start()
    try:
        with connect(f"ws://127.0.0.1:{port}", origin="https://evil.example", ping_interval=None) as ws:  # type: ignore[arg-type]
            with pytest.raises(Exception):  # noqa: B017
                ws.recv(timeout=2.0)
            assert ws.close_code == 4001
            assert ws.close_reason == "Only localhost connections allowed"
    finally:
        server.stop()


def test_initialize_is_idempotent() -> None:
    _require_websockets()
    server = _server()

    async def _main() -> tuple[bool, int | None, int | None]:
        first = await server.initialize()
        port = server.port
        second = await server.initialize()
        same = first is second
        second_port = server.port
        await server.close()
        return same, port, second_port

    same, port, second_port = asyncio.run(_main())
    assert same is True
    assert port == second_port
    assert server.is_listening is False


def test_bind_failure_surfaces_from_start() -> None:
    _require_websockets()
    server = _server(max_port_retries=1)
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", server.config.port))
    blocker.listen(1)
    try:
        with pytest.raises(BindFailure):
            server.start(wait_timeout=3.0)
    finally:
        blocker.close()
        server.stop()


def test_controller_command_round_trip_through_runtime() -> None:
    _require_websockets()
    from sweetlink.client import SweetlinkClient

    server = _server(app_port=3000)
    port = server.start()
    runtime = _FakeRuntime(port, app_port=3000)
    try:
        assert runtime.server_info["type"] == "server-info"
        assert runtime.server_info["appPort"] == 3000
        assert runtime.server_info["wsPort"] == port

        with SweetlinkClient(f"ws://127.0.0.1:{port}", timeout=3.0) as client:
            reply = client.exec_js("1 + 1")
            shot = client.request_screenshot(request_id="shot-1")
        assert reply == {"success": True, "data": {"result": 2, "type": "number"}, "timestamp": 1}
        assert shot["requestId"] == "shot-1" and shot["success"] is True
        assert [m["type"] for m in runtime.received] == ["exec-js", "request-screenshot"]
    finally:
        runtime.close()
        server.stop()


def test_disconnect_purges_subscriptions_and_connection() -> None:
    _require_websockets()
    from sweetlink.client import SweetlinkClient

    server = _server()
    port = server.start()
    try:
        client = SweetlinkClient(f"ws://127.0.0.1:{port}", timeout=3.0)
        client.connect()
        assert client.subscribe("hmr-screenshots")["type"] == "subscribed"
        assert client.log_subscribe(levels=["error"])["type"] == "log-subscribed"
        assert server.registry.counts()["logSubscriptions"] == 1
        assert len(server.table) == 1

        client.close()
        assert _wait_until(lambda: len(server.table) == 0)
        assert server.registry.counts() == {"channels": 0, "channelSubscriptions": 0, "logSubscriptions": 0}
    finally:
        server.stop()


def test_controller_without_runtime_gets_failure() -> None:
    _require_websockets()
    from sweetlink.client import SweetlinkClient

    server = _server()
    port = server.start()
    try:
        with SweetlinkClient(f"ws://127.0.0.1:{port}", timeout=3.0) as client:
            reply = client.query_dom("h1")
        assert reply["success"] is False
        assert "No browser client connected" in reply["error"]
    finally:
        server.stop()


def test_query_dom_reply_reaches_controller_unmodified() -> None:
    _require_websockets()
    from sweetlink.client import SweetlinkClient

    server = _server(app_port=3000)
    port = server.start()
    runtime = _FakeRuntime(port, app_port=3000)
    try:
        with SweetlinkClient(f"ws://127.0.0.1:{port}", timeout=3.0) as client:
            reply = client.query_dom("#app")
        assert reply == QUERY_DOM_REPLY
        assert runtime.received == [{"type": "query-dom", "selector": "#app"}]
    finally:
        runtime.close()
        server.stop()
