from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
from websockets.protocol import State

from sweetlink.config import ServerConfig
from sweetlink.protocol import NO_RUNTIME_ERROR
from sweetlink.server.connections import Connection, ConnectionTable, Controller
from sweetlink.server.handlers import HmrCaptureResult
from sweetlink.server.pending import PendingRequestLedger
from sweetlink.server.router import MessageRouter, ServerIdentity
from sweetlink.server.subscriptions import SubscriptionRegistry


class _FakeWs:
    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: list[str] = []

    async def send(self, text: str) -> None:
        self.sent.append(text)

    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(t) for t in self.sent]


class _Harness:
    def __init__(self, *, app_port: int | None = 3000, timeout: float = 1.0, project_root: str = "/proj") -> None:
        self.table = ConnectionTable()
        self.registry = SubscriptionRegistry()
        self.ledger = PendingRequestLedger(timeout=timeout)
        self.hmr_saves: list[dict[str, Any]] = []
        self.router = MessageRouter(
            config=ServerConfig.for_app(app_port),
            table=self.table,
            registry=self.registry,
            ledger=self.ledger,
            save_hmr=self._save_hmr,
            save_capture=lambda root, data: f"{root}/shot.jpg",
        )
        self.router.identity = ServerIdentity(bound_port=9223, app_port=app_port, project_root=project_root)

    def _save_hmr(self, root: str, data: dict[str, Any]) -> HmrCaptureResult:
        self.hmr_saves.append(data)
        return HmrCaptureResult(
            screenshot_path=f"{root}/hmr.jpg",
            logs_path=f"{root}/hmr-logs.json",
            log_summary={"totalLogs": 0, "errorCount": 0, "warningCount": 0, "hasNewErrors": False},
        )

    def connect(self, name: str) -> Connection:
        return self.table.add(Connection(ws=_FakeWs(), client_id=name))

    async def send(self, conn: Connection, payload: dict[str, Any] | str) -> None:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        await self.router.handle(conn, raw)

    async def runtime(self, name: str = "runtime", app_port: int | None = 3000) -> Connection:
        conn = self.connect(name)
        await self.send(conn, {"type": "browser-client-ready", "appPort": app_port})
        conn.ws.sent.clear()
        return conn


def test_browser_client_ready_classifies_runtime_and_replies_server_info() -> None:
    async def _main() -> Connection:
        h = _Harness()
        rt = h.connect("rt")
        await h.send(rt, {"type": "browser-client-ready", "appPort": 3000, "url": "http://localhost:3000/"})
        return rt

    rt = asyncio.run(_main())
    assert rt.is_runtime
    [info] = rt.ws.frames()
    assert info["type"] == "server-info"
    assert info["appPort"] == 3000
    assert info["wsPort"] == 9223
    assert info["projectDir"] == "/proj"
    assert isinstance(info["timestamp"], int)


def test_other_first_message_classifies_controller() -> None:
    async def _main() -> Connection:
        h = _Harness()
        c = h.connect("c")
        await h.send(c, {"type": "exec-js", "code": "1"})
        return c

    c = asyncio.run(_main())
    assert isinstance(c.role, Controller)


def test_controller_command_is_forwarded_verbatim_and_reply_relayed() -> None:
    raw = '{"type": "query-dom",   "selector": "h1", "extra": {"x": [1, 2]}}'

    async def _main() -> tuple[Connection, Connection]:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("c")
        await h.send(c, raw)
        assert rt.reply_to is c
        await h.send(rt, '{"success": true, "data": {"count": 1}}')
        assert rt.reply_to is None
        return rt, c

    rt, c = asyncio.run(_main())
    assert rt.ws.sent == [raw]
    assert c.ws.sent == ['{"success": true, "data": {"count": 1}}']


def test_single_slot_reply_goes_to_latest_controller() -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness()
        rt = await h.runtime()
        c1, c2 = h.connect("c1"), h.connect("c2")
        await h.send(c1, {"type": "get-logs"})
        await h.send(c2, {"type": "get-logs"})
        await h.send(rt, {"success": True, "data": {"n": 1}})
        await h.send(rt, {"success": True, "data": {"n": 2}})
        return c1, c2

    c1, c2 = asyncio.run(_main())
    assert c1.ws.sent == []
    assert [f["data"]["n"] for f in c2.ws.frames()] == [1]


def test_no_runtime_yields_immediate_failure() -> None:
    async def _main() -> Connection:
        h = _Harness()
        c = h.connect("c")
        await h.send(c, {"type": "exec-js", "code": "1+1"})
        return c

    c = asyncio.run(_main())
    [frame] = c.ws.frames()
    assert frame["success"] is False
    assert frame["error"] == NO_RUNTIME_ERROR


def test_runtime_for_another_app_is_not_used() -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness(app_port=3000)
        other = await h.runtime("other", app_port=5173)
        c = h.connect("c")
        await h.send(c, {"type": "exec-js", "code": "1"})
        return other, c

    other, c = asyncio.run(_main())
    assert other.ws.sent == []
    assert c.ws.frames()[0]["error"] == NO_RUNTIME_ERROR


def test_first_verified_runtime_is_canonical() -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness()
        first = await h.runtime("first")
        second = await h.runtime("second")
        c = h.connect("c")
        await h.send(c, {"type": "get-logs"})
        return first, second

    first, second = asyncio.run(_main())
    assert len(first.ws.sent) == 1
    assert second.ws.sent == []


def test_malformed_frame_gets_failure_and_connection_survives() -> None:
    async def _main() -> Connection:
        h = _Harness()
        await h.runtime()
        c = h.connect("c")
        await h.send(c, "{not json")
        await h.send(c, "[1, 2]")
        await h.send(c, {"type": "subscribe", "channel": "x"})
        return c

    c = asyncio.run(_main())
    bad_json, not_object, ack = c.ws.frames()
    assert bad_json["success"] is False and "Invalid JSON" in bad_json["error"]
    assert not_object["success"] is False
    assert ack["type"] == "subscribed"


def test_request_screenshot_is_correlated_by_request_id() -> None:
    async def _main() -> tuple[Connection, Connection, _Harness]:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("c")
        await h.send(c, {"type": "request-screenshot", "requestId": "r1", "selector": "#app"})
        # A different controller's command in between must not steal the response.
        other = h.connect("other")
        await h.send(other, {"type": "get-logs"})
        await h.send(
            rt,
            {"type": "screenshot-response", "requestId": "r1", "success": True, "data": {"screenshot": "x"}},
        )
        return rt, c, h

    rt, c, h = asyncio.run(_main())
    forwarded = rt.ws.frames()[0]
    assert forwarded == {
        "type": "request-screenshot",
        "requestId": "r1",
        "selector": "#app",
        "format": "jpeg",
        "quality": 0.7,
        "scale": 0.25,
        "includeMetadata": True,
    }
    [response] = c.ws.frames()
    assert response["type"] == "screenshot-response"
    assert response["requestId"] == "r1"
    assert response["success"] is True
    assert len(h.ledger) == 0


def test_request_screenshot_generates_id_and_times_out() -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness(timeout=0.05)
        rt = await h.runtime()
        c = h.connect("c")
        await h.send(c, {"type": "request-screenshot"})
        await asyncio.sleep(0.15)
        return rt, c

    rt, c = asyncio.run(_main())
    rid = rt.ws.frames()[0]["requestId"]
    assert rid.startswith("req-")
    [timeout] = c.ws.frames()
    assert timeout["requestId"] == rid
    assert timeout["error"] == "Screenshot request timed out"


def test_request_screenshot_rejects_duplicate_and_missing_runtime() -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness()
        lonely = h.connect("lonely")
        await h.send(lonely, {"type": "request-screenshot", "requestId": "r1"})
        await h.runtime()
        c = h.connect("c")
        await h.send(c, {"type": "request-screenshot", "requestId": "dup"})
        await h.send(c, {"type": "request-screenshot", "requestId": "dup"})
        h.ledger.cancel_all()
        return lonely, c

    lonely, c = asyncio.run(_main())
    [no_rt] = lonely.ws.frames()
    assert no_rt["type"] == "screenshot-response" and no_rt["error"] == NO_RUNTIME_ERROR
    [dup] = c.ws.frames()
    assert dup["success"] is False and "already pending" in dup["error"]


def test_subscribe_requires_channel() -> None:
    async def _main() -> Connection:
        h = _Harness()
        c = h.connect("c")
        await h.send(c, {"type": "subscribe"})
        await h.send(c, {"type": "subscribe", "channel": "hmr-screenshots"})
        await h.send(c, {"type": "unsubscribe", "channel": "hmr-screenshots"})
        return c

    c = asyncio.run(_main())
    missing, ok, gone = c.ws.frames()
    assert missing["success"] is False
    assert ok == {"type": "subscribed", "channel": "hmr-screenshots", "timestamp": ok["timestamp"]}
    assert gone["type"] == "unsubscribed"


def test_log_subscription_lifecycle() -> None:
    async def _main() -> Connection:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("c")
        await h.send(c, {"type": "log-subscribe", "subscriptionId": "bad", "filters": {"pattern": "["}})
        await h.send(c, {"type": "log-subscribe", "subscriptionId": "s1", "filters": {"levels": ["error"]}})
        await h.send(rt, {"type": "log-event", "data": {"level": "info", "message": "skip"}})
        await h.send(rt, {"type": "log-event", "data": {"level": "error", "message": "boom"}})
        await h.send(c, {"type": "log-unsubscribe", "subscriptionId": "s1"})
        await h.send(c, {"type": "log-unsubscribe", "subscriptionId": "s1"})
        await h.send(rt, {"type": "log-event", "data": {"level": "error", "message": "after"}})
        return c

    c = asyncio.run(_main())
    bad, ack, event, unsub, unknown = c.ws.frames()
    assert bad["type"] == "log-subscribed" and bad["success"] is False
    assert ack == {"type": "log-subscribed", "subscriptionId": "s1", "timestamp": ack["timestamp"]}
    assert event["type"] == "log-event" and event["log"]["message"] == "boom"
    assert unsub["type"] == "log-unsubscribed"
    assert unknown["success"] is False


def test_hmr_screenshot_is_saved_broadcast_and_confirmed() -> None:
    async def _main() -> tuple[Connection, Connection, _Harness]:
        h = _Harness()
        rt = await h.runtime()
        watcher = h.connect("watcher")
        await h.send(watcher, {"type": "subscribe", "channel": "hmr-screenshots"})
        watcher.ws.sent.clear()
        await h.send(
            rt,
            {
                "type": "hmr-screenshot",
                "data": {"trigger": "vite", "changedFile": "src/App.tsx", "sequenceNumber": 4, "screenshot": "x"},
            },
        )
        return rt, watcher, h

    rt, watcher, h = asyncio.run(_main())
    assert h.hmr_saves[0]["sequenceNumber"] == 4
    [event] = watcher.ws.frames()
    assert event["type"] == "hmr-screenshot-saved"
    assert event["channel"] == "hmr-screenshots"
    assert event["data"]["sequenceNumber"] == 4
    assert event["data"]["changedFile"] == "src/App.tsx"
    assert event["data"]["screenshotPath"] == "/proj/hmr.jpg"
    [confirm] = rt.ws.frames()
    assert confirm["success"] is True and confirm["sequenceNumber"] == 4


def test_save_screenshot_replies_with_path() -> None:
    async def _main() -> Connection:
        h = _Harness()
        rt = await h.runtime()
        await h.send(rt, {"type": "save-screenshot", "data": {"screenshot": "data:image/jpeg;base64,AA=="}})
        return rt

    rt = asyncio.run(_main())
    [saved] = rt.ws.frames()
    assert saved["type"] == "screenshot-saved"
    assert saved["path"] == "/proj/shot.jpg"


@pytest.mark.parametrize("key,configured", [("sk-test", True), ("", False)])
def test_check_api_key(monkeypatch: pytest.MonkeyPatch, key: str, configured: bool) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", key)

    async def _main() -> Connection:
        h = _Harness()
        c = h.connect("c")
        await h.send(c, {"type": "check-api-key"})
        return c

    [status] = asyncio.run(_main()).ws.frames()
    assert status["type"] == "api-key-status"
    assert status["configured"] is configured
    assert isinstance(status["model"], str) and status["model"]


def test_removing_controller_clears_runtime_reply_slot() -> None:
    async def _main() -> Connection:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("c")
        await h.send(c, {"type": "get-logs"})
        assert rt.reply_to is c
        h.table.remove(c)
        return rt

    rt = asyncio.run(_main())
    assert rt.reply_to is None


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "server-info", "appPort": 9999, "projectDir": "/elsewhere"},
        {"type": "log-subscribed", "subscriptionId": "s1"},
        {"type": "api-key-status", "configured": True},
        {"type": "screenshot-response", "requestId": "r1", "success": True},
        {"type": "log-event", "data": {"level": "error", "message": "fake"}},
    ],
)
def test_reserved_types_from_controller_are_refused_not_forwarded(payload: dict[str, Any]) -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("cli")
        await h.send(c, payload)
        return rt, c

    rt, c = asyncio.run(_main())
    assert rt.ws.sent == []
    [reply] = c.ws.frames()
    assert reply["type"] == payload["type"]
    assert reply["success"] is False
    assert reply["error"] == f"Reserved message type {payload['type']} not accepted from controller"


def test_controller_only_type_from_runtime_is_refused() -> None:
    async def _main() -> tuple[Connection, Connection, PendingRequestLedger]:
        h = _Harness()
        rt = await h.runtime()
        c = h.connect("cli")
        await h.send(c, {"type": "get-logs"})
        rt.ws.sent.clear()
        await h.send(rt, {"type": "request-screenshot", "requestId": "r1"})
        return rt, c, h.ledger

    rt, c, ledger = asyncio.run(_main())
    assert c.ws.sent == []
    assert len(ledger) == 0
    [reply] = rt.ws.frames()
    assert reply["type"] == "request-screenshot"
    assert reply["error"] == "Reserved message type request-screenshot not accepted from runtime"


@pytest.mark.parametrize(
    ("mtype", "saved", "path_key", "prefix"),
    [
        ("save-outline", "outline-saved", "outlinePath", "outline-"),
        ("save-schema", "schema-saved", "schemaPath", "schema-"),
        ("save-console-logs", "console-logs-saved", "consoleLogsPath", "console-logs-"),
    ],
)
def test_runtime_documents_are_saved_and_confirmed(
    tmp_path: Path, mtype: str, saved: str, path_key: str, prefix: str
) -> None:
    data = {
        "markdown": "- item",
        "url": "http://localhost:3000/docs/intro",
        "title": "Intro",
        "timestamp": 1705314645123,
    }

    async def _main() -> Connection:
        h = _Harness(project_root=str(tmp_path))
        rt = await h.runtime()
        await h.send(rt, {"type": mtype, "data": data})
        return rt

    rt = asyncio.run(_main())
    [reply] = rt.ws.frames()
    assert reply["type"] == saved and reply["success"] is True
    path = Path(reply[path_key])
    assert path.parent == tmp_path / ".tmp" / "sweetlink-screenshots"
    assert path.name.startswith(f"{prefix}docs-intro-")
    assert "- item" in path.read_text(encoding="utf-8")


def test_document_saves_require_a_runtime_and_data(tmp_path: Path) -> None:
    async def _main() -> tuple[Connection, Connection]:
        h = _Harness(project_root=str(tmp_path))
        rt = await h.runtime()
        c = h.connect("cli")
        await h.send(c, {"type": "save-outline", "data": {"markdown": "x"}})
        await h.send(rt, {"type": "save-schema"})
        return rt, c

    rt, c = asyncio.run(_main())
    [refused] = c.ws.frames()
    assert refused["type"] == "save-outline" and refused["success"] is False
    [missing] = rt.ws.frames()
    assert missing["type"] == "schema-error"
    assert missing["error"] == "save-schema requires a data object"
    assert not (tmp_path / ".tmp").exists()
