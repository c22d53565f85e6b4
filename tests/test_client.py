from __future__ import annotations

import json
import socket

import pytest

from sweetlink.client import (
    COMMON_APP_PORTS,
    SweetlinkClient,
    dedupe_logs,
    ports_to_scan,
    probe_server,
    wait_for_server,
)
from sweetlink.config import ServerConfig
from sweetlink.errors import SweetlinkError
from sweetlink.main import build_parser, main


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _require_websockets() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")


def test_ports_to_scan_covers_every_app_range() -> None:
    ports = ports_to_scan([3000, 5173], max_retries=2)
    assert ports == [9223, 9224, 9225, 11396, 11397, 11398]
    assert 9223 + 10 in ports_to_scan(COMMON_APP_PORTS)


def test_dedupe_logs_groups_and_orders() -> None:
    logs = [
        {"level": "log", "message": "tick", "timestamp": 1},
        {"level": "log", "message": "tick", "timestamp": 5},
        {"level": "log", "message": "tick", "timestamp": 3},
        {"level": "warn", "message": "slow", "timestamp": 2},
        {"level": "error", "message": "boom", "timestamp": 4},
        {"level": "error", "message": "x" * 250, "timestamp": 6},
        {"level": "error", "message": "x" * 200 + "y" * 50, "timestamp": 7},
    ]
    out = dedupe_logs(logs)
    assert [(e["level"], e["count"]) for e in out] == [("error", 2), ("error", 1), ("warn", 1), ("log", 3)]
    tick = out[-1]
    assert (tick["firstSeen"], tick["lastSeen"]) == (1, 5)


def test_probe_server_returns_none_when_nothing_listens() -> None:
    assert probe_server("127.0.0.1", _free_port(), timeout=0.2) is None


def test_probe_and_status_command_against_running_server(capsys: pytest.CaptureFixture[str]) -> None:
    _require_websockets()
    from sweetlink.server import SweetlinkServer

    server = SweetlinkServer(ServerConfig(port=_free_port(), app_port=5173, host="127.0.0.1", max_port_retries=1))
    port = server.start()
    try:
        info = probe_server("127.0.0.1", port, timeout=1.0)
        assert info is not None
        assert info["port"] == port
        assert info["associatedApplicationPort"] == 5173

        assert main(["status", "--port", str(port)]) == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["name"] == "sweetlink"
    finally:
        server.stop()

    assert main(["status", "--port", str(port), "--timeout", "0.2"]) == 1
    assert json.loads(capsys.readouterr().out)["status"] == "not running"


def test_client_connect_failure_is_a_sweetlink_error() -> None:
    client = SweetlinkClient(f"ws://127.0.0.1:{_free_port()}", timeout=0.5)
    with pytest.raises(SweetlinkError):
        client.connect()


def test_controller_command_without_server_prints_failure(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["exec", "1 + 1", "--url", f"ws://127.0.0.1:{_free_port()}"]) == 1
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is False
    assert "Cannot connect" in out["error"]


def test_client_url_defaults_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWEETLINK_WS_URL", "ws://localhost:11396")
    assert SweetlinkClient().url == "ws://localhost:11396"
    monkeypatch.delenv("SWEETLINK_WS_URL")
    assert SweetlinkClient().url == "ws://localhost:9223"


def test_parser_shapes() -> None:
    parser = build_parser()
    args = parser.parse_args(["tail", "--logs", "--level", "error", "--level", "warn", "--idle", "2"])
    assert args.logs is True and args.level == ["error", "warn"] and args.idle == 2.0
    assert args.needs_client is True

    args = parser.parse_args(["serve", "--app-port", "3000"])
    assert args.app_port == 3000 and not getattr(args, "needs_client", False)

    args = parser.parse_args(["screenshot", "--format", "png", "-o", "shot.png"])
    assert (args.format, args.output) == ("png", "shot.png")


def test_wait_for_server_sees_a_late_start() -> None:
    _require_websockets()
    import threading

    from sweetlink.server import SweetlinkServer

    port = _free_port()
    server = SweetlinkServer(ServerConfig(port=port, host="127.0.0.1", max_port_retries=1))
    timer = threading.Timer(0.3, server.start)
    timer.start()
    try:
        info = wait_for_server("127.0.0.1", port, timeout=5.0, interval=0.05)
        assert info is not None and info["status"] == "running"
    finally:
        timer.join()
        server.stop()

    assert wait_for_server("127.0.0.1", _free_port(), timeout=0.2, interval=0.05) is None


def test_discover_servers_collects_responding_ports(monkeypatch: pytest.MonkeyPatch) -> None:
    import sweetlink.client as client_mod

    live = {9224: {"name": "sweetlink", "port": 9224}, 11396: {"name": "sweetlink", "port": 11396}}
    probed: list[int] = []

    def _fake_probe(host: str, port: int, *, timeout: float = 0.5):  # type: ignore[no-untyped-def]
        probed.append(port)
        return live.get(port)

    monkeypatch.setattr(client_mod, "probe_server", _fake_probe)
    found = client_mod.discover_servers(app_ports=[5173])
    assert [s["port"] for s in found] == [9224, 11396]
    assert set(probed) == set(ports_to_scan([5173]))
