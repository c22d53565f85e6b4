"""
Sweetlink command line: run a server or talk to one as a controller.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from .client import COMMON_APP_PORTS, SweetlinkClient, dedupe_logs, discover_servers, probe_server
from .config import ServerConfig, ws_port_for_app
from .errors import SweetlinkError
from .protocol import HMR_CHANNEL, decode, now_ms
from .screenshot_utils import decode_data_url
from .server.handlers.files import SCREENSHOT_DIR, generate_base_filename

logger = logging.getLogger("sweetlink")


def _print(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _ok(response: dict[str, Any]) -> int:
    _print(response)
    return 0 if response.get("success", True) else 1


def cmd_serve(args: argparse.Namespace) -> int:
    from .server import SweetlinkServer

    config = ServerConfig.from_env()
    if args.app_port is not None:
        config.app_port = args.app_port
        config.port = ws_port_for_app(args.app_port)
    if args.port is not None:
        config.port = args.port
    if args.host:
        config.host = args.host

    server = SweetlinkServer(config)
    try:
        port = server.start()
    except SweetlinkError as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Ready on ws://%s:%s (Ctrl-C to stop)", config.host, port)
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    info = probe_server(args.host, args.port, timeout=args.timeout)
    if info is None:
        _print({"status": "not running", "port": args.port})
        return 1
    _print(info)
    return 0


def cmd_discover(args: argparse.Namespace) -> int:
    found = discover_servers(args.host, app_ports=args.app_port or COMMON_APP_PORTS)
    _print(found)
    return 0 if found else 1


def cmd_exec(args: argparse.Namespace, client: SweetlinkClient) -> int:
    return _ok(client.exec_js(args.code, timeout=args.timeout))


def cmd_query(args: argparse.Namespace, client: SweetlinkClient) -> int:
    return _ok(client.query_dom(args.selector, args.property, timeout=args.timeout))


def cmd_logs(args: argparse.Namespace, client: SweetlinkClient) -> int:
    response = client.get_logs(args.filter, timeout=args.timeout)
    if args.dedupe and response.get("success"):
        data = dict(response.get("data") or {})
        data["logs"] = dedupe_logs(data.get("logs") or [])
        response = {**response, "data": data}
    return _ok(response)


def cmd_screenshot(args: argparse.Namespace, client: SweetlinkClient) -> int:
    response = client.request_screenshot(
        args.selector,
        fmt=args.format,
        quality=args.quality,
        scale=args.scale,
        timeout=args.timeout,
    )
    if not response.get("success"):
        _print(response)
        return 1

    data = response.get("data") or {}
    ext = "png" if args.format == "png" else "jpg"
    if args.output:
        out = Path(args.output)
    else:
        out = Path(SCREENSHOT_DIR) / f"{generate_base_filename('screenshot', now_ms())}.{ext}"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(decode_data_url(str(data.get("screenshot") or "")))
    _print(
        {
            "success": True,
            "path": str(out),
            "width": data.get("width"),
            "height": data.get("height"),
            "url": data.get("url"),
        }
    )
    return 0


def cmd_send(args: argparse.Namespace, client: SweetlinkClient) -> int:
    payload = decode(args.payload)
    return _ok(client.send_command(payload, timeout=args.timeout))


def cmd_tail(args: argparse.Namespace, client: SweetlinkClient) -> int:
    if args.logs:
        ack = client.log_subscribe(
            levels=args.level or None,
            pattern=args.pattern,
            source=args.source,
            timeout=args.timeout,
        )
    else:
        ack = client.subscribe(args.channel, timeout=args.timeout)
    if ack.get("success") is False:
        _print(ack)
        return 1
    logger.info("Subscribed; waiting for events (Ctrl-C to stop)")
    try:
        for event in client.events(timeout=args.idle):
            sys.stdout.write(json.dumps(event, ensure_ascii=False) + "\n")
            sys.stdout.flush()
    except KeyboardInterrupt:
        pass
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sweetlink", description=__doc__.strip())
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="run a sweetlink server")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--app-port", type=int, default=None)
    p.add_argument("--host", default=None)
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("status", help="show the status document of a server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=ws_port_for_app(None))
    p.add_argument("--timeout", type=float, default=1.0)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("discover", help="find running servers")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--app-port", type=int, action="append", help="also scan this app's port range")
    p.set_defaults(func=cmd_discover)

    def _controller(name: str, help_text: str, func: Any) -> argparse.ArgumentParser:
        cp = sub.add_parser(name, help=help_text)
        cp.add_argument("--url", default=None, help="server URL (default: $SWEETLINK_WS_URL or ws://localhost:9223)")
        cp.add_argument("--timeout", type=float, default=None)
        cp.set_defaults(func=func, needs_client=True)
        return cp

    p = _controller("exec", "evaluate code in the runtime", cmd_exec)
    p.add_argument("code")

    p = _controller("query", "query elements", cmd_query)
    p.add_argument("selector")
    p.add_argument("--property", default=None)

    p = _controller("logs", "fetch buffered console logs", cmd_logs)
    p.add_argument("--filter", default=None)
    p.add_argument("--dedupe", action="store_true")

    p = _controller("screenshot", "capture a screenshot to a file", cmd_screenshot)
    p.add_argument("--selector", default=None)
    p.add_argument("--output", "-o", default=None)
    p.add_argument("--format", choices=("jpeg", "png"), default="jpeg")
    p.add_argument("--quality", type=float, default=None)
    p.add_argument("--scale", type=float, default=None)

    p = _controller("send", "send a raw JSON message and print the reply", cmd_send)
    p.add_argument("payload")

    p = _controller("tail", "stream channel or log events", cmd_tail)
    p.add_argument("--channel", default=HMR_CHANNEL)
    p.add_argument("--logs", action="store_true", help="subscribe to the runtime's log stream")
    p.add_argument("--level", action="append", help="log level filter (repeatable)")
    p.add_argument("--pattern", default=None)
    p.add_argument("--source", default=None)
    p.add_argument("--idle", type=float, default=None, help="stop after this many idle seconds")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if not getattr(args, "needs_client", False):
        return int(args.func(args))

    client = SweetlinkClient(args.url)
    try:
        with client:
            return int(args.func(args, client))
    except SweetlinkError as exc:
        _print({"success": False, "error": str(exc)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
