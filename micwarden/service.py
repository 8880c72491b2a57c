#!/usr/bin/env python3
"""micwarden service entry point and operator commands.

``run`` is the long-lived supervisor started by systemd. The other commands
talk to a running supervisor through its local control API.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, Iterable, List
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from . import config
from .control_api import ControlApiHandle, start_control_api_in_thread
from .device_registry import DeviceRegistry
from .lock_manager import pid_alive, read_holder
from .orchestrator import Orchestrator

log = logging.getLogger("micwarden.service")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_NOT_REACHABLE = 3


def _api_base(cfg: Dict[str, Any]) -> str:
    api = cfg.get("control_api", {})
    return f"http://{api.get('host', '127.0.0.1')}:{api.get('port', 9780)}/api"


def _call_api(cfg: Dict[str, Any], method: str, path: str, timeout: float = 35.0) -> tuple[int, Dict[str, Any]]:
    request = Request(f"{_api_base(cfg)}{path}", data=b"" if method == "POST" else None, method=method)
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.status, json.loads(response.read() or b"{}")
    except HTTPError as exc:
        try:
            body = json.loads(exc.read() or b"{}")
        except ValueError:
            body = {"ok": False, "reason": f"http_{exc.code}"}
        return exc.code, body


def _print_streams(streams: Iterable[Dict[str, Any]]) -> None:
    rows = list(streams)
    if not rows:
        print("no streams")
        return
    print(f"{'NAME':<24} {'STATE':<10} {'PID':>7} {'RESTARTS':>8} {'HB AGE':>7}  REASON")
    for row in rows:
        age = row.get("heartbeat_age")
        print(
            f"{row.get('name', ''):<24} {row.get('state', ''):<10} "
            f"{row.get('pid') or '-':>7} {row.get('restart_count', 0):>8} "
            f"{'-' if age is None else age:>7}  {row.get('reason') or ''}"
        )


def _report_unreachable(cfg: Dict[str, Any], exc: Exception) -> int:
    lock_file = cfg.get("paths", {}).get("lock_file")
    holder = read_holder(lock_file) if lock_file else None
    if holder and pid_alive(int(holder["pid"])):
        print(
            f"supervisor pid {holder['pid']} holds {lock_file} but its control API is unreachable: {exc}",
            file=sys.stderr,
        )
        return EXIT_NOT_REACHABLE
    print(f"supervisor is not running ({exc})", file=sys.stderr)
    return EXIT_FAILURE


def cmd_run(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    orchestrator = Orchestrator.from_cfg(cfg)
    api_cfg = cfg.get("control_api", {})
    handles: List[ControlApiHandle] = []

    def _start_api() -> None:
        if not api_cfg.get("enabled", True) or args.no_api:
            return
        try:
            handles.append(
                start_control_api_in_thread(
                    orchestrator,
                    host=str(api_cfg.get("host", "127.0.0.1")),
                    port=int(api_cfg.get("port", 9780)),
                )
            )
        except OSError as exc:
            log.warning("Control API disabled: %s", exc)

    try:
        return orchestrator.run(on_locked=_start_api)
    finally:
        for handle in handles:
            handle.stop()


def cmd_status(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    path = "/streams" if not args.name else f"/streams/{quote(args.name, safe='')}"
    try:
        code, body = _call_api(cfg, "GET", path)
    except (URLError, OSError) as exc:
        return _report_unreachable(cfg, exc)
    if args.json:
        print(json.dumps(body, indent=2, sort_keys=True))
    elif body.get("ok"):
        _print_streams(body.get("streams", []))
    else:
        print(f"{args.name}: {body.get('reason', 'error')}", file=sys.stderr)
    return EXIT_OK if code == 200 else EXIT_FAILURE


def _post_command(cfg: Dict[str, Any], path: str, as_json: bool) -> int:
    try:
        code, body = _call_api(cfg, "POST", path)
    except (URLError, OSError) as exc:
        return _report_unreachable(cfg, exc)
    if as_json:
        print(json.dumps(body, indent=2, sort_keys=True))
    elif body.get("streams"):
        _print_streams(body["streams"])
    else:
        label = body.get("name") or "streams"
        state = body.get("state") or ("ok" if body.get("ok") else "failed")
        reason = body.get("reason")
        print(f"{label}: {state}" + (f" ({reason})" if reason else ""))
    return EXIT_OK if code == 200 else EXIT_FAILURE


def cmd_start_all(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    return _post_command(cfg, "/streams/start-all", args.json)


def cmd_stop(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    return _post_command(cfg, f"/streams/{quote(args.name, safe='')}/stop", args.json)


def cmd_restart(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    return _post_command(cfg, f"/streams/{quote(args.name, safe='')}/restart", args.json)


def cmd_scan(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    registry = DeviceRegistry.from_cfg(cfg)
    devices = sorted(registry.scan(), key=lambda d: d.topology_key)
    rows = []
    for device in devices:
        rows.append(
            {
                "name": registry.resolve_name(device),
                "topology_key": device.topology_key,
                "usb_id": device.usb_id,
                "device": device.device_path,
                "product": device.product,
                "rates": list(device.capabilities.sample_rates),
                "channels": list(device.capabilities.channels),
            }
        )
    if args.json:
        print(json.dumps({"devices": rows, "errors": [str(e) for e in registry.last_errors]}, indent=2))
    else:
        for row in rows:
            print(f"{row['name']:<24} {row['topology_key']:<12} {row['usb_id']}  {row['device']}  {row['product']}")
        for error in registry.last_errors:
            print(f"unresolved: {error}", file=sys.stderr)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="micwarden", description="USB microphone stream supervisor")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the supervisor in the foreground")
    run.add_argument("--no-api", action="store_true", help="Do not start the control API")
    run.set_defaults(func=cmd_run)

    status = sub.add_parser("status", help="Show stream status")
    status.add_argument("name", nargs="?")
    status.set_defaults(func=cmd_status)

    start_all = sub.add_parser("start-all", help="Start every detected stream")
    start_all.set_defaults(func=cmd_start_all)

    stop = sub.add_parser("stop", help="Stop one stream until restarted")
    stop.add_argument("name")
    stop.set_defaults(func=cmd_stop)

    restart = sub.add_parser("restart", help="Restart one stream now")
    restart.add_argument("name")
    restart.set_defaults(func=cmd_restart)

    scan = sub.add_parser("scan", help="List detected devices and their stream names")
    scan.set_defaults(func=cmd_scan)
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    cfg = config.get_cfg()
    config.configure_logging(cfg)
    return args.func(cfg, args)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())
