"""Helpers used by the systemd unit to sync configuration-derived runtime state."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict

from .config import get_cfg

_ENV_PATHS = {
    "MICWARDEN_LOCK_FILE": "lock_file",
    "MICWARDEN_PID_DIR": "pid_dir",
    "MICWARDEN_HEARTBEAT_DIR": "heartbeat_dir",
    "MICWARDEN_LOG_DIR": "log_dir",
    "MICWARDEN_SNAPSHOT": "snapshot_file",
}

_RUNTIME_DIRS = ("run_dir", "pid_dir", "heartbeat_dir", "log_dir", "state_dir")

UNIT_TEMPLATE = """\
[Unit]
Description=micwarden USB microphone stream supervisor
After=network-online.target mediamtx.service sound.target
Wants=network-online.target

[Service]
Type=simple
EnvironmentFile=-{env_file}
ExecStartPre={python} -m micwarden.unit_runtime --env-file {env_file} --ensure-dirs
ExecStart={python} -m micwarden.service run
ExecReload=/bin/kill -HUP $MAINPID
Restart=on-failure
RestartSec=10
KillMode=mixed
TimeoutStopSec={stop_timeout}
{user_line}
[Install]
WantedBy=multi-user.target
"""


def _escape_env_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _write_env_file(env_path: Path, values: Dict[str, str]) -> None:
    env_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = env_path.with_suffix(env_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        for key, raw_value in values.items():
            if not raw_value:
                continue
            handle.write(f'{key}="{_escape_env_value(raw_value)}"\n')
    tmp_path.replace(env_path)


def _ensure_dirs(paths: Dict[str, str]) -> None:
    for raw_path in paths.values():
        if not raw_path:
            continue
        try:
            Path(raw_path).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(
                f"[unit-runtime] WARN: failed to ensure directory {raw_path}: {exc}",
                file=sys.stderr,
            )


def prepare_runtime(env_file: Path, *, ensure_dirs: bool = False) -> Dict[str, str]:
    cfg = get_cfg()
    paths_cfg = cfg.get("paths", {})
    media_cfg = cfg.get("media_server", {})

    env_values: Dict[str, str] = {}
    host = str(media_cfg.get("host", ""))
    if host:
        env_values["MEDIAMTX_HOST"] = host
    for env_key, path_key in _ENV_PATHS.items():
        value = str(paths_cfg.get(path_key, "") or "")
        if value:
            env_values[env_key] = value
    if cfg.get("logging", {}).get("dev_mode"):
        env_values["DEV"] = "1"

    _write_env_file(env_file, env_values)

    if ensure_dirs:
        _ensure_dirs({key: str(paths_cfg.get(key, "") or "") for key in _RUNTIME_DIRS})

    return env_values


def render_service_unit(
    env_file: Path,
    *,
    python: str = sys.executable,
    user: str | None = None,
) -> str:
    stop_timeout = float(get_cfg().get("supervisor", {}).get("stop_timeout_sec", 10.0))
    # Each stream gets SIGTERM then SIGKILL, so leave room for both waits.
    return UNIT_TEMPLATE.format(
        env_file=env_file,
        python=python,
        stop_timeout=int(stop_timeout * 2 + 5),
        user_line=f"User={user}\n" if user else "",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--env-file", required=True, type=Path)
    parser.add_argument("--ensure-dirs", action="store_true")
    parser.add_argument("--write-unit", type=Path, default=None, help="Also write a systemd unit here")
    parser.add_argument("--user", default=None)
    args = parser.parse_args(argv)

    prepare_runtime(args.env_file, ensure_dirs=args.ensure_dirs)
    if args.write_unit:
        args.write_unit.parent.mkdir(parents=True, exist_ok=True)
        args.write_unit.write_text(
            render_service_unit(args.env_file, user=args.user),
            encoding="utf-8",
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
