#!/usr/bin/env python3
"""
Unified configuration loader for micwarden.

Load order (first found wins):
  1) MICWARDEN_CONFIG (env, absolute or relative to CWD)
  2) /etc/micwarden/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping, Sequence

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "run_dir": "/run/micwarden",
        "lock_file": "/run/micwarden/micwarden.lock",
        "pid_dir": "/run/micwarden/streams",
        "heartbeat_dir": "/run/micwarden/heartbeats",
        "log_dir": "/var/log/micwarden",
        "state_dir": "/var/lib/micwarden",
        "registry_file": "/var/lib/micwarden/devices.yaml",
        "snapshot_file": "/etc/micwarden/streams.yaml",
        "udev_rules_file": "/etc/udev/rules.d/99-usb-soundcards.rules",
        "proc_root": "/proc",
        "sysfs_root": "/sys",
    },
    "capture": {
        "binary": "ffmpeg",
        "sample_rate": 48000,
        "channels": 2,
        "codec": "opus",
        "bitrate": "128k",
        "thread_queue": 8192,
        "analyzeduration": 5000000,
        "probesize": 5000000,
        "log_max_bytes": 10 * 1024 * 1024,
        "overrides": {},
    },
    "media_server": {
        "host": "localhost",
        "api_port": 9997,
        "rtsp_port": 8554,
        "api_timeout_sec": 3.0,
        "register_paths": False,
    },
    "naming": {
        "prefix": "mic",
        "max_length": 64,
    },
    "supervisor": {
        "reconcile_interval_sec": 10.0,
        "startup_timeout_sec": 30.0,
        "stop_timeout_sec": 10.0,
        "backoff_initial_sec": 10.0,
        "backoff_max_sec": 300.0,
        "backoff_multiplier": 2.0,
        "healthy_run_reset_sec": 300.0,
        "max_restarts": 50,
        "max_systemic_failures": 3,
        "hotplug_debounce_sec": 2.0,
    },
    "heartbeat": {
        "check_interval_sec": 5.0,
        "stale_after_sec": 30.0,
        "restart_after_sec": 90.0,
    },
    "lock": {
        "timeout_sec": 30.0,
    },
    "control_api": {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 9780,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("micwarden.config")


class ConfigPersistenceError(Exception):
    """Raised when a YAML document cannot be read or persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("MICWARDEN_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/micwarden/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _positive_float(minimum: float) -> Callable[[str], float]:
    def _cast(raw: str) -> float:
        return max(minimum, float(raw))

    return _cast


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "MEDIAMTX_HOST" in os.environ:
        host = os.environ["MEDIAMTX_HOST"].strip()
        if host:
            cfg.setdefault("media_server", {})["host"] = host
    path_env = {
        "MICWARDEN_LOCK_FILE": "lock_file",
        "MICWARDEN_PID_DIR": "pid_dir",
        "MICWARDEN_HEARTBEAT_DIR": "heartbeat_dir",
        "MICWARDEN_LOG_DIR": "log_dir",
        "MICWARDEN_SNAPSHOT": "snapshot_file",
    }
    for env_key, path_key in path_env.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault("paths", {})[path_key] = value

    env_map: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "MICWARDEN_RECONCILE_INTERVAL": ("supervisor", "reconcile_interval_sec", _positive_float(1.0)),
        "MICWARDEN_STARTUP_TIMEOUT": ("supervisor", "startup_timeout_sec", _positive_float(1.0)),
        "MICWARDEN_BACKOFF_INITIAL": ("supervisor", "backoff_initial_sec", _positive_float(0.0)),
        "MICWARDEN_BACKOFF_MAX": ("supervisor", "backoff_max_sec", _positive_float(0.0)),
        "MICWARDEN_STALE_AFTER": ("heartbeat", "stale_after_sec", _positive_float(1.0)),
        "MICWARDEN_RESTART_AFTER": ("heartbeat", "restart_after_sec", _positive_float(1.0)),
        "MICWARDEN_LOCK_TIMEOUT": ("lock", "timeout_sec", _positive_float(0.0)),
        "MICWARDEN_CONTROL_PORT": ("control_api", "port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])

    heartbeat = cfg.setdefault("heartbeat", {})
    stale = heartbeat.get("stale_after_sec")
    restart = heartbeat.get("restart_after_sec")
    if isinstance(stale, (int, float)) and isinstance(restart, (int, float)) and restart < stale:
        heartbeat["restart_after_sec"] = stale


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # micwarden/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, (CommentedMap, CommentedSeq)):
        return value
    if isinstance(value, Mapping):
        converted = CommentedMap()
        for key, sub_value in value.items():
            converted[key] = _convert_to_round_trip(sub_value)
        return converted
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        converted_seq = CommentedSeq()
        for item in value:
            converted_seq.append(_convert_to_round_trip(item))
        return converted_seq
    return copy.deepcopy(value)


def load_round_trip(path: Path) -> MutableMapping[str, Any]:
    """Load ``path`` preserving comments; a missing file yields an empty map."""
    if not path.exists():
        return CommentedMap()
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = _ROUND_TRIP_YAML.load(handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to read {path}: {exc}") from exc
    if isinstance(data, MutableMapping):
        return data
    return CommentedMap()


def ensure_mapping(container: MutableMapping[str, Any], key: str) -> MutableMapping[str, Any]:
    existing = container.get(key)
    if isinstance(existing, MutableMapping):
        return existing
    new_map = _convert_to_round_trip(dict(existing) if isinstance(existing, Mapping) else {})
    container[key] = new_map
    return new_map


def dump_round_trip(path: Path, payload: MutableMapping[str, Any]) -> None:
    """Atomically write ``payload`` to ``path`` keeping round-trip formatting."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create directory for {path}: {exc}") from exc
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(_convert_to_round_trip(payload), handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except Exception as exc:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise ConfigPersistenceError(f"Unable to write {path}: {exc}") from exc


def configure_logging(cfg: Mapping[str, Any] | None = None) -> None:
    cfg = cfg if cfg is not None else get_cfg()
    logging_cfg = cfg.get("logging", {}) if isinstance(cfg, Mapping) else {}
    if logging_cfg.get("dev_mode"):
        level = logging.DEBUG
    else:
        level = getattr(logging, str(logging_cfg.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
