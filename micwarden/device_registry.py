"""Persistent mapping from physical USB port topology to stream names.

Names are derived from the USB port path a device is plugged into, never
from ALSA's enumeration order, so the same microphone in the same port keeps
its stream name across replugs and reboots. Associations are stored in a YAML
document (comments preserved through ruamel.yaml round-tripping) and mirrored
into a udev rules file so ``/dev/snd/by-id`` symlinks follow the same names.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping

from . import config
from .audio_devices import Device, scan_usb_audio
from .errors import UnresolvableDeviceError

log = logging.getLogger("micwarden.registry")

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")

RULES_HEADER = (
    "# USB sound card naming rules maintained by micwarden.\n"
    "# Regenerated whenever a new device is registered; manual edits are replaced.\n"
)

Scanner = Callable[[Path, Path], "tuple[List[Device], List[UnresolvableDeviceError]]"]


def sanitize_stream_name(raw: str, max_length: int = 64) -> str:
    """Return a lowercase ``[a-z0-9-]`` name that starts with a letter.

    The transformation is idempotent: feeding its output back in returns the
    same string.
    """

    max_length = max(8, int(max_length))
    name = _INVALID_CHARS.sub("-", str(raw).lower())
    name = _DASH_RUNS.sub("-", name).strip("-")
    if not name:
        return "stream"
    if not name[0].isalpha():
        name = f"stream-{name}"
    name = name[:max_length].rstrip("-")
    return name


def _now_iso(clock: Callable[[], float]) -> str:
    return datetime.fromtimestamp(clock(), tz=timezone.utc).isoformat(timespec="seconds")


def render_udev_rules(entries: Mapping[str, Mapping[str, Any]]) -> str:
    lines = [RULES_HEADER]
    for topology_key in sorted(entries):
        entry = entries[topology_key]
        name = entry.get("name")
        vendor = entry.get("vendor_id")
        product = entry.get("product_id")
        if not (name and vendor and product):
            continue
        lines.append(
            f'SUBSYSTEM=="sound", ATTRS{{idVendor}}=="{vendor}", '
            f'ATTRS{{idProduct}}=="{product}", KERNELS=="{topology_key}", '
            f'ATTR{{id}}="{name}", SYMLINK+="sound/by-id/{name}"\n'
        )
    return "".join(lines)


def _write_if_changed(path: Path, content: str) -> bool:
    try:
        if path.read_text(encoding="utf-8") == content:
            return False
    except FileNotFoundError:
        pass
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise
    return True


class DeviceRegistry:
    """Resolve and remember stream names for USB capture devices."""

    def __init__(
        self,
        store_path: Path,
        udev_rules_path: Path | None = None,
        *,
        proc_root: Path = Path("/proc"),
        sysfs_root: Path = Path("/sys"),
        prefix: str = "mic",
        max_length: int = 64,
        reload_udev: bool = True,
        scanner: Scanner = scan_usb_audio,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store_path = Path(store_path)
        self.udev_rules_path = Path(udev_rules_path) if udev_rules_path else None
        self.proc_root = Path(proc_root)
        self.sysfs_root = Path(sysfs_root)
        self.prefix = sanitize_stream_name(prefix or "mic", max_length)
        self.max_length = max_length
        self.reload_udev = reload_udev
        self._scanner = scanner
        self._clock = clock
        self._doc: MutableMapping[str, Any] = config.load_round_trip(self.store_path)
        self._claims: Dict[str, str] = {}
        self._dirty = False
        self.last_errors: List[UnresolvableDeviceError] = []

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None, **overrides: Any) -> "DeviceRegistry":
        cfg = cfg if cfg is not None else config.get_cfg()
        paths = cfg.get("paths", {})
        naming = cfg.get("naming", {})
        rules = paths.get("udev_rules_file")
        kwargs: Dict[str, Any] = {
            "udev_rules_path": Path(rules) if rules else None,
            "proc_root": Path(paths.get("proc_root", "/proc")),
            "sysfs_root": Path(paths.get("sysfs_root", "/sys")),
            "prefix": str(naming.get("prefix", "mic")),
            "max_length": int(naming.get("max_length", 64)),
        }
        kwargs.update(overrides)
        return cls(Path(paths.get("registry_file", "/var/lib/micwarden/devices.yaml")), **kwargs)

    def _entries(self) -> MutableMapping[str, Any]:
        return config.ensure_mapping(self._doc, "devices")

    def known(self) -> Dict[str, Dict[str, Any]]:
        """Historical topology key to record mapping, including absent devices."""
        return {str(key): dict(value) for key, value in self._entries().items()}

    def scan(self) -> set[Device]:
        devices, errors = self._scanner(self.proc_root, self.sysfs_root)
        self.last_errors = list(errors)
        for error in errors:
            log.warning("Skipping device %s: %s", error.card, error.detail)

        seen_at = _now_iso(self._clock)
        entries = self._entries()
        for device in devices:
            entry = entries.get(device.topology_key)
            if isinstance(entry, MutableMapping):
                entry["last_seen"] = seen_at
        return set(devices)

    def _owner_of(self, name: str) -> str | None:
        for key, claimed in self._claims.items():
            if claimed == name:
                return key
        for key, entry in self._entries().items():
            if isinstance(entry, Mapping) and entry.get("name") == name:
                return str(key)
        return None

    def resolve_name(self, device: Device) -> str:
        key = device.topology_key
        claimed = self._claims.get(key)
        if claimed:
            return claimed

        entry = self._entries().get(key)
        if isinstance(entry, Mapping) and entry.get("name"):
            stored = sanitize_stream_name(str(entry["name"]), self.max_length)
            if stored not in self._claims.values():
                self._claims[key] = stored
                return stored
            # Hand edits can leave two ports with the same stored name.
            name = self._unclaimed(stored, key)
            log.warning("Stored name %s for %s is already in use; using %s", stored, key, name)
            self._claims[key] = name
            return name

        name = self._unclaimed(sanitize_stream_name(f"{self.prefix}-{key}", self.max_length), key)
        self._claims[key] = name
        log.debug("Resolved %s (%s) to %s", key, device.usb_id, name)
        return name

    def _unclaimed(self, base: str, key: str) -> str:
        name = base
        counter = 2
        while self._owner_of(name) not in (None, key):
            suffix = f"-{counter}"
            name = base[: self.max_length - len(suffix)].rstrip("-") + suffix
            counter += 1
        return name

    def persist(self, device: Device, name: str) -> bool:
        """Record ``name`` for ``device``; returns True when anything was written."""

        if sanitize_stream_name(name, self.max_length) != name:
            raise ValueError(f"stream name {name!r} is not sanitized")
        owner = self._owner_of(name)
        if owner not in (None, device.topology_key):
            raise ValueError(f"stream name {name!r} already belongs to {owner}")

        entries = self._entries()
        entry = config.ensure_mapping(entries, device.topology_key)
        seen_at = _now_iso(self._clock)
        desired = {
            "name": name,
            "vendor_id": device.vendor_id,
            "product_id": device.product_id,
            "product": device.product,
            "serial": device.serial,
        }
        for field_name, value in desired.items():
            if entry.get(field_name) != value:
                entry[field_name] = value
                self._dirty = True
        if "first_seen" not in entry:
            entry["first_seen"] = seen_at
            self._dirty = True
        entry["last_seen"] = seen_at
        self._claims[device.topology_key] = name

        if not self._dirty:
            return False
        config.dump_round_trip(self.store_path, self._doc)
        self._dirty = False
        log.info("Registered %s (%s) as %s", device.topology_key, device.usb_id, name)
        self._sync_udev_rules()
        return True

    def _sync_udev_rules(self) -> None:
        if self.udev_rules_path is None:
            return
        content = render_udev_rules(self.known())
        if not _write_if_changed(self.udev_rules_path, content):
            return
        log.info("Updated udev rules at %s", self.udev_rules_path)
        if self.reload_udev:
            _reload_udev_rules()

    def names(self, devices: Iterable[Device]) -> Dict[str, Device]:
        return {self.resolve_name(device): device for device in devices}


def _reload_udev_rules() -> None:
    try:
        result = subprocess.run(
            ["udevadm", "control", "--reload-rules"],
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except FileNotFoundError:
        log.warning("udevadm not found; udev rules will apply after reboot")
        return
    except subprocess.SubprocessError as exc:
        log.warning("udevadm reload failed: %s", exc)
        return
    if result.returncode != 0:
        log.warning("udevadm reload returned %s: %s", result.returncode, (result.stderr or "").strip())


__all__ = ["DeviceRegistry", "render_udev_rules", "sanitize_stream_name"]
