"""Render and atomically publish the stream snapshot consumed by collectors."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import yaml

from . import config
from .audio_devices import Capabilities, Device
from .device_registry import sanitize_stream_name
from .errors import InvalidConfigError

log = logging.getLogger("micwarden.snapshot")

HEADER_PREFIX = "# micwarden-snapshot sha256="
SNAPSHOT_VERSION = 1
SUPPORTED_CODECS = ("opus", "aac", "mp3")


@dataclass(frozen=True)
class CaptureSpec:
    sample_rate: int = 48000
    channels: int = 2
    codec: str = "opus"
    bitrate: str = "128k"
    thread_queue: int = 8192


@dataclass(frozen=True)
class StreamEntry:
    name: str
    device_path: str
    topology_key: str
    capture: CaptureSpec
    target: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device_path,
            "topology_key": self.topology_key,
            "sample_rate": self.capture.sample_rate,
            "channels": self.capture.channels,
            "codec": self.capture.codec,
            "bitrate": self.capture.bitrate,
            "thread_queue": self.capture.thread_queue,
            "target": self.target,
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    entries: tuple[StreamEntry, ...]
    content: str
    content_hash: str

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def get(self, name: str) -> StreamEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None


def closest_rate(requested: int, supported: Iterable[int]) -> int:
    options = sorted(set(supported))
    if not options or requested in options:
        return requested
    return min(options, key=lambda rate: (abs(rate - requested), -rate))


def clamp_capture(spec: CaptureSpec, capabilities: Capabilities) -> CaptureSpec:
    rate = closest_rate(spec.sample_rate, capabilities.sample_rates)
    channels = spec.channels
    if capabilities.channels:
        channels = max(min(capabilities.channels), min(channels, max(capabilities.channels)))
    if rate == spec.sample_rate and channels == spec.channels:
        return spec
    return CaptureSpec(
        sample_rate=rate,
        channels=channels,
        codec=spec.codec,
        bitrate=spec.bitrate,
        thread_queue=spec.thread_queue,
    )


def _body_for(entries: Iterable[StreamEntry]) -> str:
    payload = {
        "version": SNAPSHOT_VERSION,
        "streams": {entry.name: entry.as_dict() for entry in entries},
    }
    return yaml.safe_dump(payload, sort_keys=True, default_flow_style=False)


def build_snapshot(entries: Iterable[StreamEntry]) -> ConfigSnapshot:
    ordered = tuple(sorted(entries, key=lambda entry: entry.name))
    body = _body_for(ordered)
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    return ConfigSnapshot(entries=ordered, content=f"{HEADER_PREFIX}{digest}\n{body}", content_hash=digest)


def parse_snapshot(text: str) -> ConfigSnapshot:
    header, _, body = text.partition("\n")
    if not header.startswith(HEADER_PREFIX):
        raise InvalidConfigError(["snapshot header missing"])
    recorded = header[len(HEADER_PREFIX):].strip()
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    if recorded != digest:
        raise InvalidConfigError(["snapshot hash mismatch"])
    data = yaml.safe_load(body) or {}
    streams = data.get("streams") or {}
    entries = []
    for name, raw in streams.items():
        entries.append(
            StreamEntry(
                name=str(name),
                device_path=str(raw.get("device", "")),
                topology_key=str(raw.get("topology_key", "")),
                capture=CaptureSpec(
                    sample_rate=int(raw.get("sample_rate", 48000)),
                    channels=int(raw.get("channels", 2)),
                    codec=str(raw.get("codec", "opus")),
                    bitrate=str(raw.get("bitrate", "128k")),
                    thread_queue=int(raw.get("thread_queue", 8192)),
                ),
                target=str(raw.get("target", "")),
            )
        )
    return ConfigSnapshot(
        entries=tuple(sorted(entries, key=lambda entry: entry.name)),
        content=text,
        content_hash=digest,
    )


def read_snapshot(path: Path, attempts: int = 3, delay: float = 0.05) -> ConfigSnapshot | None:
    """Read a published snapshot without taking the supervisor lock.

    Readers may race a replace in progress; transient read errors and hash
    mismatches are retried. Returns None when no snapshot has been published.
    """

    path = Path(path)
    last_error: Exception | None = None
    for attempt in range(max(1, attempts)):
        try:
            return parse_snapshot(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, InvalidConfigError, yaml.YAMLError, AttributeError) as exc:
            last_error = exc
            if attempt + 1 < attempts:
                time.sleep(delay)
    raise InvalidConfigError([f"unreadable snapshot {path}: {last_error}"])


class ConfigGenerator:
    """Turn the live device set into a validated, atomically written snapshot."""

    def __init__(
        self,
        snapshot_path: Path,
        *,
        capture_defaults: Mapping[str, Any] | None = None,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
        rtsp_base: str = "rtsp://localhost:8554",
        max_length: int = 64,
    ) -> None:
        self.snapshot_path = Path(snapshot_path)
        defaults = dict(capture_defaults or {})
        self.defaults = CaptureSpec(
            sample_rate=int(defaults.get("sample_rate", 48000)),
            channels=int(defaults.get("channels", 2)),
            codec=str(defaults.get("codec", "opus")),
            bitrate=str(defaults.get("bitrate", "128k")),
            thread_queue=int(defaults.get("thread_queue", 8192)),
        )
        self.overrides = {str(k): dict(v) for k, v in (overrides or {}).items() if isinstance(v, Mapping)}
        self.rtsp_base = rtsp_base.rstrip("/")
        self.max_length = max_length

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None) -> "ConfigGenerator":
        cfg = cfg if cfg is not None else config.get_cfg()
        capture = cfg.get("capture", {})
        media = cfg.get("media_server", {})
        return cls(
            Path(cfg.get("paths", {}).get("snapshot_file", "/etc/micwarden/streams.yaml")),
            capture_defaults=capture,
            overrides=capture.get("overrides") or {},
            rtsp_base=f"rtsp://{media.get('host', 'localhost')}:{media.get('rtsp_port', 8554)}",
            max_length=int(cfg.get("naming", {}).get("max_length", 64)),
        )

    def _spec_for(self, name: str) -> CaptureSpec:
        override = self.overrides.get(name)
        if not override:
            return self.defaults
        return CaptureSpec(
            sample_rate=int(override.get("sample_rate", self.defaults.sample_rate)),
            channels=int(override.get("channels", self.defaults.channels)),
            codec=str(override.get("codec", self.defaults.codec)),
            bitrate=str(override.get("bitrate", self.defaults.bitrate)),
            thread_queue=int(override.get("thread_queue", self.defaults.thread_queue)),
        )

    def render(self, devices: Mapping[str, Device]) -> ConfigSnapshot:
        """Render a snapshot from ``{stream name: device}``."""
        entries = []
        for name, device in devices.items():
            spec = clamp_capture(self._spec_for(name), device.capabilities)
            entries.append(
                StreamEntry(
                    name=name,
                    device_path=device.device_path,
                    topology_key=device.topology_key,
                    capture=spec,
                    target=f"{self.rtsp_base}/{name}",
                )
            )
        return build_snapshot(entries)

    def validate(self, snapshot: ConfigSnapshot) -> None:
        problems: list[str] = []
        seen: set[str] = set()
        for entry in snapshot.entries:
            if entry.name in seen:
                problems.append(f"duplicate stream name {entry.name}")
            seen.add(entry.name)
            if sanitize_stream_name(entry.name, self.max_length) != entry.name:
                problems.append(f"invalid stream name {entry.name!r}")
            if not entry.device_path.strip():
                problems.append(f"{entry.name}: empty device path")
            if entry.capture.codec not in SUPPORTED_CODECS:
                problems.append(f"{entry.name}: unsupported codec {entry.capture.codec}")
            if entry.capture.sample_rate <= 0 or entry.capture.channels <= 0:
                problems.append(f"{entry.name}: invalid capture format")
        if problems:
            raise InvalidConfigError(problems)

    def current_hash(self) -> str | None:
        try:
            with self.snapshot_path.open("r", encoding="utf-8") as handle:
                header = handle.readline()
        except FileNotFoundError:
            return None
        if not header.startswith(HEADER_PREFIX):
            return None
        return header[len(HEADER_PREFIX):].strip() or None

    def apply(self, snapshot: ConfigSnapshot) -> bool:
        """Publish ``snapshot``; returns False when the file is already current."""

        self.validate(snapshot)
        if self.current_hash() == snapshot.content_hash:
            return False

        directory = self.snapshot_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.snapshot_path.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(snapshot.content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.snapshot_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        log.info(
            "Published snapshot %s with %d stream(s) (sha256 %s)",
            self.snapshot_path,
            len(snapshot.entries),
            snapshot.content_hash[:12],
        )
        return True

    def current(self) -> ConfigSnapshot | None:
        return read_snapshot(self.snapshot_path)


__all__ = [
    "CaptureSpec",
    "ConfigGenerator",
    "ConfigSnapshot",
    "StreamEntry",
    "build_snapshot",
    "clamp_capture",
    "parse_snapshot",
    "read_snapshot",
]
