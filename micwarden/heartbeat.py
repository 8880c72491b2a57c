"""Per-stream liveness files and staleness evaluation."""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping

from . import config
from .media_server import PathInfo

log = logging.getLogger("micwarden.heartbeat")


@dataclass(frozen=True)
class HeartbeatStale:
    """Soft signal: a running stream has not produced a beat recently."""

    name: str
    age: float
    restart_due: bool


class HeartbeatMonitor:
    def __init__(
        self,
        heartbeat_dir: Path,
        stale_after: float = 30.0,
        restart_after: float = 90.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.heartbeat_dir = Path(heartbeat_dir)
        self.stale_after = float(stale_after)
        self.restart_after = max(float(restart_after), self.stale_after)
        self._clock = clock
        self._bytes: Dict[str, int] = {}

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None, **kwargs: Any) -> "HeartbeatMonitor":
        cfg = cfg if cfg is not None else config.get_cfg()
        hb = cfg.get("heartbeat", {})
        return cls(
            Path(cfg.get("paths", {}).get("heartbeat_dir", "/run/micwarden/heartbeats")),
            float(hb.get("stale_after_sec", 30.0)),
            float(hb.get("restart_after_sec", 90.0)),
            **kwargs,
        )

    def _path(self, name: str) -> Path:
        return self.heartbeat_dir / f"{name}.beat"

    def record_beat(self, name: str, when: float | None = None) -> float:
        stamp = self._clock() if when is None else float(when)
        self.heartbeat_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp_path = path.with_suffix(".beat.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(f"{stamp:.3f}\n")
        os.replace(tmp_path, path)
        return stamp

    def last_beat(self, name: str) -> float | None:
        try:
            raw = self._path(name).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            value = float(raw)
        except ValueError:
            return None
        if math.isnan(value):
            return None
        return value

    def age(self, name: str) -> float:
        """Seconds since the last beat; missing or unreadable beats are infinitely old."""
        last = self.last_beat(name)
        if last is None:
            return math.inf
        return max(0.0, self._clock() - last)

    def is_stale(self, name: str, max_age: float | None = None) -> bool:
        limit = self.stale_after if max_age is None else float(max_age)
        return self.age(name) > limit

    def observe(self, name: str, info: PathInfo | None) -> bool:
        """Record a beat when the media server shows the path moving data."""
        if info is None or not info.ready:
            return False
        previous = self._bytes.get(name)
        self._bytes[name] = info.bytes_received
        if previous is not None and info.bytes_received <= previous:
            return False
        self.record_beat(name)
        return True

    def evaluate(self, name: str) -> HeartbeatStale | None:
        age = self.age(name)
        if age <= self.stale_after:
            return None
        return HeartbeatStale(name=name, age=age, restart_due=age > self.restart_after)

    def check(self, names: Iterable[str]) -> List[HeartbeatStale]:
        signals = []
        for name in names:
            signal = self.evaluate(name)
            if signal is not None:
                signals.append(signal)
        return signals

    def forget(self, name: str) -> None:
        self._bytes.pop(name, None)
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            pass


__all__ = ["HeartbeatMonitor", "HeartbeatStale"]
