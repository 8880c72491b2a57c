"""Debounced sound-subsystem hot-plug notifications from ``udevadm monitor``."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from typing import Callable, Iterable, List

log = logging.getLogger("micwarden.hotplug")

MONITOR_COMMAND = ["udevadm", "monitor", "--udev", "--subsystem-match=sound"]

# "UDEV  [1234.5678] add      /devices/.../sound/card2 (sound)"
_EVENT_LINE = re.compile(r"^UDEV\s+\[[\d.]+\]\s+(?P<action>\w+)\s+(?P<devpath>\S+)\s+\(sound\)")
_ACTIONS = {"add", "remove", "change"}


def parse_event(line: str) -> tuple[str, str] | None:
    match = _EVENT_LINE.match(line.strip())
    if not match or match.group("action") not in _ACTIONS:
        return None
    return match.group("action"), match.group("devpath")


class HotplugWatcher:
    """Background reader that flags when sound devices come or go.

    ``wait()`` returns once an event arrived and the debounce window passed
    without further events, letting the USB bus settle before a rescan.
    """

    def __init__(
        self,
        debounce: float = 2.0,
        command: Iterable[str] = MONITOR_COMMAND,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.debounce = max(0.0, float(debounce))
        self.command = list(command)
        self._clock = clock
        self._event = threading.Event()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._last_event_at: float | None = None
        self._pending: List[tuple[str, str]] = []
        self._proc: subprocess.Popen[str] | None = None
        self._thread: threading.Thread | None = None
        self.available = False

    def start(self) -> bool:
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except (FileNotFoundError, PermissionError) as exc:
            log.warning("udevadm monitor unavailable (%s); relying on periodic rescans", exc)
            self.available = False
            return False
        self.available = True
        self._thread = threading.Thread(target=self._reader, name="micwarden-hotplug", daemon=True)
        self._thread.start()
        log.info("Watching udev sound events")
        return True

    def _reader(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        for line in proc.stdout:
            if self._stop_event.is_set():
                break
            self.feed(line)
        if not self._stop_event.is_set():
            log.warning("udevadm monitor exited; relying on periodic rescans")
            self.available = False

    def feed(self, line: str) -> bool:
        event = parse_event(line)
        if event is None:
            return False
        with self._lock:
            self._pending.append(event)
            self._last_event_at = self._clock()
        log.debug("udev %s %s", *event)
        self._event.set()
        return True

    def wait(self, timeout: float) -> List[tuple[str, str]]:
        """Block up to ``timeout`` seconds; return settled events (possibly none).

        Events still inside the debounce window stay pending for a later call.
        """
        deadline = self._clock() + max(0.0, timeout)
        while not self._stop_event.is_set():
            with self._lock:
                if self._pending:
                    settle = (self._last_event_at or 0.0) + self.debounce - self._clock()
                else:
                    settle = None
                    self._event.clear()
            if settle is not None and settle <= 0:
                return self.drain()
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            if settle is None:
                self._event.wait(remaining)
            else:
                self._stop_event.wait(min(settle, remaining))
        return []

    def drain(self) -> List[tuple[str, str]]:
        with self._lock:
            events, self._pending = self._pending, []
            self._event.clear()
        return events

    def stop(self) -> None:
        self._stop_event.set()
        self._event.set()
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=2.0)
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None


__all__ = ["HotplugWatcher", "parse_event"]
