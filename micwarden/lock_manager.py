"""Single-instance lock for the supervisor built on ``flock(2)``.

The lock file records the holder pid and acquisition time as JSON so other
tools can report who owns it. A lock still held at the kernel level by a pid
that no longer exists (for example a descriptor leaked into an orphan) is
reclaimed by unlinking the file and locking a fresh inode, once the dead pid
has stayed on record for a full poll interval.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict

from .errors import LockContentionError

log = logging.getLogger("micwarden.lock")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_holder(path: Path) -> Dict[str, Any] | None:
    """Return the JSON record of the current holder, or None."""
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except (FileNotFoundError, IsADirectoryError):
        return None
    if not raw:
        return None
    try:
        record = json.loads(raw)
    except json.JSONDecodeError:
        # Older lock files hold a bare pid.
        try:
            return {"pid": int(raw.split()[0])}
        except (IndexError, ValueError):
            return None
    if isinstance(record, dict) and isinstance(record.get("pid"), int):
        return record
    return None


def _holder_pid(path: Path) -> int | None:
    record = read_holder(path)
    return record["pid"] if record else None


def _same_file(fd: int, path: Path) -> bool:
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    held = os.fstat(fd)
    return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)


@dataclass
class LockHandle:
    path: Path
    fd: int | None
    pid: int
    acquired_at: float
    _released: bool = field(default=False, repr=False)

    @property
    def held(self) -> bool:
        return not self._released

    def release(self) -> None:
        """Drop the lock; calling it more than once is harmless."""
        if self._released:
            return
        self._released = True
        fd, self.fd = self.fd, None
        if fd is None:
            return
        try:
            if _holder_pid(self.path) == self.pid and _same_file(fd, self.path):
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        log.debug("Released lock %s", self.path)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class LockManager:
    def __init__(
        self,
        poll_interval: float = 0.1,
        *,
        is_alive: Callable[[int], bool] = pid_alive,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.poll_interval = max(0.01, float(poll_interval))
        self._is_alive = is_alive
        self._clock = clock
        self._sleep = sleep

    def acquire(self, path: Path, timeout: float = 30.0) -> LockHandle:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + max(0.0, float(timeout))
        my_pid = os.getpid()

        while True:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                holder = _holder_pid(path)
                if holder is not None and holder != my_pid and not self._is_alive(holder):
                    if not self._still_stale(path, holder):
                        continue
                    log.warning("Reclaiming stale lock %s from dead pid %s", path, holder)
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if self._clock() >= deadline:
                    raise LockContentionError(str(path), holder)
                self._sleep(self.poll_interval)
                continue

            if not _same_file(fd, path):
                # Another process reclaimed and unlinked the file we opened.
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                continue

            acquired_at = time.time()
            record = json.dumps({"pid": my_pid, "acquired_at": acquired_at})
            try:
                os.ftruncate(fd, 0)
                os.lseek(fd, 0, os.SEEK_SET)
                os.write(fd, (record + "\n").encode("utf-8"))
                os.fsync(fd)
            except OSError:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                raise
            if not _same_file(fd, path):
                # Reclaimed while the previous holder's record was still in place.
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                continue
            log.info("Acquired lock %s (pid %s)", path, my_pid)
            return LockHandle(path=path, fd=fd, pid=my_pid, acquired_at=acquired_at)

    def _still_stale(self, path: Path, holder: int) -> bool:
        """Give a new holder one poll interval to replace ``holder``'s record.

        A live process that has just locked the file still shows the dead pid
        until it writes its own record.
        """
        try:
            before = os.stat(path)
        except FileNotFoundError:
            return False
        self._sleep(self.poll_interval)
        try:
            after = os.stat(path)
        except FileNotFoundError:
            return False
        if (before.st_dev, before.st_ino) != (after.st_dev, after.st_ino):
            return False
        return _holder_pid(path) == holder

    def release(self, handle: LockHandle) -> None:
        handle.release()

    @staticmethod
    def read_holder(path: Path) -> Dict[str, Any] | None:
        return read_holder(path)


__all__ = ["LockHandle", "LockManager", "pid_alive", "read_holder"]
