"""Lifecycle management for per-stream capture processes.

Every capture pipeline runs in its own session (and therefore its own process
group) so a stop reaches ffmpeg and anything it forked. Pids are written to
``<pid_dir>/<name>.pid`` together with the kernel start time of the process;
a later supervisor instance only signals a recorded pid when that start time
still matches, which keeps recycled pids safe.
"""

from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, IO, List, Mapping

from . import config
from .config_generator import StreamEntry
from .errors import InvalidTransitionError, MediaServerError, ProcessSpawnError
from .lock_manager import pid_alive

log = logging.getLogger("micwarden.supervisor")

OPUS_RATES = (8000, 12000, 16000, 24000, 48000)

_CODEC_ARGS: Dict[str, List[str]] = {
    "opus": ["-c:a", "libopus", "-application", "audio"],
    "aac": ["-c:a", "aac"],
    "mp3": ["-c:a", "libmp3lame"],
}


class StreamState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    FAILED = "failed"


_TRANSITIONS: Dict[StreamState, frozenset[StreamState]] = {
    StreamState.STOPPED: frozenset({StreamState.STOPPED, StreamState.STARTING}),
    StreamState.STARTING: frozenset(
        {StreamState.STARTING, StreamState.RUNNING, StreamState.FAILED, StreamState.STOPPED}
    ),
    StreamState.RUNNING: frozenset(
        {
            StreamState.RUNNING,
            StreamState.DEGRADED,
            StreamState.STARTING,
            StreamState.FAILED,
            StreamState.STOPPED,
        }
    ),
    StreamState.DEGRADED: frozenset(
        {
            StreamState.DEGRADED,
            StreamState.RUNNING,
            StreamState.STARTING,
            StreamState.FAILED,
            StreamState.STOPPED,
        }
    ),
    StreamState.FAILED: frozenset({StreamState.FAILED, StreamState.STARTING, StreamState.STOPPED}),
}


def build_capture_command(
    entry: StreamEntry,
    *,
    binary: str = "ffmpeg",
    analyzeduration: int = 5000000,
    probesize: int = 5000000,
) -> List[str]:
    capture = entry.capture
    codec_args = _CODEC_ARGS.get(capture.codec)
    if codec_args is None:
        raise ValueError(f"unsupported codec {capture.codec}")
    cmd = [
        binary,
        "-hide_banner",
        "-loglevel", "warning",
        "-analyzeduration", str(analyzeduration),
        "-probesize", str(probesize),
        "-f", "alsa",
        "-ar", str(capture.sample_rate),
        "-ac", str(capture.channels),
        "-thread_queue_size", str(capture.thread_queue),
        "-i", entry.device_path,
        "-af", "aresample=async=1:first_pts=0",
        *codec_args,
        "-b:a", capture.bitrate,
    ]
    if capture.codec == "opus" and capture.sample_rate not in OPUS_RATES:
        cmd.extend(["-ar", "48000"])
    cmd.extend(["-f", "rtsp", "-rtsp_transport", "tcp", entry.target])
    return cmd


def read_start_ticks(pid: int, proc_root: Path = Path("/proc")) -> int | None:
    """Return the process start time (field 22 of /proc/<pid>/stat)."""
    try:
        text = (Path(proc_root) / str(pid) / "stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    # comm may contain spaces and parentheses; fields resume after the last ")".
    _, _, rest = text.rpartition(")")
    fields = rest.split()
    try:
        return int(fields[19])
    except (IndexError, ValueError):
        return None


@dataclass
class StreamProcess:
    name: str
    entry: StreamEntry
    popen: Any = None
    pid: int | None = None
    start_ticks: int | None = None
    started_at: float = 0.0
    restart_count: int = 0
    consecutive_failures: int = 0
    last_heartbeat: float | None = None
    state: StreamState = StreamState.STOPPED
    reason: str = ""
    next_restart_at: float = 0.0
    exit_code: int | None = None


@dataclass(frozen=True)
class StreamStatus:
    name: str
    state: StreamState
    pid: int | None
    restart_count: int
    reason: str
    uptime: float | None
    last_heartbeat: float | None
    exit_code: int | None
    device: str
    target: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": self.pid,
            "restart_count": self.restart_count,
            "reason": self.reason,
            "uptime": round(self.uptime, 1) if self.uptime is not None else None,
            "last_heartbeat": self.last_heartbeat,
            "exit_code": self.exit_code,
            "device": self.device,
            "target": self.target,
        }


class ProcessSupervisor:
    def __init__(
        self,
        pid_dir: Path,
        log_dir: Path | None = None,
        *,
        media: Any = None,
        binary: str = "ffmpeg",
        analyzeduration: int = 5000000,
        probesize: int = 5000000,
        startup_timeout: float = 30.0,
        stop_timeout: float = 10.0,
        backoff_initial: float = 10.0,
        backoff_max: float = 300.0,
        backoff_multiplier: float = 2.0,
        healthy_run_reset: float = 300.0,
        max_restarts: int = 50,
        log_max_bytes: int = 10 * 1024 * 1024,
        proc_root: Path = Path("/proc"),
        spawner: Callable[..., Any] = subprocess.Popen,
        killpg: Callable[[int, int], None] = os.killpg,
        is_alive: Callable[[int], bool] = pid_alive,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pid_dir = Path(pid_dir)
        self.log_dir = Path(log_dir) if log_dir else None
        self.media = media
        self.binary = binary
        self.analyzeduration = int(analyzeduration)
        self.probesize = int(probesize)
        self.startup_timeout = float(startup_timeout)
        self.stop_timeout = float(stop_timeout)
        self.backoff_initial = float(backoff_initial)
        self.backoff_max = float(backoff_max)
        self.backoff_multiplier = max(1.0, float(backoff_multiplier))
        self.healthy_run_reset = float(healthy_run_reset)
        self.max_restarts = int(max_restarts)
        self.log_max_bytes = int(log_max_bytes)
        self.proc_root = Path(proc_root)
        self._spawner = spawner
        self._killpg = killpg
        self._is_alive = is_alive
        self._clock = clock
        self._sleep = sleep
        self._streams: Dict[str, StreamProcess] = {}

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None, **kwargs: Any) -> "ProcessSupervisor":
        cfg = cfg if cfg is not None else config.get_cfg()
        paths = cfg.get("paths", {})
        capture = cfg.get("capture", {})
        sup = cfg.get("supervisor", {})
        options: Dict[str, Any] = {
            "binary": str(capture.get("binary", "ffmpeg")),
            "analyzeduration": int(capture.get("analyzeduration", 5000000)),
            "probesize": int(capture.get("probesize", 5000000)),
            "log_max_bytes": int(capture.get("log_max_bytes", 10 * 1024 * 1024)),
            "startup_timeout": float(sup.get("startup_timeout_sec", 30.0)),
            "stop_timeout": float(sup.get("stop_timeout_sec", 10.0)),
            "backoff_initial": float(sup.get("backoff_initial_sec", 10.0)),
            "backoff_max": float(sup.get("backoff_max_sec", 300.0)),
            "backoff_multiplier": float(sup.get("backoff_multiplier", 2.0)),
            "healthy_run_reset": float(sup.get("healthy_run_reset_sec", 300.0)),
            "max_restarts": int(sup.get("max_restarts", 50)),
            "proc_root": Path(paths.get("proc_root", "/proc")),
        }
        options.update(kwargs)
        return cls(
            Path(paths.get("pid_dir", "/run/micwarden/streams")),
            Path(paths["log_dir"]) if paths.get("log_dir") else None,
            **options,
        )

    # --- bookkeeping -------------------------------------------------
    def names(self) -> List[str]:
        return sorted(self._streams)

    def get(self, name: str) -> StreamProcess | None:
        return self._streams.get(name)

    def state(self, name: str) -> StreamState:
        record = self._streams.get(name)
        return record.state if record else StreamState.STOPPED

    def _transition(self, record: StreamProcess, new_state: StreamState, reason: str = "") -> None:
        if new_state not in _TRANSITIONS[record.state]:
            raise InvalidTransitionError(
                f"{record.name}: {record.state.value} -> {new_state.value} not allowed"
            )
        if new_state is not record.state:
            log.info(
                "Stream %s: %s -> %s%s",
                record.name,
                record.state.value,
                new_state.value,
                f" ({reason})" if reason else "",
            )
        record.state = new_state
        record.reason = reason

    def is_alive(self, name: str) -> bool:
        record = self._streams.get(name)
        if record is None or record.popen is None:
            return False
        code = record.popen.poll()
        if code is not None:
            record.exit_code = code
            return False
        return True

    def _pid_path(self, name: str) -> Path:
        return self.pid_dir / f"{name}.pid"

    def _write_pid_file(self, record: StreamProcess) -> None:
        self.pid_dir.mkdir(parents=True, exist_ok=True)
        path = self._pid_path(record.name)
        tmp_path = path.with_suffix(".pid.tmp")
        ticks = "" if record.start_ticks is None else str(record.start_ticks)
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(f"{record.pid}\n{ticks}\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def _remove_pid_file(self, name: str) -> None:
        try:
            self._pid_path(name).unlink()
        except FileNotFoundError:
            pass

    def _open_log(self, name: str) -> IO[bytes] | int:
        if self.log_dir is None:
            return subprocess.DEVNULL
        path = self.log_dir / f"{name}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            if path.exists() and path.stat().st_size > self.log_max_bytes:
                os.replace(path, path.with_suffix(".log.old"))
            return path.open("ab")
        except OSError as exc:
            log.warning("Capture log for %s unavailable (%s); discarding stderr", name, exc)
            return subprocess.DEVNULL

    # --- lifecycle ---------------------------------------------------
    def _spawn(self, record: StreamProcess, reason: str) -> None:
        self._transition(record, StreamState.STARTING, reason)
        cmd = build_capture_command(
            record.entry,
            binary=self.binary,
            analyzeduration=self.analyzeduration,
            probesize=self.probesize,
        )
        stderr = self._open_log(record.name)
        try:
            popen = self._spawner(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            record.popen = None
            record.pid = None
            record.consecutive_failures += 1
            record.next_restart_at = self._clock() + self._backoff_delay(record)
            self._transition(record, StreamState.FAILED, "spawn_failed")
            raise ProcessSpawnError(record.name, str(exc)) from exc
        finally:
            if not isinstance(stderr, int):
                stderr.close()

        record.popen = popen
        record.pid = popen.pid
        record.start_ticks = read_start_ticks(popen.pid, self.proc_root)
        record.started_at = self._clock()
        record.exit_code = None
        try:
            self._write_pid_file(record)
        except OSError as exc:
            log.warning("Could not write pid file for %s: %s", record.name, exc)
        log.info("Started %s (pid %s) from %s", record.name, record.pid, record.entry.device_path)

    def ensure(self, name: str, entry: StreamEntry) -> StreamStatus:
        """Make sure a capture process for ``entry`` is running under ``name``."""
        record = self._streams.get(name)
        if record is not None and self.is_alive(name):
            if record.entry == entry:
                return self._status_for(record)
            log.info("Stream %s changed (%s); restarting", name, entry.device_path)
            self._terminate(record)
            record.entry = entry
            self._spawn(record, "config_changed")
            return self._status_for(record)

        if record is None:
            record = StreamProcess(name=name, entry=entry)
            self._streams[name] = record
        else:
            record.entry = entry
        self._spawn(record, "ensure")
        return self._status_for(record)

    def _terminate(self, record: StreamProcess) -> None:
        popen = record.popen
        if popen is not None and popen.poll() is None:
            pid = popen.pid
            try:
                self._killpg(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                popen.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                log.warning("Stream %s (pid %s) ignored SIGTERM; sending SIGKILL", record.name, pid)
                try:
                    self._killpg(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                try:
                    popen.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    log.error("Stream %s (pid %s) did not exit after SIGKILL", record.name, pid)
        if popen is not None:
            record.exit_code = popen.poll()
        record.popen = None
        record.pid = None
        record.start_ticks = None
        self._remove_pid_file(record.name)

    def stop(self, name: str, reason: str = "stopped", *, forget: bool = True) -> StreamStatus | None:
        """Terminate the stream's process group; unknown names are a no-op."""
        record = self._streams.get(name)
        if record is None:
            return None
        self._terminate(record)
        self._transition(record, StreamState.STOPPED, reason)
        status = self._status_for(record)
        if forget:
            del self._streams[name]
        return status

    def _backoff_delay(self, record: StreamProcess) -> float:
        exponent = max(0, record.consecutive_failures - 1)
        return min(self.backoff_initial * (self.backoff_multiplier ** exponent), self.backoff_max)

    def _maybe_reset_failures(self, record: StreamProcess, now: float) -> None:
        if (
            record.consecutive_failures
            and record.state in (StreamState.RUNNING, StreamState.DEGRADED)
            and record.started_at
            and now - record.started_at >= self.healthy_run_reset
        ):
            log.debug("Stream %s ran healthy; resetting backoff", record.name)
            record.consecutive_failures = 0

    def restart_due(self, name: str) -> bool:
        record = self._streams.get(name)
        return record is not None and self._clock() >= record.next_restart_at

    def retry_due(self, name: str) -> bool:
        record = self._streams.get(name)
        return (
            record is not None
            and record.state is StreamState.FAILED
            and record.reason != "restart_limit"
            and self._clock() >= record.next_restart_at
        )

    def restart(
        self,
        name: str,
        reason: str = "restart",
        *,
        force: bool = False,
        entry: StreamEntry | None = None,
    ) -> bool:
        """Stop and respawn ``name``; False when refused by backoff or the restart limit."""
        record = self._streams.get(name)
        if record is None:
            return False
        if entry is not None:
            record.entry = entry
        now = self._clock()
        if force and record.state is StreamState.FAILED and record.reason == "restart_limit":
            record.restart_count = 0
            record.consecutive_failures = 0
        if not force and now < record.next_restart_at:
            log.debug("Restart of %s deferred by backoff", name)
            return False
        if not force and record.restart_count >= self.max_restarts:
            self._terminate(record)
            self._transition(record, StreamState.FAILED, "restart_limit")
            log.error("Stream %s exceeded %d restarts; giving up", name, self.max_restarts)
            return False

        self._maybe_reset_failures(record, now)
        self._terminate(record)
        record.restart_count += 1
        record.consecutive_failures += 1
        record.next_restart_at = now + self._backoff_delay(record)
        log.warning(
            "Restarting %s (%s); attempt %d, next restart allowed in %.0fs",
            name,
            reason,
            record.restart_count,
            record.next_restart_at - now,
        )
        self._spawn(record, reason)
        return True

    def _fail(self, record: StreamProcess, reason: str) -> None:
        self._terminate(record)
        record.consecutive_failures += 1
        record.next_restart_at = self._clock() + self._backoff_delay(record)
        self._transition(record, StreamState.FAILED, reason)

    def poll_startup(self, name: str, ready: bool | None = None) -> StreamState:
        """Advance a STARTING stream to RUNNING or FAILED."""
        record = self._streams.get(name)
        if record is None:
            return StreamState.STOPPED
        if record.state is not StreamState.STARTING:
            return record.state
        if not self.is_alive(name):
            self._fail(record, "exited_during_startup")
            return record.state
        if ready is None:
            ready = self._media_ready(name)
        if ready:
            self._transition(record, StreamState.RUNNING)
        elif self._clock() - record.started_at > self.startup_timeout:
            self._fail(record, "startup_timeout")
        return record.state

    def _media_ready(self, name: str) -> bool:
        if self.media is None:
            return True
        try:
            return bool(self.media.is_ready(name))
        except MediaServerError as exc:
            log.debug("Readiness check for %s failed: %s", name, exc)
            return False

    def mark_degraded(self, name: str, reason: str) -> None:
        record = self._streams.get(name)
        if record is not None and record.state in (StreamState.RUNNING, StreamState.DEGRADED):
            self._transition(record, StreamState.DEGRADED, reason)

    def mark_recovered(self, name: str) -> None:
        record = self._streams.get(name)
        if record is not None and record.state is StreamState.DEGRADED:
            self._transition(record, StreamState.RUNNING)

    def note_heartbeat(self, name: str, when: float) -> None:
        record = self._streams.get(name)
        if record is None:
            return
        record.last_heartbeat = when
        self._maybe_reset_failures(record, self._clock())

    def _status_for(self, record: StreamProcess) -> StreamStatus:
        uptime = None
        if record.popen is not None and record.state in (
            StreamState.STARTING,
            StreamState.RUNNING,
            StreamState.DEGRADED,
        ):
            uptime = max(0.0, self._clock() - record.started_at)
        return StreamStatus(
            name=record.name,
            state=record.state,
            pid=record.pid,
            restart_count=record.restart_count,
            reason=record.reason,
            uptime=uptime,
            last_heartbeat=record.last_heartbeat,
            exit_code=record.exit_code,
            device=record.entry.device_path,
            target=record.entry.target,
        )

    def status(self, name: str | None = None) -> List[StreamStatus]:
        if name is not None:
            record = self._streams.get(name)
            return [self._status_for(record)] if record else []
        return [self._status_for(self._streams[key]) for key in sorted(self._streams)]

    def stop_all(self, reason: str = "shutdown") -> None:
        for name in list(self._streams):
            try:
                self.stop(name, reason, forget=False)
            except Exception:  # noqa: BLE001 - keep stopping the remaining streams
                log.exception("Failed to stop %s during %s", name, reason)

    def reap_stale_pidfiles(self) -> List[int]:
        """Terminate capture processes left behind by a previous instance."""
        reaped: List[int] = []
        try:
            pid_files = sorted(self.pid_dir.glob("*.pid"))
        except OSError:
            return reaped
        for path in pid_files:
            if path.stem in self._streams:
                continue
            try:
                lines = path.read_text(encoding="utf-8").split()
                pid = int(lines[0])
                ticks = int(lines[1]) if len(lines) > 1 else None
            except (OSError, ValueError, IndexError):
                log.warning("Removing unreadable pid file %s", path)
                path.unlink(missing_ok=True)
                continue
            if (
                ticks is not None
                and self._is_alive(pid)
                and read_start_ticks(pid, self.proc_root) == ticks
            ):
                log.warning("Stopping orphaned capture process %s (pid %s)", path.stem, pid)
                self._terminate_orphan(pid)
                reaped.append(pid)
            path.unlink(missing_ok=True)
        return reaped

    def _terminate_orphan(self, pid: int) -> None:
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                self._killpg(pid, sig)
            except ProcessLookupError:
                return
            deadline = self._clock() + self.stop_timeout
            while self._clock() < deadline:
                if not self._is_alive(pid):
                    return
                self._sleep(0.1)


__all__ = [
    "ProcessSupervisor",
    "StreamProcess",
    "StreamState",
    "StreamStatus",
    "build_capture_command",
    "read_start_ticks",
]
