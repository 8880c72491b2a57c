"""Reconciliation loop tying devices, snapshot, processes and heartbeats together."""

from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from . import config
from .config import ConfigPersistenceError
from .config_generator import ConfigGenerator, ConfigSnapshot
from .device_registry import DeviceRegistry
from .errors import InvalidConfigError, LockContentionError, MediaServerError, ProcessSpawnError
from .heartbeat import HeartbeatMonitor
from .hotplug import HotplugWatcher
from .lock_manager import LockHandle, LockManager
from .media_server import MediaServerClient, PathInfo
from .process_supervisor import ProcessSupervisor, StreamState

log = logging.getLogger("micwarden.orchestrator")

COMMANDS = ("start_all", "stop", "restart", "status")


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    name: str | None = None
    state: str | None = None
    reason: str = ""
    streams: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "reason": self.reason}
        if self.name is not None:
            payload["name"] = self.name
        if self.state is not None:
            payload["state"] = self.state
        if self.streams:
            payload["streams"] = list(self.streams)
        return payload


@dataclass
class ReconcileReport:
    desired: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    snapshot_changed: bool = False


class Orchestrator:
    def __init__(
        self,
        registry: DeviceRegistry,
        generator: ConfigGenerator,
        supervisor: ProcessSupervisor,
        heartbeat: HeartbeatMonitor,
        *,
        media: MediaServerClient | None = None,
        lock_manager: LockManager | None = None,
        lock_path: Path | None = None,
        lock_timeout: float = 30.0,
        reconcile_interval: float = 10.0,
        check_interval: float = 5.0,
        max_systemic_failures: int = 3,
        register_paths: bool = False,
        hotplug: HotplugWatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.generator = generator
        self.supervisor = supervisor
        self.heartbeat = heartbeat
        self.media = media
        self.lock_manager = lock_manager or LockManager()
        self.lock_path = Path(lock_path) if lock_path else None
        self.lock_timeout = float(lock_timeout)
        self.reconcile_interval = max(0.1, float(reconcile_interval))
        self.check_interval = max(0.1, float(check_interval))
        self.max_systemic_failures = max(1, int(max_systemic_failures))
        self.register_paths = register_paths
        self.hotplug = hotplug
        self._clock = clock
        self._snapshot: ConfigSnapshot | None = None
        self._disabled: set[str] = set()
        self._registered: set[str] = set()
        self._commands: "queue.Queue[tuple[str, str | None, Future]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._force_reconcile = False
        self._lock_handle: LockHandle | None = None
        self._shut_down = False

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None) -> "Orchestrator":
        cfg = cfg if cfg is not None else config.get_cfg()
        paths = cfg.get("paths", {})
        sup = cfg.get("supervisor", {})
        media = MediaServerClient.from_cfg(cfg)
        return cls(
            DeviceRegistry.from_cfg(cfg),
            ConfigGenerator.from_cfg(cfg),
            ProcessSupervisor.from_cfg(cfg, media=media),
            HeartbeatMonitor.from_cfg(cfg),
            media=media,
            lock_path=Path(paths.get("lock_file", "/run/micwarden/micwarden.lock")),
            lock_timeout=float(cfg.get("lock", {}).get("timeout_sec", 30.0)),
            reconcile_interval=float(sup.get("reconcile_interval_sec", 10.0)),
            check_interval=float(cfg.get("heartbeat", {}).get("check_interval_sec", 5.0)),
            max_systemic_failures=int(sup.get("max_systemic_failures", 3)),
            register_paths=bool(cfg.get("media_server", {}).get("register_paths", False)),
            hotplug=HotplugWatcher(float(sup.get("hotplug_debounce_sec", 2.0))),
        )

    @property
    def snapshot(self) -> ConfigSnapshot | None:
        return self._snapshot

    # --- reconciliation ----------------------------------------------
    def reconcile(self) -> ReconcileReport:
        """Converge running processes onto the devices currently plugged in.

        Per-device and per-stream failures are logged and skipped; snapshot
        validation and write failures propagate to the caller.
        """
        report = ReconcileReport()
        devices = self.registry.scan()
        for error in self.registry.last_errors:
            report.errors.append(f"{error.card}: {error.detail}")

        named = {}
        for device in sorted(devices, key=lambda d: d.topology_key):
            try:
                name = self.registry.resolve_name(device)
            except ValueError as exc:
                log.error("Cannot name device at %s: %s", device.topology_key, exc)
                report.errors.append(f"{device.topology_key}: {exc}")
                continue
            if name in named:
                log.error(
                    "Devices at %s and %s both resolve to %s; skipping the second",
                    named[name].topology_key,
                    device.topology_key,
                    name,
                )
                report.errors.append(f"{device.topology_key}: duplicate name {name}")
                continue
            try:
                self.registry.persist(device, name)
            except (ValueError, ConfigPersistenceError, OSError) as exc:
                log.error("Failed to persist %s for %s: %s", name, device.topology_key, exc)
                report.errors.append(f"{name}: {exc}")
            named[name] = device

        snapshot = self.generator.render(named)
        report.snapshot_changed = self.generator.apply(snapshot)
        self._snapshot = snapshot
        report.desired = snapshot.names()
        desired = set(report.desired)

        for name in self.supervisor.names():
            if name not in desired:
                self.supervisor.stop(name, "device_removed")
                self.heartbeat.forget(name)
                self._disabled.discard(name)
                report.stopped.append(name)

        for entry in snapshot.entries:
            name = entry.name
            if name in self._disabled:
                continue
            if self.register_paths and self.media is not None and name not in self._registered:
                try:
                    self.media.add_path(name)
                    self._registered.add(name)
                except MediaServerError as exc:
                    log.warning("Path registration for %s failed: %s", name, exc)
            record = self.supervisor.get(name)
            try:
                if record is None or record.state is StreamState.STOPPED:
                    self.supervisor.ensure(name, entry)
                    self.heartbeat.forget(name)
                    report.started.append(name)
                elif record.state is StreamState.FAILED:
                    if self.supervisor.retry_due(name):
                        self.supervisor.restart(name, "retry", entry=entry)
                        self.heartbeat.forget(name)
                        report.started.append(name)
                elif record.entry != entry:
                    self.supervisor.ensure(name, entry)
                    self.heartbeat.forget(name)
                    report.started.append(name)
            except ProcessSpawnError as exc:
                log.error("Stream %s (%s) failed to start: %s", name, entry.topology_key, exc.detail)
                report.errors.append(f"{name}: spawn_failed")

        if report.stopped or report.started:
            log.info(
                "Reconciled %d stream(s): started %s, stopped %s",
                len(desired),
                report.started or "-",
                report.stopped or "-",
            )
        return report

    def _collect_evidence(self) -> Dict[str, PathInfo] | None:
        if self.media is None:
            return None
        try:
            return self.media.list_paths()
        except MediaServerError as exc:
            log.debug("Media server evidence unavailable: %s", exc)
            return None

    def _restart(self, name: str, reason: str) -> None:
        try:
            restarted = self.supervisor.restart(name, reason)
        except ProcessSpawnError as exc:
            log.error("Stream %s restart failed: %s", name, exc.detail)
            return
        if restarted:
            self.heartbeat.forget(name)

    def check_health(self) -> None:
        evidence = self._collect_evidence()
        for name in self.supervisor.names():
            record = self.supervisor.get(name)
            if record is None:
                continue
            info = evidence.get(name) if evidence is not None else None

            if record.state is StreamState.STARTING:
                ready = info.ready if info is not None else None
                if self.supervisor.poll_startup(name, ready) is StreamState.RUNNING:
                    self.heartbeat.observe(name, info)
                    stamp = self.heartbeat.record_beat(name)
                    self.supervisor.note_heartbeat(name, stamp)
                continue
            if record.state not in (StreamState.RUNNING, StreamState.DEGRADED):
                continue

            if not self.supervisor.is_alive(name):
                self.supervisor.mark_degraded(name, "process_exited")
                if self.supervisor.restart_due(name):
                    self._restart(name, "process_exited")
                continue

            if evidence is not None:
                if self.heartbeat.observe(name, info):
                    self.supervisor.note_heartbeat(name, self.heartbeat.last_beat(name) or 0.0)
            elif self.media is None:
                # Without a media server the live process is the only evidence.
                self.supervisor.note_heartbeat(name, self.heartbeat.record_beat(name))

            stale = self.heartbeat.evaluate(name)
            if stale is None:
                self.supervisor.mark_recovered(name)
                continue
            if stale.restart_due and self.supervisor.restart_due(name):
                log.warning("Stream %s silent for %.0fs; restarting", name, stale.age)
                self._restart(name, "heartbeat_stale")
            else:
                self.supervisor.mark_degraded(name, "heartbeat_stale")

    # --- commands ----------------------------------------------------
    def _known(self, name: str) -> bool:
        if self.supervisor.get(name) is not None:
            return True
        return self._snapshot is not None and self._snapshot.get(name) is not None

    def _stream_dicts(self, name: str | None = None) -> List[Dict[str, Any]]:
        streams = []
        for status in self.supervisor.status(name):
            payload = status.as_dict()
            age = self.heartbeat.age(status.name)
            payload["heartbeat_age"] = None if age == float("inf") else round(age, 1)
            payload["enabled"] = status.name not in self._disabled
            streams.append(payload)
        return streams

    def start_all(self) -> CommandResult:
        self._disabled.clear()
        for name in self.supervisor.names():
            record = self.supervisor.get(name)
            if record is not None and record.state is StreamState.FAILED:
                try:
                    self.supervisor.restart(name, "operator", force=True)
                except ProcessSpawnError as exc:
                    log.error("Stream %s failed to start: %s", name, exc.detail)
        report = self.reconcile()
        return CommandResult(
            ok=not report.errors,
            reason=";".join(report.errors),
            streams=self._stream_dicts(),
        )

    def stop(self, name: str) -> CommandResult:
        if not self._known(name):
            return CommandResult(ok=False, name=name, reason="unknown_stream")
        self._disabled.add(name)
        status = self.supervisor.stop(name, "operator_stop", forget=False)
        self.heartbeat.forget(name)
        return CommandResult(
            ok=True,
            name=name,
            state=StreamState.STOPPED.value,
            reason=status.reason if status else "operator_stop",
        )

    def restart(self, name: str) -> CommandResult:
        if not self._known(name):
            return CommandResult(ok=False, name=name, reason="unknown_stream")
        self._disabled.discard(name)
        try:
            if self.supervisor.get(name) is None:
                entry = self._snapshot.get(name) if self._snapshot else None
                if entry is None:
                    return CommandResult(ok=False, name=name, reason="unknown_stream")
                self.supervisor.ensure(name, entry)
            else:
                self.supervisor.restart(name, "operator", force=True)
        except ProcessSpawnError:
            return CommandResult(ok=False, name=name, state=StreamState.FAILED.value, reason="spawn_failed")
        self.heartbeat.forget(name)
        return CommandResult(ok=True, name=name, state=self.supervisor.state(name).value, reason="restarted")

    def status(self, name: str | None = None) -> CommandResult:
        if name is not None and not self._known(name):
            return CommandResult(ok=False, name=name, reason="unknown_stream")
        streams = self._stream_dicts(name)
        if name is not None and not streams:
            state = StreamState.STOPPED.value
            streams = [{"name": name, "state": state, "enabled": name not in self._disabled}]
        return CommandResult(ok=True, name=name, streams=streams)

    def execute(self, command: str, name: str | None = None) -> CommandResult:
        if command == "start_all":
            return self.start_all()
        if command == "status":
            return self.status(name)
        if command not in COMMANDS or not name:
            return CommandResult(ok=False, name=name, reason="bad_command")
        if command == "stop":
            return self.stop(name)
        return self.restart(name)

    def submit(self, command: str, name: str | None = None) -> "Future[CommandResult]":
        """Queue a command for the loop thread; safe to call from any thread."""
        future: "Future[CommandResult]" = Future()
        if self._shut_down:
            future.set_result(CommandResult(ok=False, name=name, reason="shutting_down"))
            return future
        self._commands.put((command, name, future))
        return future

    def process_commands(self) -> int:
        handled = 0
        while True:
            try:
                command, name, future = self._commands.get_nowait()
            except queue.Empty:
                return handled
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self.execute(command, name))
            except Exception as exc:  # noqa: BLE001 - surfaced to the caller
                log.exception("Command %s %s failed", command, name or "")
                future.set_exception(exc)
            handled += 1

    # --- service loop ------------------------------------------------
    def request_stop(self) -> None:
        self._stop_event.set()

    def request_reconcile(self) -> None:
        self._force_reconcile = True

    def _handle_signal(self, signum: int, _: object) -> None:
        if signum == getattr(signal, "SIGHUP", None):
            log.info("Received SIGHUP; rescanning devices")
            self.request_reconcile()
            return
        log.info("Received signal %s; shutting down", signum)
        self.request_stop()

    def _install_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            try:
                signal.signal(sig, self._handle_signal)
            except ValueError:
                # Only the main thread may install handlers.
                log.debug("Signal handlers not installed outside the main thread")
                return

    def run(
        self,
        stop_event: threading.Event | None = None,
        on_locked: Callable[[], None] | None = None,
    ) -> int:
        """Run until stopped; returns the process exit code.

        ``on_locked`` is called once the instance lock is held, before the
        first reconcile.
        """
        if stop_event is not None:
            self._stop_event = stop_event
        if self.lock_path is None:
            raise ValueError("lock_path is required to run the service loop")
        try:
            self._lock_handle = self.lock_manager.acquire(self.lock_path, self.lock_timeout)
        except LockContentionError as exc:
            log.info("Another supervisor (pid %s) holds %s; exiting", exc.holder_pid, exc.path)
            return 0

        self._shut_down = False
        try:
            self._install_signal_handlers()
            reaped = self.supervisor.reap_stale_pidfiles()
            if reaped:
                log.info("Stopped %d orphaned capture process(es)", len(reaped))
            if self.hotplug is not None:
                self.hotplug.start()
            if on_locked is not None:
                on_locked()
            return self._loop()
        finally:
            self.shutdown()

    def _loop(self) -> int:
        failures = 0
        next_reconcile = self._clock()
        next_check = self._clock() + self.check_interval
        while not self._stop_event.is_set():
            now = self._clock()
            if self._force_reconcile or now >= next_reconcile:
                self._force_reconcile = False
                try:
                    self.reconcile()
                except (InvalidConfigError, ConfigPersistenceError, OSError) as exc:
                    failures += 1
                    log.error("Reconcile failed (%d/%d): %s", failures, self.max_systemic_failures, exc)
                    if failures >= self.max_systemic_failures:
                        log.critical("Giving up after %d consecutive failures", failures)
                        return 1
                else:
                    failures = 0
                next_reconcile = self._clock() + self.reconcile_interval
            if now >= next_check:
                self.check_health()
                next_check = self._clock() + self.check_interval
            self.process_commands()

            timeout = min(0.5, max(0.0, min(next_reconcile, next_check) - self._clock()))
            if self.hotplug is not None and self.hotplug.available:
                events = self.hotplug.wait(timeout)
                if events:
                    log.info("Hot-plug: %s", ", ".join(f"{action} {path}" for action, path in events))
                    self._force_reconcile = True
            else:
                self._stop_event.wait(timeout)
        return 0

    def shutdown(self) -> None:
        """Stop every capture process and release the lock; safe to repeat."""
        if self._shut_down:
            return
        self._shut_down = True
        try:
            if self.hotplug is not None:
                self.hotplug.stop()
        finally:
            try:
                self.supervisor.stop_all("shutdown")
                while True:
                    try:
                        _, name, future = self._commands.get_nowait()
                    except queue.Empty:
                        break
                    future.set_result(CommandResult(ok=False, name=name, reason="shutting_down"))
            finally:
                if self._lock_handle is not None:
                    self._lock_handle.release()
                    self._lock_handle = None
        log.info("Supervisor stopped")


__all__ = ["CommandResult", "Orchestrator", "ReconcileReport"]
