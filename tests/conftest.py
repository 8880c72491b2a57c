from __future__ import annotations

import itertools
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, List

import pytest

from micwarden import config as config_module


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep host configuration files and cached settings out of every test."""
    monkeypatch.setenv("MICWARDEN_CONFIG", str(tmp_path / "absent-config.yaml"))
    monkeypatch.chdir(tmp_path)
    for key in ("DEV", "MEDIAMTX_HOST", "MICWARDEN_STALE_AFTER", "MICWARDEN_RESTART_AFTER"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePopen:
    def __init__(self, table: "FakeProcessTable", pid: int, cmd: List[str], kwargs: Dict[str, Any]) -> None:
        self.table = table
        self.pid = pid
        self.args = cmd
        self.kwargs = kwargs
        self.returncode: int | None = None
        self.ignore_term = False
        self.signals: List[int] = []

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode

    def exit(self, code: int = 1) -> None:
        self.returncode = code


class FakeProcessTable:
    """Stands in for Popen and killpg so lifecycle tests never fork."""

    def __init__(self) -> None:
        self._pids = itertools.count(4000)
        self.spawned: List[FakePopen] = []
        self.killed: List[tuple[int, int]] = []
        self.fail_next_spawn: OSError | None = None

    def spawn(self, cmd: List[str], **kwargs: Any) -> FakePopen:
        if self.fail_next_spawn is not None:
            error, self.fail_next_spawn = self.fail_next_spawn, None
            raise error
        proc = FakePopen(self, next(self._pids), list(cmd), kwargs)
        self.spawned.append(proc)
        return proc

    def killpg(self, pgid: int, sig: int) -> None:
        self.killed.append((pgid, sig))
        for proc in self.spawned:
            if proc.pid != pgid:
                continue
            if proc.returncode is not None:
                raise ProcessLookupError(pgid)
            proc.signals.append(sig)
            if sig == signal.SIGKILL or not proc.ignore_term:
                proc.returncode = -sig
            return
        raise ProcessLookupError(pgid)

    def latest(self) -> FakePopen:
        return self.spawned[-1]

    def alive(self) -> List[FakePopen]:
        return [proc for proc in self.spawned if proc.returncode is None]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def processes() -> FakeProcessTable:
    return FakeProcessTable()


STEREO_CAPTURE = """\
USB Audio at usb-0000:01:00.0-1.2, full speed : USB Audio

Capture:
  Status: Stop
  Interface 1
    Altset 1
    Format: S16_LE
    Channels: 2
    Endpoint: 0x82 (2 IN) (ASYNC)
    Rates: 44100, 48000
"""


class UsbTree:
    """Builds fake /proc/asound and /sys trees for device scanning."""

    def __init__(self, root: Path) -> None:
        self.proc_root = root / "proc"
        self.sysfs_root = root / "sys"
        (self.proc_root / "asound").mkdir(parents=True)
        (self.sysfs_root / "class" / "sound").mkdir(parents=True)

    def add_card(
        self,
        index: int,
        port: str | None,
        usbid: str = "0d8c:0014",
        *,
        stream0: str = STEREO_CAPTURE,
        product: str = "USB Audio Device",
        card_id: str = "Device",
    ) -> None:
        card_dir = self.proc_root / "asound" / f"card{index}"
        card_dir.mkdir(parents=True, exist_ok=True)
        (card_dir / "usbid").write_text(f"{usbid}\n")
        (card_dir / "id").write_text(f"{card_id}\n")
        if stream0:
            (card_dir / "stream0").write_text(stream0)
        if port is None:
            return
        bus = port.split("-", 1)[0]
        usb_dir = self.sysfs_root / "devices" / "platform" / f"usb{bus}" / port
        interface = usb_dir / f"{port}:1.0"
        interface.mkdir(parents=True, exist_ok=True)
        (usb_dir / "product").write_text(f"{product}\n")
        link_dir = self.sysfs_root / "class" / "sound" / f"card{index}"
        link_dir.mkdir(parents=True, exist_ok=True)
        (link_dir / "device").symlink_to(interface)

    def remove_card(self, index: int) -> None:
        for path in (
            self.proc_root / "asound" / f"card{index}",
            self.sysfs_root / "class" / "sound" / f"card{index}",
        ):
            for child in sorted(path.rglob("*"), reverse=True):
                if child.is_dir() and not child.is_symlink():
                    child.rmdir()
                else:
                    child.unlink()
            path.rmdir()


@pytest.fixture
def usb_tree(tmp_path) -> UsbTree:
    return UsbTree(tmp_path / "host")
