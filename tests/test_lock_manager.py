from __future__ import annotations

import fcntl
import json
import os
import threading

import pytest

from micwarden.errors import LockContentionError
from micwarden.lock_manager import LockManager, read_holder


def test_acquire_records_holder_and_release_removes_file(tmp_path):
    path = tmp_path / "run" / "micwarden.lock"
    manager = LockManager()

    handle = manager.acquire(path, timeout=0)

    record = read_holder(path)
    assert record["pid"] == os.getpid()
    assert record["acquired_at"] == pytest.approx(handle.acquired_at)
    manager.release(handle)
    handle.release()
    assert not path.exists()
    assert LockManager.read_holder(path) is None
    assert handle.held is False


def test_second_acquire_times_out_with_holder_pid(tmp_path):
    path = tmp_path / "micwarden.lock"
    manager = LockManager(poll_interval=0.01)

    with manager.acquire(path, timeout=0):
        with pytest.raises(LockContentionError) as excinfo:
            manager.acquire(path, timeout=0.05)

    assert excinfo.value.holder_pid == os.getpid()
    assert not path.exists()


def test_only_one_of_many_threads_holds_the_lock(tmp_path):
    path = tmp_path / "micwarden.lock"
    manager = LockManager(poll_interval=0.01)
    holders = []
    active = []
    overlap = []
    guard = threading.Lock()

    def worker():
        with manager.acquire(path, timeout=5) as handle:
            with guard:
                active.append(handle)
                if len(active) > 1:
                    overlap.append(len(active))
            holders.append(handle)
            threading.Event().wait(0.01)
            with guard:
                active.remove(handle)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(holders) == 5
    assert overlap == []


def test_stale_lock_from_dead_pid_is_reclaimed(tmp_path):
    path = tmp_path / "micwarden.lock"
    dead_pid = 999_999
    # Simulate a leaked descriptor still holding the kernel lock for a dead owner.
    leaked = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    fcntl.flock(leaked, fcntl.LOCK_EX | fcntl.LOCK_NB)
    os.write(leaked, json.dumps({"pid": dead_pid, "acquired_at": 0}).encode())
    manager = LockManager(is_alive=lambda pid: pid != dead_pid)

    try:
        handle = manager.acquire(path, timeout=0)
        assert read_holder(path)["pid"] == os.getpid()
        handle.release()
    finally:
        os.close(leaked)


def test_holder_still_recording_itself_is_not_reclaimed(tmp_path):
    path = tmp_path / "micwarden.lock"
    dead_pid, new_pid = 999_999, 4242
    # Another supervisor has just locked a file that still names a crashed holder.
    other = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    fcntl.flock(other, fcntl.LOCK_EX | fcntl.LOCK_NB)
    os.write(other, json.dumps({"pid": dead_pid}).encode())
    inode = os.fstat(other).st_ino

    def finish_recording(seconds):
        os.ftruncate(other, 0)
        os.pwrite(other, json.dumps({"pid": new_pid}).encode(), 0)

    manager = LockManager(is_alive=lambda pid: pid != dead_pid, sleep=finish_recording)

    try:
        with pytest.raises(LockContentionError) as excinfo:
            manager.acquire(path, timeout=0)
        assert excinfo.value.holder_pid == new_pid
        assert os.stat(path).st_ino == inode
    finally:
        os.close(other)


def test_acquire_retries_when_file_is_swapped_while_recording(tmp_path, monkeypatch):
    path = tmp_path / "micwarden.lock"
    real_fsync = os.fsync
    swapped = []

    def fsync(fd):
        real_fsync(fd)
        if not swapped:
            swapped.append(fd)
            path.unlink()

    monkeypatch.setattr(os, "fsync", fsync)

    handle = LockManager().acquire(path, timeout=0)

    assert len(swapped) == 1
    assert os.fstat(handle.fd).st_ino == os.stat(path).st_ino
    assert read_holder(path)["pid"] == os.getpid()
    handle.release()


def test_live_holder_is_not_reclaimed(tmp_path):
    path = tmp_path / "micwarden.lock"
    other = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    fcntl.flock(other, fcntl.LOCK_EX | fcntl.LOCK_NB)
    os.write(other, json.dumps({"pid": 4242}).encode())
    manager = LockManager(poll_interval=0.01, is_alive=lambda pid: True)

    try:
        with pytest.raises(LockContentionError) as excinfo:
            manager.acquire(path, timeout=0.03)
        assert excinfo.value.holder_pid == 4242
        assert path.exists()
    finally:
        os.close(other)


def test_release_leaves_foreign_lock_file(tmp_path):
    path = tmp_path / "micwarden.lock"
    handle = LockManager().acquire(path, timeout=0)
    # A reclaimer replaced the file; ours must not delete theirs.
    path.unlink()
    path.write_text(json.dumps({"pid": 4242}), encoding="utf-8")

    handle.release()

    assert read_holder(path) == {"pid": 4242}


def test_read_holder_accepts_bare_pid(tmp_path):
    path = tmp_path / "legacy.lock"
    path.write_text("1234\n", encoding="utf-8")

    assert read_holder(path) == {"pid": 1234}
    assert read_holder(tmp_path / "missing.lock") is None
