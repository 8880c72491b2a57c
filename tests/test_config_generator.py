from __future__ import annotations

import os
import threading

import pytest

from micwarden import config_generator
from micwarden.audio_devices import Capabilities, Device
from micwarden.config_generator import (
    CaptureSpec,
    ConfigGenerator,
    StreamEntry,
    build_snapshot,
    clamp_capture,
    read_snapshot,
)
from micwarden.errors import InvalidConfigError


def _device(port: str, card: int, caps: Capabilities = Capabilities()) -> Device:
    return Device(topology_key=port, vendor_id="0d8c", product_id="0014", card_index=card, capabilities=caps)


def _generator(tmp_path, **kwargs) -> ConfigGenerator:
    return ConfigGenerator(tmp_path / "etc" / "streams.yaml", **kwargs)


def test_render_is_deterministic_and_sorted(tmp_path):
    generator = _generator(tmp_path)
    devices = {"mic-portb": _device("portB", 2), "mic-porta": _device("portA", 1)}

    first = generator.render(devices)
    second = generator.render(dict(reversed(list(devices.items()))))

    assert first.content_hash == second.content_hash
    assert first.names() == ["mic-porta", "mic-portb"]
    entry = first.get("mic-porta")
    assert entry.device_path == "plughw:1,0"
    assert entry.target == "rtsp://localhost:8554/mic-porta"


def test_overrides_and_capability_clamping(tmp_path):
    generator = _generator(
        tmp_path,
        capture_defaults={"sample_rate": 48000, "channels": 2, "codec": "opus"},
        overrides={"mic-porta": {"codec": "aac", "bitrate": "96k"}},
    )
    caps = Capabilities(sample_rates=(16000, 44100), channels=(1,))

    snapshot = generator.render({"mic-porta": _device("portA", 1, caps)})

    capture = snapshot.get("mic-porta").capture
    assert capture.codec == "aac"
    assert capture.bitrate == "96k"
    assert capture.sample_rate == 44100
    assert capture.channels == 1


def test_clamp_leaves_unknown_capabilities_alone():
    spec = CaptureSpec(sample_rate=96000, channels=4)
    assert clamp_capture(spec, Capabilities()) is spec


def test_validate_rejects_duplicates_and_empty_paths(tmp_path):
    generator = _generator(tmp_path)
    entry = StreamEntry("mic-a", "plughw:1,0", "portA", CaptureSpec(), "rtsp://x/mic-a")
    bad = StreamEntry("mic-b", " ", "portB", CaptureSpec(), "rtsp://x/mic-b")

    with pytest.raises(InvalidConfigError) as excinfo:
        generator.validate(build_snapshot([entry, entry, bad]))

    problems = " ".join(excinfo.value.problems)
    assert "duplicate stream name mic-a" in problems
    assert "mic-b: empty device path" in problems


def test_apply_writes_once_per_content(tmp_path):
    generator = _generator(tmp_path)
    snapshot = generator.render({"mic-porta": _device("portA", 1)})

    assert generator.apply(snapshot) is True
    assert generator.apply(snapshot) is False
    assert generator.current_hash() == snapshot.content_hash
    assert oct(os.stat(generator.snapshot_path).st_mode & 0o777) == "0o644"
    assert read_snapshot(generator.snapshot_path) == snapshot
    assert generator.current() == snapshot


def test_invalid_snapshot_never_replaces_previous(tmp_path):
    generator = _generator(tmp_path)
    good = generator.render({"mic-porta": _device("portA", 1)})
    generator.apply(good)
    bad = build_snapshot([StreamEntry("Bad Name", "plughw:1,0", "portA", CaptureSpec(), "rtsp://x")])

    with pytest.raises(InvalidConfigError):
        generator.apply(bad)

    assert generator.current_hash() == good.content_hash


def test_failed_replace_keeps_previous_and_cleans_tmp(tmp_path, monkeypatch):
    generator = _generator(tmp_path)
    first = generator.render({"mic-porta": _device("portA", 1)})
    generator.apply(first)
    second = generator.render({"mic-portb": _device("portB", 2)})

    def boom(src, dst):
        raise OSError("disk full")

    with monkeypatch.context() as patched:
        patched.setattr(config_generator.os, "replace", boom)
        with pytest.raises(OSError):
            generator.apply(second)

    assert read_snapshot(generator.snapshot_path).names() == ["mic-porta"]
    leftovers = [p for p in generator.snapshot_path.parent.iterdir() if p.suffix == ".tmp"]
    assert leftovers == []


def test_concurrent_reader_sees_old_or_new_only(tmp_path):
    generator = _generator(tmp_path)
    one = generator.render({"mic-porta": _device("portA", 1)})
    two = generator.render({"mic-porta": _device("portA", 1), "mic-portb": _device("portB", 2)})
    generator.apply(one)
    valid = {one.content_hash, two.content_hash}
    seen = set()
    errors = []
    done = threading.Event()

    def reader():
        while not done.is_set():
            try:
                snap = read_snapshot(generator.snapshot_path, attempts=1)
            except InvalidConfigError as exc:
                errors.append(exc)
                continue
            seen.add(snap.content_hash)

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for _ in range(50):
            generator.apply(two)
            generator.apply(one)
    finally:
        done.set()
        thread.join(timeout=5)

    assert errors == []
    assert seen <= valid


def test_read_snapshot_missing_and_corrupt(tmp_path):
    path = tmp_path / "streams.yaml"
    assert read_snapshot(path) is None

    path.write_text("# micwarden-snapshot sha256=deadbeef\nversion: 1\n", encoding="utf-8")
    with pytest.raises(InvalidConfigError):
        read_snapshot(path, attempts=2, delay=0)
