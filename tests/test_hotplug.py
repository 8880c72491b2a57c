from __future__ import annotations

import sys
import threading

import pytest

from micwarden.hotplug import HotplugWatcher, parse_event


@pytest.mark.parametrize(
    "line,expected",
    [
        (
            "UDEV  [1234.567890] add      /devices/platform/scb/usb1/1-1/1-1.2/1-1.2:1.0/sound/card2 (sound)\n",
            ("add", "/devices/platform/scb/usb1/1-1/1-1.2/1-1.2:1.0/sound/card2"),
        ),
        ("UDEV  [99.1] remove   /devices/x/sound/card2/pcmC2D0c (sound)", ("remove", "/devices/x/sound/card2/pcmC2D0c")),
        ("UDEV  [99.1] bind     /devices/x (sound)", None),
        ("KERNEL[99.1] add      /devices/x/sound/card2 (sound)", None),
        ("monitor will print the received events for:", None),
    ],
)
def test_parse_event(line, expected):
    assert parse_event(line) == expected


def test_wait_returns_nothing_without_events():
    watcher = HotplugWatcher(debounce=0.0)

    assert watcher.wait(0.01) == []


def test_wait_debounces_bursts():
    watcher = HotplugWatcher(debounce=0.05)
    watcher.feed("UDEV  [1.0] add      /devices/a/sound/card2 (sound)")
    watcher.feed("UDEV  [1.1] add      /devices/a/sound/card2/controlC2 (sound)")
    watcher.feed("garbage")

    events = watcher.wait(2.0)

    assert [action for action, _ in events] == ["add", "add"]
    assert watcher.drain() == []


def test_short_wait_keeps_unsettled_events_pending():
    watcher = HotplugWatcher(debounce=2.0)
    watcher.feed("UDEV  [1.0] add      /devices/a/sound/card2 (sound)")

    assert watcher.wait(0.1) == []
    assert watcher.wait(0.1) == []
    assert watcher.drain() == [("add", "/devices/a/sound/card2")]


def test_events_settle_across_several_short_waits():
    watcher = HotplugWatcher(debounce=0.15)
    watcher.feed("UDEV  [1.0] remove   /devices/a/sound/card2 (sound)")

    collected = []
    for _ in range(20):
        collected = watcher.wait(0.05)
        if collected:
            break

    assert collected == [("remove", "/devices/a/sound/card2")]


def test_wait_returns_nothing_once_stopped():
    watcher = HotplugWatcher(debounce=0.0)
    watcher.feed("UDEV  [1.0] add      /devices/a/sound/card2 (sound)")
    watcher.stop()

    assert watcher.wait(1.0) == []


def test_reader_without_process_returns():
    watcher = HotplugWatcher()

    watcher._reader()

    assert watcher.available is False


def test_wait_wakes_on_event_from_other_thread():
    watcher = HotplugWatcher(debounce=0.0)
    timer = threading.Timer(0.05, watcher.feed, args=("UDEV  [1.0] remove   /devices/a/sound/card2 (sound)",))
    timer.start()
    try:
        events = watcher.wait(5.0)
    finally:
        timer.cancel()

    assert events == [("remove", "/devices/a/sound/card2")]


def test_missing_udevadm_falls_back_to_polling(tmp_path):
    watcher = HotplugWatcher(command=[str(tmp_path / "no-such-udevadm")])

    assert watcher.start() is False
    assert watcher.available is False
    watcher.stop()


def test_reader_thread_feeds_events():
    script = "print('UDEV  [5.0] add      /devices/a/sound/card7 (sound)', flush=True); import time; time.sleep(30)"
    watcher = HotplugWatcher(debounce=0.0, command=[sys.executable, "-c", script])

    assert watcher.start() is True
    try:
        events = watcher.wait(10.0)
    finally:
        watcher.stop()

    assert events == [("add", "/devices/a/sound/card7")]
