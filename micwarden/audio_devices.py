"""Enumerate USB audio capture devices and their physical topology."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List

from .errors import UnresolvableDeviceError

log = logging.getLogger("micwarden.devices")

_CARD_DIR = re.compile(r"^card(?P<index>\d+)$")
_USBID = re.compile(r"^(?P<vendor>[0-9a-fA-F]{4}):(?P<product>[0-9a-fA-F]{4})$")
# Interface directories look like "1-1.2:1.0"; the device directory is "1-1.2".
_USB_PORT = re.compile(r"^(?P<port>\d+-\d+(?:\.\d+)*)(?::\d+\.\d+)?$")
_RANGE = re.compile(r"(?P<low>\d+)\s*-\s*(?P<high>\d+)\s*\(continuous\)")

STANDARD_RATES = (
    8000, 11025, 16000, 22050, 32000, 44100, 48000,
    64000, 88200, 96000, 176400, 192000, 352800, 384000, 705600, 768000,
)


@dataclass(frozen=True)
class Capabilities:
    sample_rates: tuple[int, ...] = ()
    channels: tuple[int, ...] = ()
    formats: tuple[str, ...] = ()

    @property
    def known(self) -> bool:
        return bool(self.sample_rates or self.channels)


@dataclass(frozen=True)
class Device:
    topology_key: str
    vendor_id: str
    product_id: str
    card_index: int
    kernel_name: str = ""
    product: str = ""
    serial: str = ""
    capabilities: Capabilities = field(default_factory=Capabilities)

    @property
    def device_path(self) -> str:
        return f"plughw:{self.card_index},0"

    @property
    def usb_id(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""


def _iter_card_dirs(proc_root: Path) -> Iterator[tuple[int, Path]]:
    asound = proc_root / "asound"
    try:
        entries = sorted(asound.iterdir())
    except FileNotFoundError:
        return
    for entry in entries:
        match = _CARD_DIR.match(entry.name)
        if match and entry.is_dir():
            yield int(match.group("index")), entry


def parse_stream_capabilities(text: str) -> Capabilities:
    """Parse the Capture section of ``/proc/asound/cardN/stream0``."""

    rates: set[int] = set()
    channels: set[int] = set()
    formats: list[str] = []
    in_capture = False
    for raw in text.splitlines():
        line = raw.strip()
        if not raw.startswith((" ", "\t")) and line.endswith(":"):
            in_capture = line == "Capture:"
            continue
        if not in_capture or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        value = value.strip()
        if key == "Format":
            for token in value.replace(",", " ").split():
                if token not in formats:
                    formats.append(token)
        elif key == "Channels":
            try:
                channels.add(int(value.split()[0]))
            except (IndexError, ValueError):
                continue
        elif key == "Rates":
            span = _RANGE.search(value)
            if span:
                low, high = int(span.group("low")), int(span.group("high"))
                rates.update(rate for rate in STANDARD_RATES if low <= rate <= high)
                continue
            for token in value.split(","):
                token = token.strip()
                if token.isdigit():
                    rates.add(int(token))
    return Capabilities(
        sample_rates=tuple(sorted(rates)),
        channels=tuple(sorted(channels)),
        formats=tuple(formats),
    )


def _usb_device_dir(sysfs_root: Path, card_index: int) -> Path | None:
    link = sysfs_root / "class" / "sound" / f"card{card_index}" / "device"
    try:
        target = Path(os.path.realpath(link))
    except OSError:
        return None
    if not target.exists():
        return None
    for candidate in (target, *target.parents):
        match = _USB_PORT.match(candidate.name)
        if match is None:
            continue
        if ":" not in candidate.name:
            return candidate
        # Interface node; its parent is the USB device itself.
        if candidate.parent.name == match.group("port"):
            return candidate.parent
        return candidate.with_name(match.group("port"))
    return None


def resolve_card(card_index: int, card_dir: Path, sysfs_root: Path) -> Device:
    """Build a :class:`Device` for one ALSA card or raise UnresolvableDeviceError."""

    card = f"card{card_index}"
    usbid = _read_text(card_dir / "usbid")
    match = _USBID.match(usbid)
    if not match:
        raise UnresolvableDeviceError(card, f"unparseable usbid {usbid!r}")

    usb_dir = _usb_device_dir(sysfs_root, card_index)
    if usb_dir is None:
        raise UnresolvableDeviceError(card, "no sysfs USB port path")
    port = _USB_PORT.match(usb_dir.name)
    if port is None:
        raise UnresolvableDeviceError(card, f"unexpected sysfs node {usb_dir.name}")

    stream_text = _read_text(card_dir / "stream0")
    return Device(
        topology_key=port.group("port"),
        vendor_id=match.group("vendor").lower(),
        product_id=match.group("product").lower(),
        card_index=card_index,
        kernel_name=_read_text(card_dir / "id"),
        product=_read_text(usb_dir / "product"),
        serial=_read_text(usb_dir / "serial"),
        capabilities=parse_stream_capabilities(stream_text),
    )


def scan_usb_audio(
    proc_root: Path = Path("/proc"),
    sysfs_root: Path = Path("/sys"),
) -> tuple[List[Device], List[UnresolvableDeviceError]]:
    """Return resolvable USB capture devices and the per-card resolution errors."""

    devices: List[Device] = []
    errors: List[UnresolvableDeviceError] = []
    for card_index, card_dir in _iter_card_dirs(Path(proc_root)):
        if not (card_dir / "usbid").exists():
            continue
        stream_text = _read_text(card_dir / "stream0")
        if stream_text and "Capture:" not in stream_text:
            log.debug("card%s has no capture endpoint; skipping", card_index)
            continue
        try:
            device = resolve_card(card_index, card_dir, Path(sysfs_root))
        except UnresolvableDeviceError as exc:
            errors.append(exc)
            continue
        devices.append(device)
    devices.sort(key=lambda d: d.topology_key)
    return devices, errors


__all__ = [
    "Capabilities",
    "Device",
    "STANDARD_RATES",
    "parse_stream_capabilities",
    "resolve_card",
    "scan_usb_audio",
]
