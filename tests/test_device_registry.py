from __future__ import annotations

import pytest

from micwarden.audio_devices import Device
from micwarden.device_registry import DeviceRegistry, render_udev_rules, sanitize_stream_name
from micwarden.errors import UnresolvableDeviceError


def _device(port: str, card: int = 1, usbid: tuple[str, str] = ("0d8c", "0014")) -> Device:
    return Device(topology_key=port, vendor_id=usbid[0], product_id=usbid[1], card_index=card)


def _registry(tmp_path, devices=(), errors=(), **kwargs) -> DeviceRegistry:
    state = {"devices": list(devices), "errors": list(errors)}

    def scanner(proc_root, sysfs_root):
        return list(state["devices"]), list(state["errors"])

    registry = DeviceRegistry(
        tmp_path / "devices.yaml",
        tmp_path / "99-usb-soundcards.rules",
        reload_udev=False,
        scanner=scanner,
        **kwargs,
    )
    registry.fake_state = state  # type: ignore[attr-defined]
    return registry


@pytest.mark.parametrize(
    "raw",
    [
        "Mic 1",
        "USB--Audio__Device!!",
        "123-front",
        "---",
        "",
        "ÜberMic (Left)",
        "x" * 200,
        "stream-1-1-2",
    ],
)
def test_sanitize_is_idempotent(raw):
    once = sanitize_stream_name(raw)
    assert sanitize_stream_name(once) == once
    assert once[0].isalpha()
    assert len(once) <= 64
    assert set(once) <= set("abcdefghijklmnopqrstuvwxyz0123456789-")


def test_sanitize_examples():
    assert sanitize_stream_name("mic-portA") == "mic-porta"
    assert sanitize_stream_name("mic-1-1.2") == "mic-1-1-2"
    assert sanitize_stream_name("42") == "stream-42"
    assert sanitize_stream_name("") == "stream"


def test_resolve_name_uses_port_not_model(tmp_path):
    registry = _registry(tmp_path)

    first = registry.resolve_name(_device("portA", card=1))
    second = registry.resolve_name(_device("portB", card=2))

    assert first == "mic-porta"
    assert second == "mic-portb"
    assert registry.resolve_name(_device("portA", card=1)) == first


def test_name_survives_replug_and_reboot(tmp_path):
    registry = _registry(tmp_path)
    device = _device("1-1.2", card=1)
    name = registry.resolve_name(device)
    registry.persist(device, name)

    # Replugged device enumerates as a different card; new process reads the store.
    rebooted = _registry(tmp_path)
    assert rebooted.resolve_name(_device("1-1.2", card=4)) == name


def test_hand_edited_names_are_respected(tmp_path):
    (tmp_path / "devices.yaml").write_text(
        "devices:\n  1-1.2:\n    name: attic\n    vendor_id: 0d8c\n    product_id: '0014'\n",
        encoding="utf-8",
    )
    registry = _registry(tmp_path)

    assert registry.resolve_name(_device("1-1.2")) == "attic"


def test_collisions_get_numeric_suffix(tmp_path):
    registry = _registry(tmp_path)
    # "mic-1-1.2" and "mic-1.1-2" sanitize to the same base name.
    first = registry.resolve_name(_device("1-1.2"))
    second = registry.resolve_name(_device("1.1-2"))

    assert first == "mic-1-1-2"
    assert second == "mic-1-1-2-2"


def test_duplicate_stored_names_are_disambiguated(tmp_path):
    (tmp_path / "devices.yaml").write_text(
        "devices:\n  1-1.2:\n    name: kitchen\n  1-1.3:\n    name: kitchen\n",
        encoding="utf-8",
    )
    registry = _registry(tmp_path)
    a, b = _device("1-1.2", card=1), _device("1-1.3", card=2)

    assert registry.resolve_name(a) == "kitchen"
    assert registry.resolve_name(b) == "kitchen-2"
    assert set(registry.names([a, b])) == {"kitchen", "kitchen-2"}

    registry.persist(b, "kitchen-2")
    assert _registry(tmp_path).known()["1-1.3"]["name"] == "kitchen-2"


def test_persist_writes_store_and_udev_rules(tmp_path):
    registry = _registry(tmp_path)
    device = Device(
        topology_key="1-1.2",
        vendor_id="0d8c",
        product_id="0014",
        card_index=1,
        product="USB Audio Device",
    )

    assert registry.persist(device, registry.resolve_name(device)) is True
    assert registry.persist(device, "mic-1-1-2") is False

    rules = (tmp_path / "99-usb-soundcards.rules").read_text(encoding="utf-8")
    assert 'KERNELS=="1-1.2"' in rules
    assert 'ATTRS{idVendor}=="0d8c"' in rules
    assert 'SYMLINK+="sound/by-id/mic-1-1-2"' in rules
    known = registry.known()
    assert known["1-1.2"]["name"] == "mic-1-1-2"
    assert known["1-1.2"]["first_seen"]


def test_persist_rejects_unsanitized_or_taken_names(tmp_path):
    registry = _registry(tmp_path)
    a = _device("portA")
    registry.persist(a, registry.resolve_name(a))

    with pytest.raises(ValueError):
        registry.persist(_device("portB"), "Not Sanitized")
    with pytest.raises(ValueError):
        registry.persist(_device("portB"), "mic-porta")


def test_scan_skips_unresolvable_and_keeps_history(tmp_path):
    a = _device("portA", card=1)
    b = _device("portB", card=2)
    error = UnresolvableDeviceError("card3", "no sysfs USB port path")
    registry = _registry(tmp_path, devices=[a, b], errors=[error])

    found = registry.scan()
    for device in found:
        registry.persist(device, registry.resolve_name(device))

    assert found == {a, b}
    assert registry.last_errors == [error]

    registry.fake_state["devices"] = [a]
    registry.fake_state["errors"] = []
    assert registry.scan() == {a}
    assert registry.last_errors == []
    # portB is gone but its history stays in the store.
    assert set(registry.known()) == {"portA", "portB"}


def test_scan_reads_fake_sysfs(usb_tree, tmp_path):
    usb_tree.add_card(1, "1-1.2")
    usb_tree.add_card(2, "1-1.3")
    registry = DeviceRegistry(
        tmp_path / "devices.yaml",
        None,
        proc_root=usb_tree.proc_root,
        sysfs_root=usb_tree.sysfs_root,
    )

    names = sorted(registry.names(registry.scan()))

    assert names == ["mic-1-1-2", "mic-1-1-3"]


def test_render_udev_rules_skips_incomplete_entries():
    text = render_udev_rules(
        {
            "1-1.3": {"name": "b", "vendor_id": "0d8c", "product_id": "0014"},
            "1-1.2": {"name": "a", "vendor_id": "0d8c", "product_id": "0014"},
            "1-1.4": {"name": "c"},
        }
    )

    rule_lines = [line for line in text.splitlines() if line.startswith("SUBSYSTEM")]
    assert len(rule_lines) == 2
    assert 'KERNELS=="1-1.2"' in rule_lines[0]
