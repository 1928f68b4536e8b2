"""Tests for environment probes."""

from __future__ import annotations

from datetime import datetime

from nvdoctor.exec import ExecResult


def test_pci_devices_filters_vendor(machine) -> None:
    machine.pci_lines = [
        "00:02.0 VGA compatible controller [0300]: Intel Corporation UHD Graphics 630 [8086:3e92]",
        "01:00.0 3D controller [0302]: NVIDIA Corporation TU117M [10de:1f99] (rev a1)",
        "01:00.1 Audio device [0403]: NVIDIA Corporation Device [10de:10fa] (rev a1)",
    ]

    devices = machine.probe().pci_devices()

    assert len(devices) == 2
    assert all("10de" in device for device in devices)


def test_pci_devices_fall_back_to_sysfs(machine) -> None:
    probe = machine.probe()
    probe._run = lambda argv, **kwargs: ExecResult(tuple(argv), 127, "", "Command not found: lspci")
    sysfs = machine.root / "sys/bus/pci/devices"
    for name, vendor in (("0000:00:02.0", "0x8086"), ("0000:01:00.0", "0x10de")):
        (sysfs / name).mkdir(parents=True)
        (sysfs / name / "vendor").write_text(f"{vendor}\n", encoding="utf-8")

    assert probe.pci_devices() == ["0000:01:00.0 vendor 0x10de"]


def test_capability_interface(machine) -> None:
    assert machine.probe().capability_interface() == "/usr/bin/nvidia-smi"
    machine.binaries.clear()
    assert machine.probe().capability_interface() is None


def test_module_facts(machine) -> None:
    machine.loaded = {"nouveau", "drm"}
    probe = machine.probe()

    assert probe.competing_driver_loaded()
    assert not probe.target_module_loaded()


def test_secure_boot_states(machine) -> None:
    probe = machine.probe()
    assert probe.secure_boot_state() == "unknown"

    machine.binaries.add("mokutil")
    assert probe.secure_boot_state() == "disabled"

    machine.secure_boot_text = "SecureBoot enabled\n"
    assert probe.secure_boot_state() == "enabled"

    machine.secure_boot_text = "EFI variables are not supported on this system\n"
    assert probe.secure_boot_state() == "unknown"


def test_kernel_headers_via_modules_build_dir(machine) -> None:
    machine.set_headers(False)
    probe = machine.probe()
    assert not probe.kernel_headers_present(machine.kernel)

    (machine.config.modules_root / machine.kernel / "build").mkdir(parents=True)
    assert probe.kernel_headers_present(machine.kernel)


def test_module_dependency_digest(machine) -> None:
    probe = machine.probe()
    assert probe.module_dependency_digest(machine.kernel) is None

    modules_dep = machine.config.modules_root / machine.kernel / "modules.dep"
    modules_dep.parent.mkdir(parents=True)
    modules_dep.write_text("kernel/drivers/video/nvidia.ko:\n", encoding="utf-8")
    first = probe.module_dependency_digest(machine.kernel)

    modules_dep.write_text("kernel/drivers/video/nvidia.ko: kernel/drivers/gpu/drm/drm.ko\n", encoding="utf-8")
    assert probe.module_dependency_digest(machine.kernel) != first


def test_driver_version_and_function(machine) -> None:
    probe = machine.probe()
    assert probe.installed_driver_version() == "535.183.01-1"
    assert probe.driver_functional()

    machine.smi_ok = False
    assert not probe.driver_functional()


def test_recent_install_entry_uses_last_match(machine) -> None:
    log = machine.config.install_log
    log.parent.mkdir(parents=True)
    log.write_text(
        "2024-01-01 09:00:00 install nvidia-driver:amd64 <none> 525.1-1\n"
        "2024-01-01 09:00:05 status installed bash:amd64 5.2-2\n"
        "2024-03-04 12:30:00 status installed nvidia-driver:amd64 535.183.01-1\n",
        encoding="utf-8",
    )

    entry = machine.probe().recent_install_entry()

    assert entry is not None
    assert entry.line.endswith("535.183.01-1")
    assert entry.timestamp == datetime(2024, 3, 4, 12, 30)


def test_recent_install_entry_absent(machine) -> None:
    assert machine.probe().recent_install_entry() is None


def test_boot_time(machine) -> None:
    stat = machine.root / "proc/stat"
    stat.parent.mkdir(parents=True)
    stat.write_text("cpu  1 2 3\nbtime 1700000000\nprocesses 42\n", encoding="utf-8")

    assert machine.probe().boot_time() == datetime.fromtimestamp(1700000000)


def test_boot_image_has_module(machine) -> None:
    probe = machine.probe()
    assert probe.boot_image_has_module(machine.kernel)

    machine.boot_image = {"usr/lib/modules/6.1/kernel/drivers/gpu/drm/nouveau/nouveau.ko.xz"}
    assert not probe.boot_image_has_module(machine.kernel)

    machine.boot_image = {"usr/lib/modules/6.1/updates/dkms/nvidia-drm.ko.xz"}
    assert probe.boot_image_has_module(machine.kernel)


def test_active_display_layer(machine) -> None:
    probe = machine.probe()
    assert probe.active_display_layer() is None

    machine.xorg_running = True
    assert probe.active_display_layer() == "Xorg"

    machine.active_services = {"sddm", "gdm3"}
    # configured order wins
    assert probe.active_display_layer() == "gdm3"


def test_kernel_messages_filtered(machine) -> None:
    lines = machine.probe().kernel_messages()

    assert lines == ["[    2.1] nvidia: loading out-of-tree module taints kernel."]


def test_reachable(machine) -> None:
    probe = machine.probe()
    assert probe.reachable("google.com")
    assert ("ping", "-c", "1", "google.com") in machine.calls

    machine.ping_ok = False
    assert not probe.reachable("google.com")
