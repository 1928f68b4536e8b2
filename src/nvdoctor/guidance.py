"""Operator-facing remediation text."""

from __future__ import annotations

from pathlib import Path

MANUAL_FIX_STEPS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Complete Driver Reinstallation",
        (
            "sudo apt remove --purge ^nvidia-",
            "sudo apt autoremove",
            "sudo reboot",
            "# Then run the NVIDIA driver installer again",
        ),
    ),
    (
        "Check for Conflicting Packages",
        (
            "sudo apt list --installed | grep nvidia",
            "sudo apt remove --purge conflicting-packages",
        ),
    ),
    (
        "Rebuild Kernel Modules",
        (
            "sudo apt install --reinstall nvidia-driver",
            "sudo reboot",
        ),
    ),
    (
        "Check System Logs",
        (
            "sudo dmesg | grep nvidia",
            "sudo journalctl -xe | grep nvidia",
        ),
    ),
    (
        "Verify Hardware",
        (
            "sudo lspci -v | grep -i nvidia",
            "sudo dmidecode -t baseboard | grep -i nvidia",
        ),
    ),
)

HARDWARE_GUIDANCE: tuple[str, ...] = (
    "Verify GPU is properly seated in PCIe slot",
    "Check GPU power connections",
    "Try different PCIe slot",
    "Check BIOS/UEFI settings for PCIe devices",
    "Try GPU in another system to verify it's working",
)

CAPABILITY_INTERFACE_GUIDANCE: tuple[str, ...] = (
    "Run the NVIDIA driver installer to install drivers",
)

SECURE_BOOT_GUIDANCE: tuple[str, ...] = (
    "Secure Boot can prevent proprietary drivers from loading",
    "Disable Secure Boot in BIOS/UEFI settings",
    "Sign NVIDIA kernel modules (advanced)",
    "Use shim-signed with MOK (Ubuntu, more complex)",
)

CONFLICT_REBOOT_GUIDANCE: tuple[str, ...] = (
    "nvidia-smi still not working after display manager restart",
    "This may require a full system reboot to take effect",
)

RESTART_FAILED_GUIDANCE: tuple[str, ...] = (
    "Manual display manager restart or system reboot may be required",
)


def manual_fix_lines() -> list[str]:
    """Flatten MANUAL_FIX_STEPS into numbered guidance lines."""
    lines: list[str] = []
    for number, (title, commands) in enumerate(MANUAL_FIX_STEPS, start=1):
        lines.append(f"{number}. {title}:")
        lines.extend(f"   {command}" for command in commands)
    return lines


def headers_guidance(kernel: str) -> tuple[str, ...]:
    return (f"Try: apt install linux-headers-{kernel}",)


def package_guidance(package: str, installed: bool) -> tuple[str, ...]:
    if installed:
        return (
            f"{package} is installed but nvidia-smi cannot query the driver",
            "A reboot or module rebuild is usually required",
        )
    return ("Run the NVIDIA driver installer script",)


def reboot_guidance(entry: str) -> tuple[str, ...]:
    return (
        "A system reboot is RECOMMENDED",
        f"Recent installation: {entry}",
    )


def competing_driver_guidance(driver: str, blacklist_path: Path, blacklisted: bool) -> tuple[str, ...]:
    if not blacklisted:
        return (
            f"Could not write {blacklist_path}",
            f"Blacklist {driver} manually: echo 'blacklist {driver}' | sudo tee {blacklist_path}",
            "Then run: sudo update-initramfs -u && sudo reboot",
        )
    return (
        f"{driver} is still loaded and could not be unloaded",
        "A system reboot is required for the blacklist to take effect",
    )
