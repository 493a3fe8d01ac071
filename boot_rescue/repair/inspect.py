"""Read-only boot configuration report for one mounted installation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import BootloaderKind, FirmwareMode, Installation
from boot_rescue.repair.fstab import resolve_in_root
from boot_rescue.repair.prober import detect_bootloader
from boot_rescue.storage import mount

GRUB_CONFIG_PATHS = ("boot/grub/grub.cfg", "boot/grub2/grub.cfg")
_MENUENTRY = re.compile(r"^\s*menuentry\b")


@dataclass(frozen=True)
class BootConfigReport:
    partition: str
    mount_path: str
    distro_name: str
    firmware_mode: FirmwareMode
    filesystem: str
    bootloader: BootloaderKind
    grub_config: Optional[str] = None
    menu_entries: int = 0
    has_default_grub: bool = False
    os_prober_disabled: Optional[bool] = None
    dual_boot: bool = False

    def to_lines(self) -> list[str]:
        lines = [
            "Boot Configuration Analysis:",
            f"Partition: {self.partition}",
            f"Mount point: {self.mount_path}",
            f"Distribution: {self.distro_name}",
            f"Boot mode: {self.firmware_mode.value.upper()}",
            f"Filesystem: {self.filesystem}",
            f"Boot loader type: {self.bootloader.value}",
        ]
        if self.grub_config:
            lines.append(f"GRUB config present: Yes ({self.grub_config})")
            lines.append(f"GRUB entries: {self.menu_entries}")
        else:
            lines.append("GRUB config present: No")
        lines.append(f"/etc/default/grub present: {'Yes' if self.has_default_grub else 'No'}")
        if self.os_prober_disabled is not None:
            lines.append(f"GRUB_DISABLE_OS_PROBER: {str(self.os_prober_disabled).lower()}")
        if self.dual_boot:
            lines.append("Windows dual-boot: detected")
        return lines


def count_menu_entries(text: str) -> int:
    return sum(1 for line in text.splitlines() if _MENUENTRY.match(line))


def read_os_prober_setting(text: str) -> Optional[bool]:
    """Value of GRUB_DISABLE_OS_PROBER in /etc/default/grub, if set."""
    value = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("GRUB_DISABLE_OS_PROBER="):
            value = line.split("=", 1)[1].strip().strip("\"'").lower() == "true"
    return value


def inspect_installation(
    installation: Installation, firmware_mode: FirmwareMode
) -> BootConfigReport:
    """Build the report from an activated (mounted) installation. Never writes."""
    if installation.mount_path is None:
        raise ValueError(f"{installation.partition.path} is not mounted")
    root = Path(installation.mount_path)

    grub_config = None
    menu_entries = 0
    for relative in GRUB_CONFIG_PATHS:
        path = root / relative
        if path.is_file():
            grub_config = f"/{relative}"
            menu_entries = count_menu_entries(
                path.read_text(encoding="utf-8", errors="replace")
            )
            break

    default_grub = resolve_in_root(root, "etc/default/grub")
    os_prober_disabled = None
    if default_grub.is_file():
        os_prober_disabled = read_os_prober_setting(
            default_grub.read_text(encoding="utf-8", errors="replace")
        )

    filesystem = (
        mount.filesystem_type_at(root)
        or installation.partition.fstype
        or installation.partition.fs_kind.value
    )
    return BootConfigReport(
        partition=installation.partition.path,
        mount_path=str(root),
        distro_name=installation.distro_name,
        firmware_mode=firmware_mode,
        filesystem=filesystem,
        bootloader=detect_bootloader(root),
        grub_config=grub_config,
        menu_entries=menu_entries,
        has_default_grub=default_grub.is_file(),
        os_prober_disabled=os_prober_disabled,
        dual_boot=installation.dual_boot,
    )
