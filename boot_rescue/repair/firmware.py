"""Firmware mode of the rescue host."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import FirmwareMode
from boot_rescue.logging import LoggerFactory

EFI_FIRMWARE_PATH = Path("/sys/firmware/efi")

log = LoggerFactory.for_system()


def detect_firmware_mode(efi_path: Optional[Path] = None) -> FirmwareMode:
    """UEFI if the kernel exposes EFI runtime services, otherwise BIOS."""
    log.info("Detecting boot environment...")
    if (efi_path or EFI_FIRMWARE_PATH).is_dir():
        log.info("UEFI boot environment detected")
        return FirmwareMode.UEFI
    log.info("BIOS boot environment detected")
    return FirmwareMode.BIOS


def parse_firmware_option(value: Optional[str]) -> Optional[FirmwareMode]:
    """Map a caller's "auto"/"uefi"/"bios" choice to a forced mode or None."""
    if not value or value.lower() == "auto":
        return None
    return FirmwareMode(value.lower())
