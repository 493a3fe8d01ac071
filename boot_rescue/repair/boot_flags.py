"""Legacy boot flag check-and-fix across all disks.

For every msdos-labelled disk: if no partition carries the boot flag, the
flag is set on the first Linux partition. GPT disks are reported and left
alone, since the boot flag is a BIOS/MBR concept there. Disks parted cannot
read (blank media, no label) are skipped. Only a refused flag write fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from boot_rescue.domain.models import BlockDevice
from boot_rescue.logging import LoggerFactory
from boot_rescue.storage.device_lock import disk_session
from boot_rescue.storage.devices import enumerate_devices
from boot_rescue.storage.exceptions import DeviceBusyError, PartitionTableError
from boot_rescue.storage.partition_table import query_partition_table, set_boot_flag

log = LoggerFactory.for_catalog()


class BootFlagStatus(Enum):
    PRESENT = "present"
    SET = "set"
    NO_LINUX_PARTITION = "no-linux-partition"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BootFlagOutcome:
    disk: str
    status: BootFlagStatus
    partition: Optional[str] = None
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.status is BootFlagStatus.FAILED


def check_disk(disk: BlockDevice, owner: str = "boot-flags") -> BootFlagOutcome:
    log.info(f"Checking {disk.path}...")
    try:
        table = query_partition_table(disk.path)
    except PartitionTableError as error:
        # Blank or unlabelled media: nothing to fix on this disk
        log.warning(f"{error}, skipping")
        return BootFlagOutcome(disk.path, BootFlagStatus.SKIPPED, message=error.reason)

    if not table.is_msdos:
        log.info(f"{disk.path} uses a {table.label} partition table, skipping")
        return BootFlagOutcome(
            disk.path, BootFlagStatus.SKIPPED, message=f"{table.label} partition table"
        )

    boot_record = table.boot_record()
    if boot_record is not None:
        device = table.device_for(boot_record)
        log.success(f"Boot flag found on {device}")
        return BootFlagOutcome(disk.path, BootFlagStatus.PRESENT, partition=device)

    log.warning(f"No boot flag found on {disk.path}")
    linux_record = table.first_linux_record()
    if linux_record is None:
        return BootFlagOutcome(disk.path, BootFlagStatus.NO_LINUX_PARTITION)

    device = table.device_for(linux_record)
    log.info(f"Setting boot flag on {device}")
    try:
        with disk_session(disk.path, owner):
            set_boot_flag(disk.path, linux_record.number)
    except (DeviceBusyError, PartitionTableError) as error:
        log.error(f"Could not set boot flag on {device}: {error}")
        return BootFlagOutcome(
            disk.path, BootFlagStatus.FAILED, partition=device, message=str(error)
        )
    return BootFlagOutcome(disk.path, BootFlagStatus.SET, partition=device)


def check_boot_flags(
    devices: Optional[list[BlockDevice]] = None, owner: str = "boot-flags"
) -> list[BootFlagOutcome]:
    """Check (and fix where missing) the boot flag on every disk."""
    log.info("Checking boot flags on all disks...")
    if devices is None:
        devices = enumerate_devices()
    return [check_disk(disk, owner) for disk in devices]
