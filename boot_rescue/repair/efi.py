"""EFI System Partition lookup on a target disk.

Strategies are tried in order, each only if the previous found nothing:

1. Partition table flags: parted reports an ``esp`` flag, or (when parted
   cannot read the disk) lsblk reports the ESP partition type GUID / MBR
   type 0xef.
2. Already-mounted partitions of the disk whose mount path follows an EFI
   convention (/boot/efi, /efi, .../boot/efi).
3. A FAT partition smaller than the efi_size_threshold_bytes setting.

Finding nothing is not an error here; callers that need an ESP decide.
"""

from __future__ import annotations

from typing import Optional

from boot_rescue.config.settings import DEFAULT_EFI_SIZE_THRESHOLD_BYTES, get_setting
from boot_rescue.domain.models import BlockDevice, FilesystemKind, Partition
from boot_rescue.logging import LoggerFactory
from boot_rescue.storage import mount
from boot_rescue.storage.exceptions import PartitionTableError
from boot_rescue.storage.partition_table import query_partition_table

ESP_PART_TYPES = frozenset({"c12a7328-f81f-11d2-ba4b-00a0c93ec93b", "0xef", "ef"})

log = LoggerFactory.for_efi()


def is_efi_mount_path(mountpoint: Optional[str]) -> bool:
    if not mountpoint:
        return False
    path = mountpoint.rstrip("/")
    return path in ("/boot/efi", "/efi") or path.endswith("/boot/efi")


def _partition_or_stub(disk: BlockDevice, path: str) -> Partition:
    partition = disk.partition(path)
    if partition is not None:
        return partition
    return Partition(path=path, disk_path=disk.path, fs_kind=FilesystemKind.VFAT)


def _by_partition_flags(disk: BlockDevice) -> Optional[Partition]:
    try:
        table = query_partition_table(disk.path)
    except PartitionTableError as error:
        log.debug(f"Partition table query unavailable: {error}")
    else:
        for record in table.records:
            if record.is_esp:
                return _partition_or_stub(disk, table.device_for(record))
    for partition in disk.partitions:
        if (partition.part_type or "").lower() in ESP_PART_TYPES:
            return partition
    return None


def _by_mount_path(disk: BlockDevice) -> Optional[Partition]:
    for partition in disk.partitions:
        if is_efi_mount_path(partition.mountpoint):
            return partition
    paths = {partition.path for partition in disk.partitions}
    for record in mount.mounted_filesystems():
        if record.device in paths and is_efi_mount_path(record.mountpoint):
            return _partition_or_stub(disk, record.device)
    return None


def _by_size_heuristic(disk: BlockDevice, threshold: int) -> Optional[Partition]:
    for partition in disk.partitions:
        if partition.fs_kind.is_fat and 0 < partition.size_bytes < threshold:
            return partition
    return None


def locate(disk: BlockDevice, size_threshold: Optional[int] = None) -> Optional[Partition]:
    """Find the EFI System Partition on ``disk``, or None."""
    if size_threshold is None:
        size_threshold = int(
            get_setting("efi_size_threshold_bytes", DEFAULT_EFI_SIZE_THRESHOLD_BYTES)
        )

    strategies = (
        ("partition flags", lambda: _by_partition_flags(disk)),
        ("mounted EFI path", lambda: _by_mount_path(disk)),
        ("FAT size heuristic", lambda: _by_size_heuristic(disk, size_threshold)),
    )
    for name, strategy in strategies:
        partition = strategy()
        if partition is not None:
            log.info(f"EFI partition {partition.path} found on {disk.path} ({name})")
            return partition
    log.warning(f"No EFI partition found on {disk.path}")
    return None
