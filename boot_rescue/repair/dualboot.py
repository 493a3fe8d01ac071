"""Windows coexistence heuristics for a discovered Linux installation.

Two independent checks, either of which marks the installation dual-boot:

1. The installation's own fstab mounts an NTFS filesystem, or a FAT
   filesystem whose options reference boot.
2. Another partition on the same disk is NTFS.

The flag is advisory. It never blocks a repair, but repair steps treat it as
a constraint: only the Linux installation's own boot files are touched, and
boot menus are regenerated (with a foreign OS scan) rather than replaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import BlockDevice, FilesystemKind, Partition
from boot_rescue.logging import LoggerFactory
from boot_rescue.repair.fstab import FstabEntry, read_fstab

log = LoggerFactory.for_probe()


@dataclass(frozen=True)
class DualBootVerdict:
    detected: bool
    reasons: tuple[str, ...] = ()


def fstab_windows_reasons(entries: list[FstabEntry]) -> list[str]:
    reasons = []
    for entry in entries:
        kind = FilesystemKind.from_fstype(entry.fstype)
        if kind is FilesystemKind.NTFS:
            reasons.append(f"fstab mounts NTFS {entry.spec} at {entry.mountpoint}")
        elif kind is FilesystemKind.VFAT and "boot" in entry.option_list:
            reasons.append(f"fstab mounts boot FAT {entry.spec} at {entry.mountpoint}")
    return reasons


def sibling_windows_reasons(
    partition: Partition, disk: Optional[BlockDevice]
) -> list[str]:
    if disk is None:
        return []
    return [
        f"NTFS partition {sibling.path} on {disk.path}"
        for sibling in disk.siblings_of(partition)
        if sibling.fs_kind is FilesystemKind.NTFS
    ]


def detect_windows_coexistence(
    mounted_root: Path,
    partition: Partition,
    disk: Optional[BlockDevice],
    fstab_entries: Optional[list[FstabEntry]] = None,
) -> DualBootVerdict:
    """Check a mounted installation and its disk for a Windows install."""
    if fstab_entries is None:
        fstab_entries = read_fstab(mounted_root)
    reasons = fstab_windows_reasons(fstab_entries) + sibling_windows_reasons(
        partition, disk
    )
    if reasons:
        log.warning(f"Windows dual-boot detected on {partition.path}")
        for reason in reasons:
            log.debug(reason)
    return DualBootVerdict(detected=bool(reasons), reasons=tuple(reasons))
