"""Read-only filesystem probing for Linux installations.

probe() classifies a partition and, for ext2/3/4, xfs and btrfs, looks inside
it for a Linux root. The partition is mounted read-only into a fresh,
uniquely named path and is always unmounted (and the path removed) before
probe() returns, whatever was found. A partition that is already mounted
somewhere is inspected in place, so probing never changes mounted state.

A root is recognised when all markers are present:
    /etc/fstab, /boot, /etc, /usr, and an fstab entry for "/".
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import (
    BlockDevice,
    BootloaderKind,
    FilesystemKind,
    InstallationEvidence,
    Partition,
    ProbeResult,
)
from boot_rescue.logging import LoggerFactory
from boot_rescue.repair.dualboot import detect_windows_coexistence
from boot_rescue.repair.fstab import find_root_entry, read_distribution, read_fstab
from boot_rescue.repair.ledger import ResourceLedger
from boot_rescue.storage import mount
from boot_rescue.storage.exceptions import MountFailedError, ProbeInconclusiveError

log = LoggerFactory.for_probe()

# Conventional root subvolume names (Ubuntu/Debian "@", others "root")
BTRFS_ROOT_SUBVOLUMES = ("@", "@root", "root")


def detect_bootloader(root: Path) -> BootloaderKind:
    if (root / "boot" / "grub").is_dir() or (root / "boot" / "grub2").is_dir():
        return BootloaderKind.GRUB
    if (root / "boot" / "syslinux" / "syslinux.cfg").is_file():
        return BootloaderKind.SYSLINUX
    if (root / "boot" / "loader").is_dir():
        return BootloaderKind.SYSTEMD_BOOT
    return BootloaderKind.UNKNOWN


def _has_directory_markers(root: Path) -> bool:
    return (
        (root / "etc" / "fstab").is_file()
        and (root / "boot").is_dir()
        and (root / "etc").is_dir()
        and (root / "usr").is_dir()
    )


def _find_root_tree(root: Path, fs_kind: FilesystemKind) -> tuple[Path, Optional[str]]:
    if _has_directory_markers(root) or fs_kind is not FilesystemKind.BTRFS:
        return root, None
    for subvolume in BTRFS_ROOT_SUBVOLUMES:
        candidate = root / subvolume
        if candidate.is_dir() and _has_directory_markers(candidate):
            log.info(f"Btrfs root subvolume: {subvolume}")
            return candidate, subvolume
    return root, None


def inspect_root(
    root: Path,
    partition: Partition,
    disk: Optional[BlockDevice] = None,
) -> InstallationEvidence:
    """Collect installation evidence from a mounted filesystem.

    Raises:
        ProbeInconclusiveError: If the tree cannot be read
    """
    try:
        tree, subvolume = _find_root_tree(root, partition.fs_kind)
        fstab_entries = read_fstab(tree)
        root_entry = find_root_entry(fstab_entries)
        distro_name, distro_id = read_distribution(tree)
        evidence = InstallationEvidence(
            has_fstab=(tree / "etc" / "fstab").is_file(),
            has_boot=(tree / "boot").is_dir(),
            has_etc=(tree / "etc").is_dir(),
            has_usr=(tree / "usr").is_dir(),
            has_root_entry=root_entry is not None,
            distro_name=distro_name,
            distro_id=distro_id,
            bootloader=detect_bootloader(tree),
            subvolume=subvolume,
        )
        if not evidence.is_installation:
            return evidence
        verdict = detect_windows_coexistence(tree, partition, disk, fstab_entries)
    except OSError as error:
        raise ProbeInconclusiveError(partition.path, str(error)) from error

    return replace(
        evidence, dual_boot=verdict.detected, dual_boot_reasons=verdict.reasons
    )


def _probe_unmounted(
    partition: Partition,
    disk: Optional[BlockDevice],
    mount_base: Optional[Path],
) -> InstallationEvidence:
    target = mount.ephemeral_mountpoint_path(partition.name, mount_base)
    with ResourceLedger(keep_backups=False) as ledger:
        try:
            ledger.acquire_mount(
                target,
                lambda: mount.mount_partition(partition.path, target, read_only=True),
                source=partition.path,
            )
        except MountFailedError as error:
            raise ProbeInconclusiveError(partition.path, error.detail or str(error)) from error
        return inspect_root(target, partition, disk)


def probe(
    partition: Partition,
    disk: Optional[BlockDevice] = None,
    mount_base: Optional[Path] = None,
) -> ProbeResult:
    """Classify a partition and look for a Linux installation on it.

    Never raises for an unreadable partition: the result carries the
    reason instead and the partition is simply not an installation.
    """
    fs_kind = partition.fs_kind
    if not fs_kind.is_linux_root_candidate:
        return ProbeResult(partition=partition, fs_kind=fs_kind)

    log.info(
        f"Checking partition {partition.path} (fs: {fs_kind.value}, label: {partition.label})"
    )
    try:
        if partition.is_mounted:
            evidence = inspect_root(Path(partition.mountpoint), partition, disk)
        else:
            evidence = _probe_unmounted(partition, disk, mount_base)
    except ProbeInconclusiveError as error:
        log.warning(str(error))
        return ProbeResult(
            partition=partition, fs_kind=fs_kind, inconclusive_reason=error.reason
        )

    return ProbeResult(partition=partition, fs_kind=fs_kind, evidence=evidence)
