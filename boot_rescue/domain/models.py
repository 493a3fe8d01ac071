"""Domain model for boot repair sessions.

Type-safe snapshots of the storage topology (devices, partitions) and the
objects a repair session works with (installations, ledger entries, step
outcomes). Catalog objects are rebuilt on every scan and never persisted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

UNKNOWN = "unknown"


def natural_key(value: str) -> tuple:
    """Sort key that orders sda2 before sda10."""
    return tuple(
        int(part) if part.isdigit() else part for part in re.split(r"(\d+)", value)
    )


# ==============================================================================
# Storage Domain
# ==============================================================================


class FilesystemKind(Enum):
    """Filesystem type of a partition as reported by the catalog."""

    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    XFS = "xfs"
    BTRFS = "btrfs"
    VFAT = "vfat"
    NTFS = "ntfs"
    UNKNOWN = "unknown"

    @classmethod
    def from_fstype(cls, fstype: str | None) -> FilesystemKind:
        if not fstype:
            return cls.UNKNOWN
        value = fstype.strip().lower()
        if value in ("ntfs3", "ntfs-3g"):
            return cls.NTFS
        if value in ("fat", "fat12", "fat16", "fat32", "msdos"):
            return cls.VFAT
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_linux_root_candidate(self) -> bool:
        """Filesystems probed for a Linux installation."""
        return self in LINUX_FILESYSTEMS

    @property
    def is_fat(self) -> bool:
        return self is FilesystemKind.VFAT


LINUX_FILESYSTEMS = frozenset(
    {
        FilesystemKind.EXT2,
        FilesystemKind.EXT3,
        FilesystemKind.EXT4,
        FilesystemKind.XFS,
        FilesystemKind.BTRFS,
    }
)


@dataclass(frozen=True)
class Partition:
    """A partition (or logical volume) on a block device.

    Immutable snapshot from one catalog scan.
    """

    path: str  # e.g., "/dev/sda2"
    disk_path: str  # e.g., "/dev/sda"
    fs_kind: FilesystemKind
    size_bytes: int = 0
    label: str = UNKNOWN
    uuid: str | None = None
    mountpoint: str | None = None
    fstype: str | None = None  # raw value from lsblk
    part_type: str | None = None  # GPT type GUID or MBR type byte
    part_flags: str | None = None
    kind: str = "part"  # "part" or "lvm"

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint)

    @property
    def number(self) -> int | None:
        """Partition number parsed from the device name."""
        if self.kind != "part":
            return None
        match = re.search(r"(\d+)$", self.name)
        if not match:
            return None
        return int(match.group(1))

    @classmethod
    def from_lsblk_dict(cls, entry: dict[str, Any], disk_path: str) -> Partition:
        """Convert an lsblk child entry to a Partition.

        Args:
            entry: Child dict from lsblk -J -b
            disk_path: Path of the top-level disk this entry belongs to

        Raises:
            KeyError: If the entry has neither path nor name
        """
        path = entry.get("path") or f"/dev/{entry['name']}"
        fstype = entry.get("fstype")
        label = entry.get("label")
        if label:
            label = label.strip()
        return cls(
            path=path,
            disk_path=disk_path,
            fs_kind=FilesystemKind.from_fstype(fstype),
            size_bytes=int(entry.get("size") or 0),
            label=label or UNKNOWN,
            uuid=entry.get("uuid") or None,
            mountpoint=entry.get("mountpoint") or None,
            fstype=fstype or None,
            part_type=entry.get("parttype") or None,
            part_flags=entry.get("partflags") or None,
            kind=entry.get("type") or "part",
        )


@dataclass(frozen=True)
class BlockDevice:
    """A whole disk with its partitions, enumerated fresh each scan."""

    path: str  # e.g., "/dev/sda"
    size_bytes: int
    model: str = UNKNOWN
    removable: bool = False
    pt_type: str | None = None  # "gpt", "dos" or None
    partitions: tuple[Partition, ...] = ()

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Format a human-readable label, e.g. "/dev/sda Samsung SSD (476.9GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        if self.model and self.model != UNKNOWN:
            return f"{self.path} {self.model} ({size_str})"
        return f"{self.path} {size_str}"

    def partition(self, path: str) -> Partition | None:
        for partition in self.partitions:
            if partition.path == path:
                return partition
        return None

    def siblings_of(self, partition: Partition) -> list[Partition]:
        return [part for part in self.partitions if part.path != partition.path]

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> BlockDevice:
        """Convert an lsblk disk entry (with nested children) to a BlockDevice.

        Missing model information falls back to the "unknown" sentinel.
        Children are flattened so logical volumes nested under a partition
        are listed against the same disk.
        """
        path = device.get("path") or f"/dev/{device['name']}"
        model = device.get("model")
        if model:
            model = model.strip()

        partitions = [
            Partition.from_lsblk_dict(child, path)
            for child in _walk_children(device)
            if child.get("type") in ("part", "lvm")
        ]
        partitions.sort(key=lambda part: natural_key(part.path))

        return cls(
            path=path,
            size_bytes=int(device.get("size") or 0),
            model=model or UNKNOWN,
            removable=device.get("rm") in (1, True, "1"),
            pt_type=device.get("pttype") or None,
            partitions=tuple(partitions),
        )


def _walk_children(device: dict[str, Any]):
    for child in device.get("children") or []:
        yield child
        yield from _walk_children(child)


# ==============================================================================
# Installation Domain
# ==============================================================================


class BootloaderKind(Enum):
    """Bootloader detected in an installation's /boot tree."""

    GRUB = "grub"
    SYSLINUX = "syslinux"
    SYSTEMD_BOOT = "systemd-boot"
    UNKNOWN = "unknown"


class FirmwareMode(Enum):
    """Firmware interface the rescue host booted with."""

    UEFI = "uefi"
    BIOS = "bios"


class DistroFamily(Enum):
    """Bootloader tooling layout inside an installation."""

    DEBIAN = "debian"  # grub-install / update-grub
    RHEL = "rhel"  # grub2-install / grub2-mkconfig


@dataclass(frozen=True)
class InstallationEvidence:
    """What the prober saw inside a read-only mount of a candidate root."""

    has_fstab: bool = False
    has_boot: bool = False
    has_etc: bool = False
    has_usr: bool = False
    has_root_entry: bool = False
    distro_name: str = "Unknown"
    distro_id: str | None = None
    bootloader: BootloaderKind = BootloaderKind.UNKNOWN
    dual_boot: bool = False
    dual_boot_reasons: tuple[str, ...] = ()
    subvolume: str | None = None

    @property
    def is_installation(self) -> bool:
        return (
            self.has_fstab
            and self.has_boot
            and self.has_etc
            and self.has_usr
            and self.has_root_entry
        )


@dataclass(frozen=True)
class ProbeResult:
    partition: Partition
    fs_kind: FilesystemKind
    evidence: InstallationEvidence | None = None
    inconclusive_reason: str | None = None

    @property
    def is_installation(self) -> bool:
        return self.evidence is not None and self.evidence.is_installation


@dataclass(frozen=True)
class Installation:
    """A bootable Linux root discovered on some partition.

    Created by the discoverer without a mount path; a mounted copy is made
    with ``dataclasses.replace`` once the installation is selected.
    """

    partition: Partition
    distro_name: str
    bootloader: BootloaderKind = BootloaderKind.UNKNOWN
    dual_boot: bool = False
    distro_id: str | None = None
    subvolume: str | None = None
    dual_boot_reasons: tuple[str, ...] = ()
    mount_path: Path | None = field(default=None, compare=False)
    read_only: bool = field(default=True, compare=False)

    @property
    def disk_path(self) -> str:
        return self.partition.disk_path

    @property
    def is_mounted(self) -> bool:
        return self.mount_path is not None

    def format_label(self) -> str:
        return f"{self.partition.path} - {self.distro_name}"

    @classmethod
    def from_probe(cls, result: ProbeResult) -> Installation:
        evidence = result.evidence
        if evidence is None:
            raise ValueError(f"No installation evidence for {result.partition.path}")
        return cls(
            partition=result.partition,
            distro_name=evidence.distro_name,
            bootloader=evidence.bootloader,
            dual_boot=evidence.dual_boot,
            distro_id=evidence.distro_id,
            subvolume=evidence.subvolume,
            dual_boot_reasons=evidence.dual_boot_reasons,
        )


# ==============================================================================
# Ledger Domain
# ==============================================================================


class LedgerEntryKind(Enum):
    MOUNT = "mount"
    BACKUP = "backup"
    DIRECTORY = "directory"  # directory created for a mount target
    PLACED_FILE = "placed"  # file written over a backed-up original


@dataclass(frozen=True)
class LedgerEntry:
    """One tracked resource. Unwound in strict reverse creation order."""

    kind: LedgerEntryKind
    path: Path  # mount target, original file or created directory
    bind: bool = False
    source: str | None = None  # mounted device or bind source
    backup_path: Path | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def describe(self) -> str:
        if self.kind is LedgerEntryKind.MOUNT:
            flavour = "bind mount" if self.bind else "mount"
            return f"{flavour} {self.path}"
        if self.kind is LedgerEntryKind.BACKUP:
            return f"backup {self.path} -> {self.backup_path}"
        if self.kind is LedgerEntryKind.DIRECTORY:
            return f"directory {self.path}"
        return f"placed file {self.path}"


# ==============================================================================
# Repair Session Domain
# ==============================================================================


class RepairIntent(Enum):
    """Repair action selected by the caller."""

    AUTOMATIC = "auto"
    BOOTLOADER = "bootloader"
    MBR = "mbr"
    MENU = "menu"
    BOOT_FLAGS = "boot-flags"
    CUSTOM = "custom"
    INSPECT = "inspect"

    @property
    def needs_installation(self) -> bool:
        return self is not RepairIntent.BOOT_FLAGS

    @property
    def is_composite(self) -> bool:
        return self is RepairIntent.AUTOMATIC


class StepStatus(Enum):
    """Outcome of one repair step."""

    SUCCESS = "success"
    RECOVERABLE_FAILURE = "recoverable-failure"
    FATAL_FAILURE = "fatal-failure"

    @property
    def failed(self) -> bool:
        return self is not StepStatus.SUCCESS


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    message: str = ""
    output: str = ""


class SessionStatus(Enum):
    """Overall session result and its process exit code."""

    SUCCESS = 0
    FAILED = 1
    PARTIAL = 2
    CANCELLED = 130

    @property
    def exit_code(self) -> int:
        return self.value


class DispatcherState(Enum):
    IDLE = "idle"
    DISCOVERING_FIRMWARE = "discovering-firmware"
    DISCOVERING_INSTALLATIONS = "discovering-installations"
    AWAITING_SELECTION = "awaiting-selection"
    EXECUTING_ACTION = "executing-action"
    REPORTING_RESULT = "reporting-result"
