"""Custom exceptions for storage discovery and boot repair.

This module defines a hierarchy of exceptions so callers can tell recoverable
conditions (a partition that cannot be probed, an installation that cannot be
remounted) apart from conditions that end a repair session.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceBusyError
        ├── MountError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   └── RemountFailedError
        ├── ProbeInconclusiveError
        ├── PartitionTableError
        └── RepairError
            ├── DiscoveryEmptyError
            ├── EfiPartitionNotFoundError
            ├── ChrootEnvironmentError
            ├── ChrootCommandError
            ├── InvalidSelectionError
            └── RepairCancelledError

Usage:
    from boot_rescue.storage.exceptions import EfiPartitionNotFoundError

    if efi_partition is None:
        raise EfiPartitionNotFoundError(disk.path)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage and repair operations."""



class DeviceError(StorageError):
    """Base exception for device-related errors."""



class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device is currently held by another repair session."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""



class MountFailedError(MountError):
    """A mount or bind mount could not be established."""

    def __init__(self, source: str, target: str, detail: str = ""):
        self.source = source
        self.target = target
        self.detail = detail
        msg = f"Failed to mount {source} at {target}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, target: str, detail: str = ""):
        self.target = target
        self.detail = detail
        msg = f"Failed to unmount {target}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RemountFailedError(MountError):
    """Installation was found read-only but cannot be mounted read-write."""

    def __init__(self, partition: str, detail: str = ""):
        self.partition = partition
        self.detail = detail
        msg = f"Could not remount {partition} for repair"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ProbeInconclusiveError(StorageError):
    """A partition could not be mounted or read during probing."""

    def __init__(self, partition: str, reason: str):
        self.partition = partition
        self.reason = reason
        super().__init__(f"Probe of {partition} inconclusive: {reason}")


class PartitionTableError(StorageError):
    """Partition table could not be queried or changed."""

    def __init__(self, disk: str, reason: str):
        self.disk = disk
        self.reason = reason
        super().__init__(f"Partition table error on {disk}: {reason}")


class RepairError(StorageError):
    """Base exception for conditions that fail a repair step."""



class DiscoveryEmptyError(RepairError):
    """No Linux installations were found."""

    def __init__(self, devices_scanned: int = 0):
        self.devices_scanned = devices_scanned
        super().__init__(
            f"No Linux installations found ({devices_scanned} device(s) scanned)"
        )


class EfiPartitionNotFoundError(RepairError):
    """UEFI repair was requested but the disk has no EFI System Partition."""

    def __init__(self, disk: str):
        self.disk = disk
        super().__init__(f"Could not find EFI partition on {disk} for UEFI system")


class ChrootEnvironmentError(RepairError):
    """The chroot environment could not be built or is in the wrong state."""

    def __init__(self, root: str, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Chroot environment at {root}: {reason}")


class ChrootCommandError(RepairError):
    """A command run inside the chroot exited unsuccessfully."""

    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        output: str = "",
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        if returncode is None:
            status = "timed out"
        else:
            status = f"exited with {returncode}"
        super().__init__(f"Command {' '.join(command)} {status}")


class InvalidSelectionError(RepairError):
    """Installation index is out of range or missing when ambiguous."""

    def __init__(self, index: int | None, available: int):
        self.index = index
        self.available = available
        if index is None:
            msg = f"Select an installation (1-{available})"
        else:
            msg = f"Invalid installation selection {index} (1-{available})"
        super().__init__(msg)


class RepairCancelledError(RepairError):
    """The caller cancelled the session; teardown still runs."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(f"Repair cancelled: {reason}")
