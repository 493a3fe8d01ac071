"""Tests for storage exception classes."""

import pytest

from boot_rescue.storage.exceptions import (
    ChrootCommandError,
    ChrootEnvironmentError,
    DeviceBusyError,
    DeviceError,
    DeviceNotFoundError,
    DiscoveryEmptyError,
    EfiPartitionNotFoundError,
    InvalidSelectionError,
    MountError,
    MountFailedError,
    PartitionTableError,
    ProbeInconclusiveError,
    RemountFailedError,
    RepairCancelledError,
    RepairError,
    StorageError,
    UnmountFailedError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_storage_error_is_base_exception(self):
        error = StorageError("test error")
        assert isinstance(error, Exception)
        assert str(error) == "test error"

    @pytest.mark.parametrize(
        "error,parent",
        [
            (DeviceNotFoundError("sda"), DeviceError),
            (DeviceBusyError("sda"), DeviceError),
            (MountFailedError("/dev/sda1", "/mnt"), MountError),
            (UnmountFailedError("/mnt"), MountError),
            (RemountFailedError("/dev/sda1"), MountError),
            (ProbeInconclusiveError("/dev/sda1", "bad superblock"), StorageError),
            (PartitionTableError("/dev/sda", "unrecognised disk label"), StorageError),
            (DiscoveryEmptyError(2), RepairError),
            (EfiPartitionNotFoundError("/dev/sda"), RepairError),
            (ChrootEnvironmentError("/mnt", "not mounted"), RepairError),
            (ChrootCommandError(["update-grub"], 1), RepairError),
            (InvalidSelectionError(None, 2), RepairError),
            (RepairCancelledError(), RepairError),
        ],
    )
    def test_parents(self, error, parent):
        assert isinstance(error, parent)
        assert isinstance(error, StorageError)


class TestDeviceExceptions:
    """Test device-related exceptions."""

    def test_device_not_found_error(self):
        error = DeviceNotFoundError("sda")
        assert error.device_name == "sda"
        assert "not found" in str(error).lower()

    def test_device_busy_error_without_reason(self):
        error = DeviceBusyError("sdb")
        assert error.reason == ""
        assert str(error) == "Device sdb is busy"

    def test_device_busy_error_with_reason(self):
        error = DeviceBusyError("/dev/sdb", "held by session repair-1")
        assert str(error) == "Device /dev/sdb is busy: held by session repair-1"


class TestMountExceptions:
    def test_mount_failed_detail(self):
        error = MountFailedError("/dev/sda1", "/tmp/x", "wrong fs type")
        assert error.source == "/dev/sda1"
        assert error.target == "/tmp/x"
        assert str(error) == "Failed to mount /dev/sda1 at /tmp/x: wrong fs type"

    def test_unmount_failed_without_detail(self):
        assert str(UnmountFailedError("/tmp/x")) == "Failed to unmount /tmp/x"

    def test_remount_failed(self):
        error = RemountFailedError("/dev/sda1", "read-only file system")
        assert error.partition == "/dev/sda1"
        assert "read-only file system" in str(error)


class TestRepairExceptions:
    def test_chroot_command_exit_status(self):
        error = ChrootCommandError(["grub-install", "/dev/sda"], 1, "error: unknown filesystem")
        assert error.returncode == 1
        assert error.output == "error: unknown filesystem"
        assert str(error) == "Command grub-install /dev/sda exited with 1"

    def test_chroot_command_timeout(self):
        assert str(ChrootCommandError(["update-grub"], None)) == "Command update-grub timed out"

    def test_efi_partition_not_found(self):
        error = EfiPartitionNotFoundError("/dev/nvme0n1")
        assert error.disk == "/dev/nvme0n1"
        assert "EFI partition" in str(error)

    def test_invalid_selection_messages(self):
        assert str(InvalidSelectionError(None, 3)) == "Select an installation (1-3)"
        assert str(InvalidSelectionError(7, 3)) == "Invalid installation selection 7 (1-3)"

    def test_discovery_empty(self):
        assert DiscoveryEmptyError(4).devices_scanned == 4

    def test_probe_inconclusive(self):
        error = ProbeInconclusiveError("/dev/sda3", "bad superblock")
        assert error.reason == "bad superblock"
        assert str(error) == "Probe of /dev/sda3 inconclusive: bad superblock"
