"""Tests for storage/mount.py - mount primitives."""

import subprocess
from pathlib import Path
from unittest.mock import Mock, mock_open, patch

import pytest

from boot_rescue.storage import mount
from boot_rescue.storage.exceptions import MountFailedError, UnmountFailedError


class TestEphemeralMountpointPath:
    def test_path_is_unique_and_not_created(self, tmp_path):
        first = mount.ephemeral_mountpoint_path("sda2", tmp_path)
        second = mount.ephemeral_mountpoint_path("sda2", tmp_path)

        assert first != second
        assert first.parent == tmp_path
        assert first.name.startswith("safe_mount_sda2_")
        assert not first.exists()

    def test_uses_mount_base_setting(self, isolated_settings):
        path = mount.ephemeral_mountpoint_path("sda1")

        assert path.parent == Path(isolated_settings["mount_base"])

    def test_parent_components_are_stripped(self, tmp_path):
        path = mount.ephemeral_mountpoint_path("../../etc", tmp_path)

        assert path.parent == tmp_path

    def test_invalid_name_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            mount.ephemeral_mountpoint_path("..", tmp_path)


class TestMountPartition:
    def test_read_only_mount_command(self, mock_subprocess_success, tmp_path):
        mount.mount_partition("/dev/sda2", tmp_path, read_only=True)

        assert mock_subprocess_success.call_args[0][0] == [
            "mount", "-o", "ro", "/dev/sda2", str(tmp_path),
        ]

    def test_options_are_joined(self, mock_subprocess_success, tmp_path):
        mount.mount_partition("/dev/sda2", tmp_path, read_only=True, options=["subvol=@"])

        assert mock_subprocess_success.call_args[0][0][1:3] == ["-o", "ro,subvol=@"]

    def test_read_write_mount_has_no_options(self, mock_subprocess_success, tmp_path):
        mount.mount_partition("/dev/sda2", tmp_path)

        assert mock_subprocess_success.call_args[0][0] == ["mount", "/dev/sda2", str(tmp_path)]

    @pytest.mark.parametrize("device", ["sda2", "/dev/sda2;rm -rf /", "/dev/sda2 -o rw"])
    def test_invalid_device_rejected(self, device, mock_subprocess_success, tmp_path):
        with pytest.raises(ValueError):
            mount.mount_partition(device, tmp_path)
        mock_subprocess_success.assert_not_called()

    def test_failure_raises_mount_failed(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.CalledProcessError(
                32, ["mount"], stderr="wrong fs type, bad option, bad superblock"
            )
            with pytest.raises(MountFailedError) as exc_info:
                mount.mount_partition("/dev/sda2", tmp_path)

        assert exc_info.value.source == "/dev/sda2"
        assert "bad superblock" in exc_info.value.detail


class TestBindMount:
    def test_bind_command(self, mock_subprocess_success, tmp_path):
        mount.bind_mount(Path("/proc"), tmp_path / "proc")

        assert mock_subprocess_success.call_args[0][0] == [
            "mount", "--bind", "/proc", str(tmp_path / "proc"),
        ]

    def test_bind_failure(self, mock_subprocess_failure, tmp_path):
        with pytest.raises(MountFailedError):
            mount.bind_mount(Path("/proc"), tmp_path / "proc")


class TestUnmount:
    def test_plain_unmount(self, mock_subprocess_success, tmp_path):
        assert mount.unmount(tmp_path) is False
        assert mock_subprocess_success.call_count == 1

    def test_busy_falls_back_to_lazy_unmount(self, tmp_path):
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                subprocess.CalledProcessError(32, ["umount"], stderr="target is busy"),
                Mock(returncode=0, stdout="", stderr=""),
            ]
            assert mount.unmount(tmp_path) is True

        assert mock_run.call_args_list[1][0][0] == ["umount", "-l", str(tmp_path)]

    def test_no_lazy_fallback_raises(self, mock_subprocess_failure, tmp_path):
        with pytest.raises(UnmountFailedError):
            mount.unmount(tmp_path, lazy_fallback=False)
        assert mock_subprocess_failure.call_count == 1

    def test_lazy_failure_raises(self, mock_subprocess_failure, tmp_path):
        with pytest.raises(UnmountFailedError):
            mount.unmount(tmp_path)
        assert mock_subprocess_failure.call_count == 2


class TestMountTable:
    def test_is_mountpoint_active_reads_proc_mounts(self):
        proc_mounts = "/dev/sda2 /tmp/safe_mount_sda2_abc ext4 ro 0 0\nproc /proc proc rw 0 0\n"
        with patch("builtins.open", mock_open(read_data=proc_mounts)):
            assert mount.is_mountpoint_active(Path("/tmp/safe_mount_sda2_abc"))
            assert not mount.is_mountpoint_active(Path("/tmp/other"))

    def test_mounted_filesystems_uses_psutil(self, mocker):
        partition = Mock(device="/dev/sda1", mountpoint="/boot/efi", fstype="vfat", opts="rw")
        mocker.patch("psutil.disk_partitions", return_value=[partition])

        records = mount.mounted_filesystems()

        assert records == [mount.MountRecord("/dev/sda1", "/boot/efi", "vfat", "rw")]

    def test_filesystem_type_at(self, mocker, tmp_path):
        partition = Mock(device="/dev/sda1", mountpoint=str(tmp_path), fstype="btrfs", opts="ro")
        mocker.patch("psutil.disk_partitions", return_value=[partition])

        assert mount.filesystem_type_at(tmp_path) == "btrfs"
        assert mount.filesystem_type_at(tmp_path / "nope") is None
