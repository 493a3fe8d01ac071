"""
Pytest configuration and shared fixtures for boot-rescue tests.

External commands are never run: lsblk/parted output is supplied as
fixtures, and the mount primitives are replaced by an in-memory mount table
that copies prepared installation trees into mount targets.
"""

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from boot_rescue.config import settings
from boot_rescue.domain.models import BlockDevice
from boot_rescue.storage import devices, mount
from boot_rescue.storage.exceptions import MountFailedError, UnmountFailedError


ESP_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_GUID = "0fc63daf-8483-4772-8e79-3d69d8477de4"

DEFAULT_FSTAB = """# /etc/fstab: static file system information.
UUID=X / ext4 defaults 0 1
/swapfile none swap sw 0 0
"""


# ==============================================================================
# Global state isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_lsblk_cache():
    devices._lsblk_cache = None
    devices._lsblk_cache_time = None
    devices._last_lsblk_names = None
    yield
    devices._lsblk_cache = None
    devices._lsblk_cache_time = None


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Fresh default settings that never touch the real settings file."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings" / "settings.json")
    values = json.loads(json.dumps(settings.DEFAULT_SETTINGS))
    values["mount_base"] = str(tmp_path / "mnt")
    resolv = tmp_path / "host-resolv.conf"
    resolv.write_text("nameserver 9.9.9.9\n")
    values["resolv_conf_source"] = str(resolv)
    monkeypatch.setattr(settings.settings_store, "values", values)
    return values


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def ext4_disk() -> Dict[str, Any]:
    """A BIOS-style disk with a single ext4 root partition."""
    return {
        "path": "/dev/sda",
        "name": "sda",
        "type": "disk",
        "size": 256060514304,
        "model": "Samsung SSD 860 ",
        "rm": False,
        "pttype": "dos",
        "children": [
            {
                "path": "/dev/sda1",
                "name": "sda1",
                "type": "part",
                "size": 256059465728,
                "fstype": "ext4",
                "label": "rootfs",
                "uuid": "X",
                "parttype": "0x83",
                "pkname": "sda",
            }
        ],
    }


@pytest.fixture
def dual_boot_disk(ext4_disk) -> Dict[str, Any]:
    """Same disk plus an NTFS partition (Windows)."""
    disk = json.loads(json.dumps(ext4_disk))
    disk["children"].append(
        {
            "path": "/dev/sda2",
            "name": "sda2",
            "type": "part",
            "size": 107374182400,
            "fstype": "ntfs",
            "label": "Windows",
            "uuid": "0123456789ABCDEF",
            "parttype": "0x7",
            "pkname": "sda",
        }
    )
    return disk


@pytest.fixture
def nvme_uefi_disk() -> Dict[str, Any]:
    """A GPT NVMe disk with an EFI System Partition and an ext4 root."""
    return {
        "path": "/dev/nvme0n1",
        "name": "nvme0n1",
        "type": "disk",
        "size": 512110190592,
        "model": None,
        "rm": False,
        "pttype": "gpt",
        "children": [
            {
                "path": "/dev/nvme0n1p1",
                "name": "nvme0n1p1",
                "type": "part",
                "size": 536870912,
                "fstype": "vfat",
                "label": "EFI",
                "uuid": "ABCD-1234",
                "parttype": ESP_GUID,
                "pkname": "nvme0n1",
            },
            {
                "path": "/dev/nvme0n1p2",
                "name": "nvme0n1p2",
                "type": "part",
                "size": 511571222528,
                "fstype": "ext4",
                "label": None,
                "uuid": "Y",
                "parttype": LINUX_GUID,
                "pkname": "nvme0n1",
            },
        ],
    }


@pytest.fixture
def loop_device() -> Dict[str, Any]:
    return {
        "path": "/dev/loop0",
        "name": "loop0",
        "type": "loop",
        "size": 104857600,
        "fstype": "squashfs",
        "mountpoint": "/run/live/rootfs",
    }


@pytest.fixture
def lsblk_output():
    """Build lsblk -J output from device dicts."""

    def build(*devices_: Dict[str, Any]) -> str:
        return json.dumps({"blockdevices": list(devices_)})

    return build


@pytest.fixture
def catalog():
    """Build BlockDevice objects from lsblk device dicts."""

    def build(*devices_: Dict[str, Any]) -> List[BlockDevice]:
        return [BlockDevice.from_lsblk_dict(device) for device in devices_]

    return build


# ==============================================================================
# Partition table (parted -m) fixtures
# ==============================================================================


@pytest.fixture
def parted_gpt_output() -> str:
    return (
        "BYT;\n"
        "/dev/nvme0n1:512110190592B:nvme:512:512:gpt:Samsung SSD 970:;\n"
        "1:1048576B:537919487B:536870912B:fat32:EFI System Partition:boot, esp;\n"
        "2:537919488B:512109142015B:511571222528B:ext4::;\n"
    )


@pytest.fixture
def parted_msdos_output() -> str:
    return (
        "BYT;\n"
        "/dev/sda:256060514304B:scsi:512:512:msdos:ATA Samsung SSD:;\n"
        "1:1048576B:107375230975B:107374182400B:ntfs::;\n"
        "2:107375230976B:256060514303B:148685283328B:ext4::;\n"
    )


@pytest.fixture
def parted_msdos_boot_output() -> str:
    return (
        "BYT;\n"
        "/dev/sda:256060514304B:scsi:512:512:msdos:ATA Samsung SSD:;\n"
        "1:1048576B:256060514303B:256059465728B:ext4::boot;\n"
    )


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """subprocess.run that always succeeds with empty output."""
    return mocker.patch(
        "subprocess.run",
        side_effect=lambda command, **kwargs: subprocess.CompletedProcess(
            command, 0, stdout="", stderr=""
        ),
    )


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """subprocess.run that always raises CalledProcessError."""

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=raise_error)


# ==============================================================================
# Installation trees and the fake mount table
# ==============================================================================


def build_installation_tree(
    root: Path,
    distro: str = "Ubuntu",
    distro_id: str = "ubuntu",
    fstab: str = DEFAULT_FSTAB,
    rhel: bool = False,
) -> Path:
    """Create the marker set of a Linux root under ``root``."""
    for directory in ("boot/grub", "etc/default", "usr/bin", "usr/sbin"):
        (root / directory).mkdir(parents=True, exist_ok=True)
    (root / "etc" / "fstab").write_text(fstab)
    (root / "etc" / "os-release").write_text(f'NAME="{distro}"\nID={distro_id}\n')
    (root / "etc" / "resolv.conf").write_text("nameserver 127.0.0.53\n")
    (root / "etc" / "default" / "grub").write_text("GRUB_TIMEOUT=5\n")
    (root / "boot" / "grub" / "grub.cfg").write_text("menuentry 'Ubuntu' {\n}\n")
    if rhel:
        (root / "usr" / "sbin" / "grub2-install").write_text("")
    return root


@pytest.fixture
def make_installation_tree(tmp_path):
    """Factory for prepared installation trees under tmp_path/trees."""
    counter = {"n": 0}

    def make(**kwargs) -> Path:
        counter["n"] += 1
        return build_installation_tree(tmp_path / "trees" / str(counter["n"]), **kwargs)

    return make


class FakeMountTable:
    """In-memory stand-in for the mount primitives.

    Mounting a device copies its prepared tree into the target; unmounting
    empties the target again, so a leaked mount is visible both in
    ``active`` and on disk.
    """

    def __init__(self) -> None:
        self.active: Dict[str, str] = {}
        self.contents: Dict[str, Path] = {}
        self.failing: set = set()
        self.busy: set = set()
        self.calls: List[tuple] = []
        self.bound: set = set()

    def mount_partition(self, device, target, read_only=False, options=()):
        self.calls.append(("mount", device, str(target), read_only, tuple(options)))
        if device in self.failing:
            raise MountFailedError(device, str(target), "wrong fs type, bad superblock")
        tree = self.contents.get(device)
        if tree is not None:
            shutil.copytree(tree, target, symlinks=True, dirs_exist_ok=True)
        self.active[str(target)] = device

    def bind_mount(self, source, target):
        self.calls.append(("bind", str(source), str(target)))
        self.active[str(target)] = str(source)
        self.bound.add(str(target))

    def unmount(self, target, lazy_fallback=True):
        key = str(target)
        self.calls.append(("umount", key))
        if key in self.busy:
            raise UnmountFailedError(key, "target is busy")
        source = self.active.pop(key, None)
        self.bound.discard(key)
        if source in self.contents:
            for child in Path(key).iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        return False

    def is_mountpoint_active(self, path):
        return str(path) in self.active

    def mounted_filesystems(self):
        return [
            mount.MountRecord(device=source, mountpoint=target, fstype="ext4")
            for target, source in self.active.items()
            if target not in self.bound
        ]

    def filesystem_type_at(self, path):
        return "ext4" if str(path) in self.active else None

    def bind_targets(self) -> List[str]:
        return [call[2] for call in self.calls if call[0] == "bind"]


@pytest.fixture
def fake_mounts(monkeypatch) -> FakeMountTable:
    table = FakeMountTable()
    monkeypatch.setattr(mount, "mount_partition", table.mount_partition)
    monkeypatch.setattr(mount, "bind_mount", table.bind_mount)
    monkeypatch.setattr(mount, "unmount", table.unmount)
    monkeypatch.setattr(mount, "is_mountpoint_active", table.is_mountpoint_active)
    monkeypatch.setattr(mount, "mounted_filesystems", table.mounted_filesystems)
    monkeypatch.setattr(mount, "filesystem_type_at", table.filesystem_type_at)
    return table
