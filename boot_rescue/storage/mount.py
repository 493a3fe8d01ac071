"""Mount primitives with validated arguments and checked subprocess calls.

Every mount made during discovery or repair goes through these functions,
which raise MountError subclasses instead of returning status codes. None of
them remember what they mounted: tracking and reverse-order release is the
job of the repair ledger.

Functions:
    - ephemeral_mountpoint_path(): Fresh, uniquely named mount path
    - mount_partition(): Mount a device node, optionally read-only
    - bind_mount(): Bind a host directory into another tree
    - unmount(): Unmount, falling back to a lazy unmount when busy
    - is_mountpoint_active(): Check /proc/mounts for a mount target
    - mounted_filesystems(): Snapshot of the host mount table
"""

from __future__ import annotations

import os
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import psutil

from boot_rescue.config.settings import get_setting
from boot_rescue.logging import LoggerFactory
from boot_rescue.storage.commands import command_error_detail, run_command
from boot_rescue.storage.exceptions import MountFailedError, UnmountFailedError


# Module logger
log = LoggerFactory.for_system()

_FORBIDDEN_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")


@dataclass(frozen=True)
class MountRecord:
    device: str
    mountpoint: str
    fstype: str
    options: str = ""


def _validate_device(device: str) -> None:
    # Validate device path to prevent option injection
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _FORBIDDEN_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def ephemeral_mountpoint_path(name: str, base: Optional[Path] = None) -> Path:
    """Return a fresh, uniquely named path to mount into. Not created here.

    Args:
        name: Device name used as part of the directory name (e.g., 'sda2')
        base: Parent directory (default: the mount_base setting)
    """
    # Get only the final component, stripping any parent directories
    name = Path(str(name)).name
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid mount name: {name}")
    base = Path(base or get_setting("mount_base", "/tmp"))
    return base / f"safe_mount_{name}_{uuid.uuid4().hex[:8]}"


def mount_partition(
    device: str,
    target: Path,
    read_only: bool = False,
    options: Sequence[str] = (),
) -> None:
    """Mount a device node at target.

    Args:
        device: Device node (e.g., '/dev/sda2')
        target: Existing directory to mount onto
        read_only: Mount with -o ro
        options: Extra mount options (e.g., 'subvol=@')

    Raises:
        ValueError: If the device path is invalid
        MountFailedError: If mount exits unsuccessfully
    """
    _validate_device(device)
    all_options = (["ro"] if read_only else []) + list(options)
    command = ["mount"]
    if all_options:
        command += ["-o", ",".join(all_options)]
    command += [device, str(target)]
    try:
        run_command(command)
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise MountFailedError(device, str(target), command_error_detail(error)) from error


def bind_mount(source: Path, target: Path) -> None:
    """Bind mount a host directory at target.

    Raises:
        MountFailedError: If mount --bind exits unsuccessfully
    """
    try:
        run_command(["mount", "--bind", str(source), str(target)])
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise MountFailedError(str(source), str(target), command_error_detail(error)) from error


def unmount(target: Path, lazy_fallback: bool = True) -> bool:
    """Unmount target, retrying lazily if the normal unmount fails.

    Returns:
        True if a lazy unmount was needed

    Raises:
        UnmountFailedError: If neither unmount succeeds
    """
    try:
        run_command(["umount", str(target)])
        return False
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        detail = command_error_detail(error)
        if not lazy_fallback:
            raise UnmountFailedError(str(target), detail) from error
        log.warning(f"Unmount of {target} failed ({detail}), attempting lazy unmount")
    try:
        run_command(["umount", "-l", str(target)])
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise UnmountFailedError(str(target), command_error_detail(error)) from error
    return True


def is_mountpoint_active(mountpoint: Path) -> bool:
    target = str(mountpoint)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


def mounted_filesystems() -> list[MountRecord]:
    """Snapshot of mounted block filesystems on the host."""
    return [
        MountRecord(
            device=part.device,
            mountpoint=part.mountpoint,
            fstype=part.fstype,
            options=part.opts,
        )
        for part in psutil.disk_partitions(all=False)
    ]


def filesystem_type_at(path: Path) -> Optional[str]:
    """Filesystem type of the mount that holds exactly ``path``."""
    target = os.path.realpath(str(path))
    for record in mounted_filesystems():
        if os.path.realpath(record.mountpoint) == target:
            return record.fstype
    return None
