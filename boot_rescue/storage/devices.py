"""Block device and partition catalog built from lsblk.

This module enumerates every disk visible to the rescue host together with
its partitions, filesystem types, labels and UUIDs. It is a pure read of the
system topology: nothing is mounted or written.

Device Detection:
    Uses lsblk with JSON output and byte sizes to gather, per device:
    - Device path and name (e.g., /dev/sda, sda)
    - Size in bytes
    - Model string (replaced by "unknown" when absent)
    - Removable flag
    - Partition table type
    - Per child: filesystem type, label, UUID, mountpoint, partition type and flags

Ordering:
    Devices are returned sorted by path, and partitions within a device in
    natural order (sda2 before sda10), so numbered choices presented to an
    operator are stable between scans.

Filtering:
    Only TYPE=disk entries are catalogued. Devices whose names start with one
    of the ignored_device_prefixes setting (loop, zram, sr, ...) are skipped,
    since the rescue medium's own squashfs loops are not repair targets.

Operations:
    - enumerate_devices(): Ordered BlockDevice snapshots with partitions
    - find_device(): Look up one disk by path
    - partition_path(): Device node for a numbered partition

Example:
    >>> from boot_rescue.storage.devices import enumerate_devices
    >>> for device in enumerate_devices():
    ...     print(device.format_label(), len(device.partitions))
    /dev/nvme0n1 Samsung SSD 970 (476.9GB) 3
"""
from __future__ import annotations

import json
import subprocess
import time
from typing import Iterable, Optional

from boot_rescue.config.settings import get_setting
from boot_rescue.domain.models import BlockDevice, natural_key
from boot_rescue.logging import LoggerFactory
from boot_rescue.storage.commands import run_command

LSBLK_COLUMNS = (
    "PATH,NAME,TYPE,SIZE,MODEL,RM,MOUNTPOINT,FSTYPE,LABEL,UUID,"
    "PKNAME,PARTTYPE,PARTFLAGS,PTTYPE"
)
LSBLK_CACHE_TTL_SECONDS = 1.0

log = LoggerFactory.for_catalog()

_last_lsblk_names: Optional[tuple[str, ...]] = None
_lsblk_cache: Optional[list[dict]] = None
_lsblk_cache_time: Optional[float] = None


def get_block_devices(force_refresh: bool = False) -> list[dict]:
    """Return raw block device data from lsblk with a short-lived cache.

    When lsblk fails or returns invalid JSON, the previous cache remains intact
    and is returned if available; otherwise an empty list is returned. When
    force_refresh=True, errors return an empty list so callers do not receive
    stale data.
    """
    global _last_lsblk_names, _lsblk_cache, _lsblk_cache_time
    now = time.monotonic()
    if (
        not force_refresh
        and _lsblk_cache is not None
        and _lsblk_cache_time is not None
        and now - _lsblk_cache_time <= LSBLK_CACHE_TTL_SECONDS
    ):
        log.trace("lsblk cache hit")
        return _lsblk_cache
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
            log_output=False,
            log_command=False,
        )
        data = json.loads(result.stdout)
        devices = data.get("blockdevices", [])
        device_names = tuple(device.get("name") for device in devices if device.get("name"))
        if device_names != _last_lsblk_names:
            if device_names:
                log.debug(
                    f"lsblk found {len(device_names)} devices: {', '.join(device_names)}"
                )
            else:
                log.debug("lsblk found no block devices")
            _last_lsblk_names = device_names
        _lsblk_cache = devices
        _lsblk_cache_time = now
        return devices
    except (subprocess.CalledProcessError, json.JSONDecodeError, FileNotFoundError) as error:
        log.warning(f"lsblk failed: {error}")
        if _lsblk_cache is not None and not force_refresh:
            return _lsblk_cache
        return []


def _is_ignored(device: dict, prefixes: Iterable[str]) -> bool:
    name = device.get("name") or ""
    return any(name.startswith(prefix) for prefix in prefixes)


def enumerate_devices(force_refresh: bool = True) -> list[BlockDevice]:
    """Enumerate disks and their partitions, ordered by device path.

    Entries that cannot be converted (no name, garbage size) are skipped
    with a warning instead of failing the whole scan.
    """
    prefixes = get_setting("ignored_device_prefixes", []) or []
    catalog: list[BlockDevice] = []
    for device in get_block_devices(force_refresh=force_refresh):
        if device.get("type") != "disk":
            continue
        if _is_ignored(device, prefixes):
            continue
        try:
            catalog.append(BlockDevice.from_lsblk_dict(device))
        except (KeyError, TypeError, ValueError) as error:
            log.warning(f"Skipping unreadable lsblk entry {device.get('name')}: {error}")
    catalog.sort(key=lambda device: natural_key(device.path))
    return catalog


def find_device(path: str, devices: Optional[list[BlockDevice]] = None) -> Optional[BlockDevice]:
    for device in devices if devices is not None else enumerate_devices():
        if device.path == path:
            return device
    return None


def partition_path(disk_path: str, number: int) -> str:
    """Build the device node for partition ``number`` on ``disk_path``."""
    if disk_path[-1:].isdigit():
        return f"{disk_path}p{number}"
    return f"{disk_path}{number}"
