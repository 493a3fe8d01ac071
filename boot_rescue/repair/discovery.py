"""Installation discovery across every catalogued disk.

discover() is purely read-only: each candidate partition is probed through a
transient read-only mount and nothing stays mounted afterwards, so running it
twice on unchanged hardware yields the same ordered list.

Read-write access is only taken for the installation actually chosen for
repair, through activate(), which mounts it into a ledger-tracked path.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import BlockDevice, Installation
from boot_rescue.logging import EventLogger, LoggerFactory
from boot_rescue.repair.ledger import ResourceLedger
from boot_rescue.repair.prober import probe
from boot_rescue.storage import mount
from boot_rescue.storage.devices import enumerate_devices
from boot_rescue.storage.exceptions import MountFailedError, RemountFailedError

log = LoggerFactory.for_probe()


def discover(
    devices: Optional[list[BlockDevice]] = None,
    mount_base: Optional[Path] = None,
) -> list[Installation]:
    """Find bootable Linux installations, in catalog order.

    Returns an empty list when nothing is found; deciding whether that is
    fatal is up to the caller.
    """
    if devices is None:
        devices = enumerate_devices()
    log.info(f"Scanning {len(devices)} disk(s) for Linux installations")

    installations: list[Installation] = []
    for disk in devices:
        for partition in disk.partitions:
            result = probe(partition, disk=disk, mount_base=mount_base)
            if not result.is_installation:
                continue
            installation = Installation.from_probe(result)
            EventLogger.log_installation_found(
                log,
                partition.path,
                installation.distro_name,
                installation.dual_boot,
                bootloader=installation.bootloader.value,
            )
            installations.append(installation)

    if not installations:
        log.warning("No Linux installations found")
    return installations


def mount_options(installation: Installation) -> list[str]:
    if installation.subvolume:
        return [f"subvol={installation.subvolume}"]
    return []


def activate(
    installation: Installation,
    ledger: ResourceLedger,
    read_only: bool = False,
    mount_base: Optional[Path] = None,
) -> Installation:
    """Mount a discovered installation for repair and track the mount.

    Returns a copy of the installation carrying its mount path.

    Raises:
        RemountFailedError: If the partition cannot be mounted, e.g. a dirty
            filesystem the kernel refuses to mount read-write
    """
    partition = installation.partition
    target = mount.ephemeral_mountpoint_path(partition.name, mount_base)
    mode = "read-only" if read_only else "read-write"
    log.info(f"Mounting {partition.path} {mode} at {target}")
    try:
        ledger.acquire_mount(
            target,
            lambda: mount.mount_partition(
                partition.path,
                target,
                read_only=read_only,
                options=mount_options(installation),
            ),
            source=partition.path,
        )
    except MountFailedError as error:
        log.warning(f"Dropping {installation.format_label()}: {error}")
        raise RemountFailedError(partition.path, error.detail or str(error)) from error
    return replace(installation, mount_path=target, read_only=read_only)
