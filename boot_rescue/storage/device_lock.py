"""Exclusive per-disk mutation rights for repair sessions.

At most one repair session may mutate a given disk at a time. Sessions on
different disks are independent.

Usage:
    from boot_rescue.storage.device_lock import disk_session, is_disk_locked

    # In a repair session:
    with disk_session("/dev/sda", owner="repair-1a2b3c4d"):
        # mount, install bootloader, ...
        ...

    # In a caller deciding whether to start another session:
    if is_disk_locked("/dev/sda"):
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from boot_rescue.logging import LoggerFactory
from boot_rescue.storage.exceptions import DeviceBusyError


log = LoggerFactory.for_dispatcher()

# Lock for thread-safe access to the owner table
_lock = threading.Lock()

# Disk path -> owning session id
_owners: dict[str, str] = {}


@contextmanager
def disk_session(disk_path: str, owner: str) -> Generator[None, None, None]:
    """Hold exclusive mutation rights over ``disk_path`` for the block.

    Raises:
        DeviceBusyError: If another session already holds the disk
    """
    with _lock:
        current = _owners.get(disk_path)
        if current is not None and current != owner:
            raise DeviceBusyError(disk_path, f"held by session {current}")
        # Re-entry by the holding session is a no-op
        nested = current == owner
        if not nested:
            _owners[disk_path] = owner
            log.debug(f"Session {owner} acquired {disk_path}")

    try:
        yield
    finally:
        if not nested:
            with _lock:
                if _owners.get(disk_path) == owner:
                    del _owners[disk_path]
                log.debug(f"Session {owner} released {disk_path}")


def is_disk_locked(disk_path: str) -> bool:
    with _lock:
        return disk_path in _owners
