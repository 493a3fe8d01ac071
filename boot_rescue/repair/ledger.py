"""Resource ledger: tracked mounts and file backups with reverse-order unwind.

Every state change a repair session makes on the host or on a target disk
(mount, bind mount, directory created for a mount, file backed up or
replaced) is recorded here at the moment it succeeds. unwind_all() releases
the recorded entries in strict reverse creation order.

Unwind rules:
    - Mounts are unmounted (lazily if busy). A failure is logged and the
      unwind carries on with the remaining entries.
    - A backup is restored only if its original path is absent at unwind
      time; an existing file is never overwritten. Otherwise the backup copy
      is discarded (or kept when keep_backups is set).
    - Directories created for mount targets are removed if empty.
    - Files placed over a backed-up original are removed, which lets the
      backup entry beneath them restore the original.

The ledger is a context manager; leaving the with-block unwinds it on every
exit path, including exceptions. A ledger belongs to exactly one repair
session and is not shared between threads.

Example:
    >>> with ResourceLedger() as ledger:
    ...     ledger.acquire_mount(root / "proc", lambda: bind_mount(Path("/proc"), root / "proc"), bind=True)
    ...     ledger.acquire_backup(root / "boot/grub/grub.cfg")
    ...     run_repair()
    # proc unmounted and grub.cfg backup resolved here, even if run_repair raised
"""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from boot_rescue.config.settings import get_bool
from boot_rescue.domain.models import LedgerEntry, LedgerEntryKind
from boot_rescue.logging import EventLogger, LoggerFactory
from boot_rescue.storage import mount
from boot_rescue.storage.exceptions import UnmountFailedError


BACKUP_SUFFIX = ".rescue-backup"


class ResourceLedger:
    """Ordered record of acquired resources for one repair session."""

    def __init__(self, keep_backups: Optional[bool] = None):
        if keep_backups is None:
            keep_backups = get_bool("keep_backups", False)
        self.keep_backups = keep_backups
        self.log = LoggerFactory.for_ledger()
        self._entries: list[LedgerEntry] = []
        self._unwinding = False

    def __enter__(self) -> ResourceLedger:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unwind_all()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def mark(self) -> int:
        """Position to later unwind back to with unwind_to()."""
        return len(self._entries)

    def _record(self, entry: LedgerEntry) -> LedgerEntry:
        self._entries.append(entry)
        self.log.debug(f"Tracking {entry.describe()}")
        return entry

    def _check_open(self) -> None:
        if self._unwinding:
            raise RuntimeError("Cannot acquire resources while the ledger is unwinding")

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire_directory(self, path: Path) -> Path:
        """Create ``path`` and any missing parents, tracking each one created."""
        self._check_open()
        path = Path(path)
        missing: list[Path] = []
        current = path
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent
        for directory in reversed(missing):
            directory.mkdir()
            self._record(LedgerEntry(kind=LedgerEntryKind.DIRECTORY, path=directory))
        return path

    def acquire_mount(
        self,
        target: Path,
        mount_fn: Callable[[], None],
        *,
        bind: bool = False,
        source: Optional[str] = None,
    ) -> Path:
        """Run ``mount_fn`` to mount at ``target`` and track the result.

        The target directory is created (and tracked) if missing. If
        ``mount_fn`` raises, nothing is recorded for the mount and the
        exception propagates.
        """
        self._check_open()
        target = Path(target)
        self.acquire_directory(target)
        mount_fn()
        self._record(
            LedgerEntry(
                kind=LedgerEntryKind.MOUNT, path=target, bind=bind, source=source
            )
        )
        return target

    def _backup_path_for(self, path: Path) -> Path:
        candidate = path.with_name(f"{path.name}{BACKUP_SUFFIX}.{int(time.time())}")
        counter = 1
        while os.path.lexists(candidate):
            candidate = path.with_name(
                f"{path.name}{BACKUP_SUFFIX}.{int(time.time())}.{counter}"
            )
            counter += 1
        return candidate

    def acquire_backup(self, path: Path) -> Optional[Path]:
        """Copy ``path`` aside and track the copy. No-op if path is absent.

        Returns:
            The backup path, or None when there was nothing to back up
        """
        self._check_open()
        path = Path(path)
        if not os.path.lexists(path):
            self.log.debug(f"No backup needed, {path} does not exist")
            return None
        backup_path = self._backup_path_for(path)
        shutil.copy2(path, backup_path, follow_symlinks=False)
        self._record(
            LedgerEntry(
                kind=LedgerEntryKind.BACKUP, path=path, backup_path=backup_path
            )
        )
        self.log.info(f"Created backup: {backup_path}")
        return backup_path

    def acquire_replacement(self, path: Path, source: Path) -> Optional[Path]:
        """Replace ``path`` with a copy of ``source`` so unwind restores it.

        The original is moved aside as a tracked backup, then the copy is
        placed and tracked. Unwinding removes the placed copy first, after
        which the backup sees its original absent and restores it.

        Returns:
            The backup path, or None when ``path`` did not exist before
        """
        self._check_open()
        path = Path(path)
        backup_path = None
        if os.path.lexists(path):
            backup_path = self._backup_path_for(path)
            os.replace(path, backup_path)
            self._record(
                LedgerEntry(
                    kind=LedgerEntryKind.BACKUP, path=path, backup_path=backup_path
                )
            )
        shutil.copyfile(source, path)
        self._record(
            LedgerEntry(kind=LedgerEntryKind.PLACED_FILE, path=path, source=str(source))
        )
        return backup_path

    # ------------------------------------------------------------------
    # Unwind
    # ------------------------------------------------------------------

    def unwind_all(self) -> int:
        """Release every entry in reverse order. Safe to call repeatedly.

        Returns:
            Number of entries that could not be released cleanly
        """
        return self.unwind_to(0)

    def unwind_to(self, mark: int) -> int:
        """Release entries created after ``mark`` in reverse order."""
        if self._unwinding:
            return 0
        mark = max(0, mark)
        if len(self._entries) <= mark:
            return 0
        self._unwinding = True
        released = 0
        failures = 0
        try:
            while len(self._entries) > mark:
                entry = self._entries.pop()
                released += 1
                if not self._release(entry):
                    failures += 1
        finally:
            self._unwinding = False
        EventLogger.log_unwind(self.log, released, failures)
        return failures

    def _release(self, entry: LedgerEntry) -> bool:
        try:
            if entry.kind is LedgerEntryKind.MOUNT:
                return self._release_mount(entry)
            if entry.kind is LedgerEntryKind.BACKUP:
                return self._release_backup(entry)
            if entry.kind is LedgerEntryKind.PLACED_FILE:
                if os.path.lexists(entry.path):
                    os.unlink(entry.path)
                return True
            return self._release_directory(entry)
        except OSError as error:
            self.log.error(f"Could not release {entry.describe()}: {error}")
            return False

    def _release_mount(self, entry: LedgerEntry) -> bool:
        if not mount.is_mountpoint_active(entry.path):
            self.log.debug(f"{entry.path} already unmounted")
            return True
        self.log.info(f"Unmounting {entry.path}")
        try:
            mount.unmount(entry.path)
        except UnmountFailedError as error:
            self.log.error(str(error))
            return False
        return True

    def _release_backup(self, entry: LedgerEntry) -> bool:
        original = entry.path
        backup = entry.backup_path
        if backup is None or not os.path.lexists(backup):
            self.log.warning(f"Backup for {original} is missing, nothing to restore")
            return False
        if not os.path.lexists(original):
            self.log.info(f"Restoring backup: {original}")
            os.replace(backup, original)
            return True
        if self.keep_backups:
            self.log.info(f"Keeping backup {backup}")
        else:
            os.unlink(backup)
        return True

    def _release_directory(self, entry: LedgerEntry) -> bool:
        if not entry.path.exists():
            return True
        if mount.is_mountpoint_active(entry.path):
            self.log.warning(f"Leaving {entry.path} in place, still mounted")
            return False
        try:
            entry.path.rmdir()
        except OSError as error:
            self.log.warning(f"Could not remove {entry.path}: {error}")
            return False
        return True
