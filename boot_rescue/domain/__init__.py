"""Domain models for boot repair sessions.

This package contains type-safe snapshots of devices and partitions and the
objects a repair session works with.
"""

from __future__ import annotations

from .models import (
    UNKNOWN,
    BlockDevice,
    BootloaderKind,
    DispatcherState,
    DistroFamily,
    FilesystemKind,
    FirmwareMode,
    Installation,
    InstallationEvidence,
    LedgerEntry,
    LedgerEntryKind,
    Partition,
    ProbeResult,
    RepairIntent,
    SessionStatus,
    StepResult,
    StepStatus,
)


__all__ = [
    "UNKNOWN",
    "BlockDevice",
    "BootloaderKind",
    "DispatcherState",
    "DistroFamily",
    "FilesystemKind",
    "FirmwareMode",
    "Installation",
    "InstallationEvidence",
    "LedgerEntry",
    "LedgerEntryKind",
    "Partition",
    "ProbeResult",
    "RepairIntent",
    "SessionStatus",
    "StepResult",
    "StepStatus",
]
