"""Partition table queries through parted's machine-readable output.

Everything that needs partition table attributes (ESP markers, the legacy
boot flag) goes through query_partition_table(), which turns ``parted -m``
output into structured records, so callers never grep tool output.

parted -m format:
    BYT;
    /dev/sda:512110190592B:scsi:512:512:gpt:ATA Samsung SSD:;
    1:1048576B:537919487B:536870912B:fat32:EFI System Partition:boot, esp;
    2:537919488B:512109142015B:511571222528B:ext4::;
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Optional

from boot_rescue.logging import LoggerFactory
from boot_rescue.storage.commands import command_error_detail, run_command
from boot_rescue.storage.devices import partition_path
from boot_rescue.storage.exceptions import PartitionTableError

log = LoggerFactory.for_catalog()

LINUX_PARTED_FILESYSTEMS = ("ext2", "ext3", "ext4", "xfs", "btrfs")


@dataclass(frozen=True)
class PartitionTableRecord:
    number: int
    start_bytes: int
    end_bytes: int
    size_bytes: int
    filesystem: str = ""
    name: str = ""
    flags: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_esp(self) -> bool:
        return "esp" in self.flags

    @property
    def is_boot(self) -> bool:
        return "boot" in self.flags

    @property
    def is_linux(self) -> bool:
        return self.filesystem in LINUX_PARTED_FILESYSTEMS


@dataclass(frozen=True)
class PartitionTable:
    disk: str
    label: str  # "gpt", "msdos", "loop", "unknown"
    records: tuple[PartitionTableRecord, ...] = ()

    @property
    def is_msdos(self) -> bool:
        return self.label == "msdos"

    def device_for(self, record: PartitionTableRecord) -> str:
        return partition_path(self.disk, record.number)

    def boot_record(self) -> Optional[PartitionTableRecord]:
        for record in self.records:
            if record.is_boot:
                return record
        return None

    def first_linux_record(self) -> Optional[PartitionTableRecord]:
        for record in self.records:
            if record.is_linux:
                return record
        return None


def _parse_bytes(value: str) -> int:
    value = value.strip()
    if value.endswith("B"):
        value = value[:-1]
    try:
        return int(value)
    except ValueError:
        return 0


def _parse_flags(value: str) -> frozenset[str]:
    return frozenset(flag.strip() for flag in value.split(",") if flag.strip())


def parse_parted_machine_output(disk: str, output: str) -> PartitionTable:
    """Parse ``parted -m -s <disk> unit B print`` output."""
    label = "unknown"
    records: list[PartitionTableRecord] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line == "BYT;":
            continue
        if line.endswith(";"):
            line = line[:-1]
        fields = line.split(":")
        if fields[0].startswith("/dev/"):
            if len(fields) > 5 and fields[5]:
                label = fields[5]
            continue
        if not fields[0].isdigit() or len(fields) < 4:
            continue
        flags = fields[-1] if len(fields) >= 7 else ""
        name = ":".join(fields[5:-1]) if len(fields) >= 7 else ""
        records.append(
            PartitionTableRecord(
                number=int(fields[0]),
                start_bytes=_parse_bytes(fields[1]),
                end_bytes=_parse_bytes(fields[2]),
                size_bytes=_parse_bytes(fields[3]),
                filesystem=fields[4].strip() if len(fields) > 4 else "",
                name=name,
                flags=_parse_flags(flags),
            )
        )
    return PartitionTable(disk=disk, label=label, records=tuple(records))


def query_partition_table(disk: str) -> PartitionTable:
    """Return structured partition table records for a disk.

    Raises:
        PartitionTableError: If parted is missing or cannot read the disk
    """
    try:
        result = run_command(
            ["parted", "-m", "-s", disk, "unit", "B", "print"],
            log_output=False,
        )
    except FileNotFoundError as error:
        raise PartitionTableError(disk, "parted is not installed") from error
    except subprocess.CalledProcessError as error:
        raise PartitionTableError(disk, command_error_detail(error)) from error
    table = parse_parted_machine_output(disk, result.stdout)
    log.debug(f"{disk}: {table.label} table with {len(table.records)} partition(s)")
    return table


def set_boot_flag(disk: str, number: int) -> None:
    """Set the legacy boot flag on partition ``number``.

    Raises:
        PartitionTableError: If parted refuses the change
    """
    try:
        run_command(["parted", "-s", disk, "set", str(number), "boot", "on"])
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        raise PartitionTableError(disk, command_error_detail(error)) from error
