"""Parsing of /etc/fstab and distribution release files inside a mounted root."""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class FstabEntry:
    spec: str  # e.g., "UUID=...", "/dev/sda1"
    mountpoint: str
    fstype: str
    options: str = "defaults"
    dump: str = "0"
    passno: str = "0"

    @property
    def option_list(self) -> list[str]:
        return [option for option in self.options.split(",") if option]


def unescape_octal(value: str) -> str:
    """Decode fstab's \\NNN escapes (\\040 space, \\011 tab, \\134 backslash)."""
    return OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def parse_fstab(text: str) -> list[FstabEntry]:
    """Parse fstab text, skipping comments, blank and malformed lines."""
    entries = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if len(fields) < 3:
            continue
        entries.append(
            FstabEntry(
                spec=unescape_octal(fields[0]),
                mountpoint=unescape_octal(fields[1]),
                fstype=fields[2],
                options=fields[3] if len(fields) > 3 else "defaults",
                dump=fields[4] if len(fields) > 4 else "0",
                passno=fields[5] if len(fields) > 5 else "0",
            )
        )
    return entries


def resolve_in_root(root: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``root``, re-rooting absolute symlinks.

    /etc/os-release is commonly a symlink to /usr/lib/os-release; followed
    naively from the rescue host it would point at the host's own file.
    """
    path = root / relative.lstrip("/")
    for _ in range(8):
        if not path.is_symlink():
            return path
        target = os.readlink(path)
        if target.startswith("/"):
            path = root / target.lstrip("/")
        else:
            path = path.parent / target
    return path


def read_fstab(root: Path) -> list[FstabEntry]:
    path = resolve_in_root(root, "etc/fstab")
    if not path.is_file():
        return []
    return parse_fstab(path.read_text(encoding="utf-8", errors="replace"))


def find_root_entry(entries: list[FstabEntry]) -> Optional[FstabEntry]:
    for entry in entries:
        if entry.mountpoint == "/":
            return entry
    return None


def _parse_key_values(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = [value.strip().strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


def read_distribution(root: Path) -> tuple[str, Optional[str]]:
    """Human-readable distribution name and machine id of an installation.

    Reads /etc/os-release (NAME, ID), falling back to /etc/lsb-release
    (DISTRIB_DESCRIPTION, DISTRIB_ID). Returns ("Unknown", None) when
    neither is present.
    """
    os_release = resolve_in_root(root, "etc/os-release")
    if os_release.is_file():
        values = _parse_key_values(os_release.read_text(encoding="utf-8", errors="replace"))
        name = values.get("NAME") or values.get("PRETTY_NAME")
        if name:
            return name, (values.get("ID") or None)
    lsb_release = resolve_in_root(root, "etc/lsb-release")
    if lsb_release.is_file():
        values = _parse_key_values(lsb_release.read_text(encoding="utf-8", errors="replace"))
        name = values.get("DISTRIB_DESCRIPTION")
        if name:
            distro_id = values.get("DISTRIB_ID")
            return name, (distro_id.lower() if distro_id else None)
    return "Unknown", None
