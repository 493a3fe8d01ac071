"""Settings storage for repair configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BOOT_RESCUE_SETTINGS_PATH",
        Path.home() / ".config" / "boot-rescue" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_MOUNT_BASE = "/tmp"
DEFAULT_EFI_DIRECTORY = "/boot/efi"
DEFAULT_EFI_SIZE_THRESHOLD_BYTES = 1024**3

DEFAULT_SETTINGS: dict[str, Any] = {
    "mount_base": DEFAULT_MOUNT_BASE,
    "efi_directory": DEFAULT_EFI_DIRECTORY,
    "efi_size_threshold_bytes": DEFAULT_EFI_SIZE_THRESHOLD_BYTES,
    "bootloader_id": None,
    "reinstall_grub_packages": False,
    "run_os_prober": True,
    "keep_backups": False,
    "command_timeout_seconds": None,
    "ignored_device_prefixes": ["loop", "ram", "zram", "sr", "fd"],
    "resolv_conf_source": "/etc/resolv.conf",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_path(key: str, default: str | None = None) -> Path:
    return Path(get_setting(key, default) or default or "")


load_settings()
