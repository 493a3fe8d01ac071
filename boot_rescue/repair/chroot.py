"""Chroot repair environment rooted at a mounted Linux installation.

build() prepares the tree so the installation's own tools can run against
the real hardware:

    1. (UEFI only) locate the EFI System Partition before touching anything
    2. bind mount /dev, /proc, /sys and /run from the host
    3. bind mount /dev/mapper when LVM volumes are present
    4. swap in the host's /etc/resolv.conf (original restored on teardown)
    5. (UEFI only) mount the ESP at /boot/efi inside the tree

Every step goes through the session ledger, and teardown() unwinds the
ledger back to the position it had before build() started, so a failed
command, a failed build or a cancellation all leave the host as it was.

Only one environment may be active per builder at a time.
"""

from __future__ import annotations

import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from boot_rescue.config.settings import DEFAULT_EFI_DIRECTORY, get_bool, get_path, get_setting
from boot_rescue.domain.models import (
    BlockDevice,
    DistroFamily,
    FirmwareMode,
    Installation,
    Partition,
    RepairIntent,
)
from boot_rescue.logging import LoggerFactory
from boot_rescue.repair import efi
from boot_rescue.repair.ledger import ResourceLedger
from boot_rescue.storage import mount
from boot_rescue.storage.devices import find_device
from boot_rescue.storage.exceptions import (
    ChrootCommandError,
    ChrootEnvironmentError,
    DeviceNotFoundError,
    EfiPartitionNotFoundError,
    RepairCancelledError,
)

HOST_BIND_MOUNTS = ("dev", "proc", "sys", "run")
DEVICE_MAPPER_PATH = Path("/dev/mapper")
CHROOT_PATH = "/usr/sbin:/usr/bin:/sbin:/bin"

# Presence of either means RHEL/Fedora style grub2-* tooling
RHEL_MARKERS = ("usr/sbin/grub2-install", "usr/bin/grub2-install", "sbin/grub2-install")

log = LoggerFactory.for_chroot()


@dataclass
class RepairContext:
    """A live chroot environment. Owned by exactly one repair session."""

    installation: Installation
    firmware_mode: FirmwareMode
    root: Path
    disk_path: str
    family: DistroFamily
    ledger: ResourceLedger
    mark: int
    efi_partition: Optional[Partition] = None
    config_backed_up: bool = False
    active: bool = True


def detect_distro_family(root: Path) -> DistroFamily:
    for marker in RHEL_MARKERS:
        if (root / marker).exists():
            return DistroFamily.RHEL
    return DistroFamily.DEBIAN


def _device_mapper_in_use() -> bool:
    try:
        return DEVICE_MAPPER_PATH.is_dir() and any(
            entry.name != "control" for entry in DEVICE_MAPPER_PATH.iterdir()
        )
    except OSError:
        return False


def _interactive_shell(command: list[str]) -> int:
    """Hand the terminal to an interactive command and wait for it."""
    return subprocess.run(command, check=False).returncode


class ChrootBuilder:
    """Builds, runs commands in and tears down chroot repair environments."""

    def __init__(
        self,
        shell_runner: Optional[Callable[[list[str]], int]] = None,
        timeout: Optional[float] = None,
    ):
        self.shell_runner = shell_runner or _interactive_shell
        if timeout is None:
            timeout = get_setting("command_timeout_seconds")
        self.timeout = timeout
        # time.monotonic() value set by the dispatcher for the whole session
        self.deadline: Optional[float] = None
        self._active: Optional[RepairContext] = None

    @property
    def active_context(self) -> Optional[RepairContext]:
        return self._active

    def deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def command_timeout(self) -> Optional[float]:
        """Per-command timeout, shortened to what is left of the session deadline.

        Raises:
            RepairCancelledError: If the session deadline has already passed
        """
        if self.deadline is None:
            return self.timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise RepairCancelledError("session deadline reached")
        if self.timeout is None:
            return remaining
        return min(float(self.timeout), remaining)

    # ------------------------------------------------------------------
    # Environment lifecycle
    # ------------------------------------------------------------------

    def build(
        self,
        installation: Installation,
        firmware_mode: FirmwareMode,
        ledger: ResourceLedger,
        disk: Optional[BlockDevice] = None,
    ) -> RepairContext:
        """Prepare a chroot environment inside a mounted installation.

        Raises:
            ChrootEnvironmentError: If another environment is active or the
                installation is not mounted
            EfiPartitionNotFoundError: UEFI mode without a usable ESP
            DeviceNotFoundError: UEFI mode and the disk is not in the catalog
            MountError: If a bind or ESP mount fails
        """
        if installation.mount_path is None:
            raise ChrootEnvironmentError(
                installation.partition.path, "installation is not mounted"
            )
        root = Path(installation.mount_path)
        if self._active is not None:
            raise ChrootEnvironmentError(
                str(root), f"environment already active at {self._active.root}"
            )

        mark = ledger.mark()
        log.info(f"Preparing chroot environment at {root} ({firmware_mode.value})")
        try:
            efi_partition = None
            if firmware_mode is FirmwareMode.UEFI:
                efi_partition = self._require_efi_partition(installation, disk)

            for name in HOST_BIND_MOUNTS:
                self._bind(ledger, Path("/") / name, root / name)
            if _device_mapper_in_use():
                log.info("LVM volumes present, binding /dev/mapper")
                self._bind(ledger, DEVICE_MAPPER_PATH, root / "dev" / "mapper")

            self._place_resolv_conf(ledger, root)

            if efi_partition is not None:
                self._mount_efi(ledger, root, efi_partition)
        except Exception:
            log.error("Chroot environment build failed, rolling back")
            ledger.unwind_to(mark)
            raise

        context = RepairContext(
            installation=installation,
            firmware_mode=firmware_mode,
            root=root,
            disk_path=installation.disk_path,
            family=detect_distro_family(root),
            ledger=ledger,
            mark=mark,
            efi_partition=efi_partition,
        )
        self._active = context
        log.info(f"Chroot environment ready ({context.family.value} tooling)")
        return context

    def teardown(self, context: RepairContext) -> int:
        """Release everything build() and later steps acquired. Idempotent.

        Returns:
            Number of ledger entries that could not be released
        """
        failures = 0
        if context.active:
            log.info(f"Tearing down chroot environment at {context.root}")
            failures = context.ledger.unwind_to(context.mark)
            context.active = False
        if self._active is context:
            self._active = None
        return failures

    @contextmanager
    def environment(
        self,
        installation: Installation,
        firmware_mode: FirmwareMode,
        ledger: ResourceLedger,
        disk: Optional[BlockDevice] = None,
    ) -> Iterator[RepairContext]:
        """build() on entry, teardown() on every exit path."""
        context = self.build(installation, firmware_mode, ledger, disk)
        try:
            yield context
        finally:
            self.teardown(context)

    def _require_efi_partition(
        self, installation: Installation, disk: Optional[BlockDevice]
    ) -> Partition:
        if disk is None:
            disk = find_device(installation.disk_path)
        if disk is None:
            raise DeviceNotFoundError(installation.disk_path)
        partition = efi.locate(disk)
        if partition is None:
            log.error("Could not find EFI partition for UEFI system")
            raise EfiPartitionNotFoundError(installation.disk_path)
        return partition

    def _bind(self, ledger: ResourceLedger, source: Path, target: Path) -> None:
        ledger.acquire_mount(
            target,
            lambda: mount.bind_mount(source, target),
            bind=True,
            source=str(source),
        )

    def _place_resolv_conf(self, ledger: ResourceLedger, root: Path) -> None:
        source = get_path("resolv_conf_source", "/etc/resolv.conf")
        target = root / "etc" / "resolv.conf"
        if not source.is_file() or not target.parent.is_dir():
            log.debug("Skipping name resolution setup")
            return
        try:
            ledger.acquire_replacement(target, source)
        except OSError as error:
            log.warning(f"Could not copy {source} into chroot: {error}")

    def _mount_efi(self, ledger: ResourceLedger, root: Path, partition: Partition) -> None:
        efi_directory = str(get_setting("efi_directory", DEFAULT_EFI_DIRECTORY))
        target = root / efi_directory.lstrip("/")
        log.info(f"Mounting EFI partition {partition.path} at {target}")
        ledger.acquire_mount(
            target,
            lambda: mount.mount_partition(partition.path, target),
            source=partition.path,
        )

    # ------------------------------------------------------------------
    # Command selection
    # ------------------------------------------------------------------

    def bootloader_id(self, context: RepairContext) -> str:
        configured = get_setting("bootloader_id")
        if configured:
            return str(configured)
        if context.installation.distro_id:
            return context.installation.distro_id
        return "rescue" if context.family is DistroFamily.RHEL else "ubuntu"

    def install_command(self, context: RepairContext) -> list[str]:
        efi_directory = str(get_setting("efi_directory", DEFAULT_EFI_DIRECTORY))
        if context.family is DistroFamily.RHEL:
            if context.firmware_mode is FirmwareMode.UEFI:
                return [
                    "grub2-install",
                    "--target=x86_64-efi",
                    f"--efi-directory={efi_directory}",
                    f"--bootloader-id={self.bootloader_id(context)}",
                ]
            return ["grub2-install", "--target=i386-pc", context.disk_path]
        if context.firmware_mode is FirmwareMode.UEFI:
            return [
                "grub-install",
                "--target=x86_64-efi",
                f"--efi-directory={efi_directory}",
                f"--bootloader-id={self.bootloader_id(context)}",
                "--recheck",
            ]
        return ["grub-install", "--target=i386-pc", "--recheck", context.disk_path]

    def menu_command(self, context: RepairContext) -> list[str]:
        if context.family is DistroFamily.RHEL:
            return ["grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"]
        return ["update-grub"]

    def package_reinstall_command(self, context: RepairContext) -> list[str]:
        if context.family is DistroFamily.RHEL:
            packages = ["grub2-tools", "grub2-pc"]
            if context.firmware_mode is FirmwareMode.UEFI:
                packages = ["grub2-tools", "grub2-efi-x64", "shim-x64"]
            return ["dnf", "reinstall", "-y", *packages]
        packages = ["grub-pc", "grub-pc-bin"]
        if context.firmware_mode is FirmwareMode.UEFI:
            packages += ["grub-efi-amd64", "grub-efi-amd64-bin"]
        return ["apt-get", "install", "--reinstall", "-y", *packages]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _check_active(self, context: RepairContext) -> None:
        if not context.active or self._active is not context:
            raise ChrootEnvironmentError(str(context.root), "environment is not active")

    def run(self, context: RepairContext, command: Sequence[str]) -> str:
        """Run ``command`` inside the chroot, logging its combined output.

        Raises:
            ChrootCommandError: On non-zero exit or timeout
            RepairCancelledError: If the session deadline runs out first
        """
        self._check_active(context)
        command = [str(part) for part in command]
        timeout = self.command_timeout()
        log.info(f"Running in chroot: {' '.join(command)}")
        env = {"PATH": CHROOT_PATH, "DEBIAN_FRONTEND": "noninteractive", "LC_ALL": "C"}
        try:
            result = subprocess.run(
                ["chroot", str(context.root), *command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            output = error.output or ""
            if isinstance(output, bytes):
                output = output.decode(errors="replace")
            self._log_output(output)
            if self.deadline_passed():
                log.error(f"{command[0]} still running at the session deadline")
                raise RepairCancelledError("session deadline reached") from error
            raise ChrootCommandError(command, None, output) from error
        except FileNotFoundError as error:
            raise ChrootCommandError(command, 127, str(error)) from error

        output = result.stdout or ""
        self._log_output(output)
        if result.returncode != 0:
            log.error(f"{command[0]} exited with {result.returncode}")
            raise ChrootCommandError(command, result.returncode, output)
        return output

    def _log_output(self, output: str) -> None:
        for line in output.splitlines():
            if line.strip():
                log.info(f"  {line.rstrip()}")

    def has_command(self, context: RepairContext, name: str) -> bool:
        return any(
            (context.root / directory / name).exists()
            for directory in ("usr/sbin", "usr/bin", "sbin", "bin")
        )

    def backup_boot_configuration(self, context: RepairContext) -> None:
        """Back up grub.cfg and /etc/default/grub once per environment."""
        if context.config_backed_up:
            return
        for relative in ("boot/grub/grub.cfg", "boot/grub2/grub.cfg", "etc/default/grub"):
            context.ledger.acquire_backup(context.root / relative)
        context.config_backed_up = True

    def reinstall_packages(self, context: RepairContext) -> str:
        return self.run(context, self.package_reinstall_command(context))

    def install_bootloader(self, context: RepairContext) -> str:
        self.backup_boot_configuration(context)
        log.info("Installing GRUB...")
        return self.run(context, self.install_command(context))

    def scan_foreign_systems(self, context: RepairContext) -> Optional[str]:
        """Run os-prober so a regenerated menu keeps other systems' entries.

        Best-effort: a missing or failing os-prober is only logged.
        """
        wanted = context.installation.dual_boot or get_bool("run_os_prober", True)
        if not wanted or not self.has_command(context, "os-prober"):
            return None
        try:
            return self.run(context, ["os-prober"])
        except ChrootCommandError as error:
            log.warning(f"os-prober did not complete: {error}")
            return None

    def regenerate_menu(self, context: RepairContext) -> str:
        self.backup_boot_configuration(context)
        self.scan_foreign_systems(context)
        log.info("Regenerating boot menu...")
        return self.run(context, self.menu_command(context))

    def open_shell(self, context: RepairContext) -> int:
        """Hand an interactive shell inside the chroot to the operator."""
        self._check_active(context)
        log.info("Opening shell in chroot environment, type 'exit' to return")
        returncode = self.shell_runner(["chroot", str(context.root), "/bin/bash"])
        log.info(f"Chroot shell exited with {returncode}")
        return returncode

    def run_in_context(self, context: RepairContext, intent: RepairIntent) -> str:
        """Run the command plan for a single-action intent.

        Raises:
            ChrootCommandError: If a mandatory command fails
            ValueError: For intents that do not run inside a chroot
        """
        if intent is RepairIntent.BOOTLOADER:
            output = ""
            if get_bool("reinstall_grub_packages", False):
                try:
                    output += self.reinstall_packages(context)
                except ChrootCommandError as error:
                    log.warning(f"GRUB package reinstall failed, continuing: {error}")
            output += self.install_bootloader(context)
            output += self.regenerate_menu(context)
            return output
        if intent is RepairIntent.MENU:
            return self.regenerate_menu(context)
        if intent is RepairIntent.CUSTOM:
            returncode = self.open_shell(context)
            return f"shell exited with {returncode}"
        raise ValueError(f"{intent.value} does not run inside a chroot")
