"""Repair action dispatcher.

One call to RepairDispatcher.run() is one repair session:

    Idle -> DiscoveringFirmware -> DiscoveringInstallations
         -> AwaitingSelection -> ExecutingAction -> ReportingResult -> Idle

Each session owns a fresh ResourceLedger and a session log file. Whatever
happens inside the action (success, a failed step, a storage error,
cancellation) the ledger is unwound before the result is reported, and
errors from the repair layer end up as step outcomes in the summary rather
than escaping to the caller.

Action kinds:
    auto        bootloader install, menu regeneration and boot flag check;
                a failed step is recorded and the next one still runs
    bootloader  GRUB (re)install plus menu regeneration in a chroot
    mbr         grub-install to the raw disk from the host, no chroot
    menu        menu regeneration only
    boot-flags  legacy boot flag check-and-fix on every disk
    custom      interactive shell inside the chroot
    inspect     read-only boot configuration report
"""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from boot_rescue.config.settings import get_bool
from boot_rescue.domain.models import (
    BlockDevice,
    DispatcherState,
    FirmwareMode,
    Installation,
    RepairIntent,
    SessionStatus,
    StepResult,
    StepStatus,
)
from boot_rescue.logging import (
    EventLogger,
    LoggerFactory,
    new_session_id,
    operation_context,
    session_log,
)
from boot_rescue.repair.boot_flags import check_boot_flags
from boot_rescue.repair.chroot import ChrootBuilder, RepairContext
from boot_rescue.repair.discovery import activate, discover
from boot_rescue.repair.firmware import detect_firmware_mode
from boot_rescue.repair.inspect import inspect_installation
from boot_rescue.repair.ledger import ResourceLedger
from boot_rescue.repair.summary import RepairSummary
from boot_rescue.storage.commands import command_error_detail, run_command
from boot_rescue.storage.device_lock import disk_session
from boot_rescue.storage.devices import enumerate_devices, find_device
from boot_rescue.storage.exceptions import (
    DiscoveryEmptyError,
    InvalidSelectionError,
    PartitionTableError,
    RepairCancelledError,
    RepairError,
    StorageError,
)

CHROOT_INTENTS = (RepairIntent.BOOTLOADER, RepairIntent.MENU, RepairIntent.CUSTOM)


def select_installation(
    installations: list[Installation], index: Optional[int]
) -> Installation:
    """Pick an installation by 1-based index.

    Without an index the choice is only made when it is unambiguous.

    Raises:
        InvalidSelectionError: If the index is missing or out of range
    """
    if index is None:
        if len(installations) == 1:
            return installations[0]
        raise InvalidSelectionError(None, len(installations))
    if not 1 <= index <= len(installations):
        raise InvalidSelectionError(index, len(installations))
    return installations[index - 1]


class RepairDispatcher:
    """Runs repair sessions one at a time."""

    def __init__(
        self,
        builder: Optional[ChrootBuilder] = None,
        devices_provider: Callable[[], list[BlockDevice]] = enumerate_devices,
        firmware_detector: Callable[[], FirmwareMode] = detect_firmware_mode,
        log_dir: Optional[Path] = None,
        mount_base: Optional[Path] = None,
    ):
        self.builder = builder or ChrootBuilder()
        self.devices_provider = devices_provider
        self.firmware_detector = firmware_detector
        self.log_dir = log_dir
        self.mount_base = mount_base
        self.state = DispatcherState.IDLE
        self.history: list[DispatcherState] = [DispatcherState.IDLE]
        self._devices: list[BlockDevice] = []
        self.log = LoggerFactory.for_dispatcher()

    def _enter(self, state: DispatcherState) -> None:
        self.state = state
        self.history.append(state)
        self.log.debug(f"Dispatcher state: {state.value}")

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RepairCancelledError("cancelled by caller")
        if self.builder.deadline_passed():
            raise RepairCancelledError("session deadline reached")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def run(
        self,
        intent: RepairIntent,
        index: Optional[int] = None,
        firmware: Optional[FirmwareMode] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> RepairSummary:
        """Run one repair session and report its outcome.

        Args:
            intent: Repair action to perform
            index: 1-based installation index, required when more than one
                installation is found
            firmware: Forced firmware mode; detected when None
            cancel_event: Checked between steps; when set, the session is
                torn down and reported as cancelled
            timeout: Seconds the whole session may take. Running commands
                are stopped when it runs out and the session is torn down
                and reported as cancelled
        """
        if self.state is not DispatcherState.IDLE:
            raise RuntimeError(f"Dispatcher busy ({self.state.value})")
        session_id = new_session_id()
        summary = RepairSummary(intent=intent, session_id=session_id)
        self.builder.deadline = time.monotonic() + timeout if timeout else None
        try:
            with session_log(session_id, self.log_dir) as log_path:
                summary.log_path = log_path
                self.log = LoggerFactory.for_dispatcher(job_id=session_id)
                self.log.info(f"Repair session {session_id} started ({intent.value})")
                self._session(summary, intent, index, firmware, cancel_event)
        finally:
            self.builder.deadline = None
            if self.state is not DispatcherState.IDLE:
                self._enter(DispatcherState.IDLE)
        return summary

    def _session(
        self,
        summary: RepairSummary,
        intent: RepairIntent,
        index: Optional[int],
        firmware: Optional[FirmwareMode],
        cancel_event: Optional[threading.Event],
    ) -> None:
        ledger = ResourceLedger()
        cancelled = False
        try:
            self._execute(summary, ledger, intent, index, firmware, cancel_event)
        except RepairCancelledError as error:
            self.log.warning(str(error))
            summary.error = str(error)
            cancelled = True
        except StorageError as error:
            self.log.error(str(error))
            summary.error = str(error)
            summary.steps.append(
                StepResult(self._stage_name(intent), StepStatus.FATAL_FAILURE, str(error))
            )
        finally:
            failures = ledger.unwind_all()
            if failures:
                summary.report.append(
                    f"Warning: {failures} resource(s) could not be released cleanly"
                )

        self._enter(DispatcherState.REPORTING_RESULT)
        summary.status = SessionStatus.CANCELLED if cancelled else summary.resolve_status()
        for line in summary.to_lines():
            if line:
                self.log.info(line)

    def _stage_name(self, intent: RepairIntent) -> str:
        return {
            DispatcherState.DISCOVERING_FIRMWARE: "firmware",
            DispatcherState.DISCOVERING_INSTALLATIONS: "discovery",
            DispatcherState.AWAITING_SELECTION: "selection",
        }.get(self.state, intent.value)

    def _execute(
        self,
        summary: RepairSummary,
        ledger: ResourceLedger,
        intent: RepairIntent,
        index: Optional[int],
        firmware: Optional[FirmwareMode],
        cancel_event: Optional[threading.Event],
    ) -> None:
        self._enter(DispatcherState.DISCOVERING_FIRMWARE)
        firmware_mode = firmware or self.firmware_detector()
        summary.firmware_mode = firmware_mode
        self._check_cancelled(cancel_event)

        if not intent.needs_installation:
            self._enter(DispatcherState.EXECUTING_ACTION)
            with operation_context(intent.value):
                self._run_step(summary, "boot-flags", lambda: self._fix_boot_flags(summary))
            return

        self._enter(DispatcherState.DISCOVERING_INSTALLATIONS)
        self._devices = self.devices_provider()
        installations = discover(self._devices, self.mount_base)
        if not installations:
            raise DiscoveryEmptyError(len(self._devices))
        self._check_cancelled(cancel_event)

        self._enter(DispatcherState.AWAITING_SELECTION)
        installation = select_installation(installations, index)
        summary.installation = installation
        self.log.info(f"Selected: {installation.format_label()}")
        if installation.dual_boot:
            self.log.warning("Windows dual-boot detected, only Linux boot files will be touched")
        self._check_cancelled(cancel_event)

        self._enter(DispatcherState.EXECUTING_ACTION)
        with disk_session(installation.disk_path, summary.session_id), operation_context(
            intent.value, partition=installation.partition.path
        ):
            active = activate(
                installation,
                ledger,
                read_only=intent is RepairIntent.INSPECT,
                mount_base=self.mount_base,
            )
            summary.installation = active
            if intent is RepairIntent.INSPECT:
                self._run_step(summary, "inspect", lambda: self._inspect(summary, active))
            elif intent is RepairIntent.MBR:
                self._run_step(summary, "mbr", lambda: self._restore_mbr(active))
            elif intent is RepairIntent.AUTOMATIC:
                self._automatic_repair(summary, ledger, active, cancel_event)
            elif intent in CHROOT_INTENTS:
                disk = find_device(active.disk_path, self._devices)
                with self.builder.environment(active, firmware_mode, ledger, disk) as context:
                    self._check_cancelled(cancel_event)
                    self._run_step(
                        summary,
                        intent.value,
                        lambda: self.builder.run_in_context(context, intent),
                    )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(
        self,
        summary: RepairSummary,
        name: str,
        action: Callable[[], Optional[str]],
        recoverable: bool = False,
    ) -> StepResult:
        """Run one step, turning repair-layer errors into a recorded outcome."""
        try:
            output = action() or ""
        except RepairCancelledError:
            raise
        except StorageError as error:
            status = StepStatus.RECOVERABLE_FAILURE if recoverable else StepStatus.FATAL_FAILURE
            result = StepResult(name, status, str(error), getattr(error, "output", ""))
        else:
            result = StepResult(name, StepStatus.SUCCESS, output=output)
        return self._record(summary, result)

    def _record(self, summary: RepairSummary, result: StepResult) -> StepResult:
        summary.steps.append(result)
        EventLogger.log_step_outcome(self.log, result.name, result.status.value, result.message)
        return result

    def _automatic_repair(
        self,
        summary: RepairSummary,
        ledger: ResourceLedger,
        installation: Installation,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Chroot steps, then the boot flag check; each failure is recoverable.

        When the chroot environment cannot be built the chroot steps are
        recorded as failed and the boot flag check still runs.
        """
        steps: list[tuple[str, Callable[[RepairContext], Optional[str]]]] = []
        if get_bool("reinstall_grub_packages", False):
            steps.append(("grub-packages", self.builder.reinstall_packages))
        steps.append(("bootloader", self.builder.install_bootloader))
        steps.append(("menu", self.builder.regenerate_menu))

        disk = find_device(installation.disk_path, self._devices)
        firmware_mode = summary.firmware_mode or FirmwareMode.BIOS
        try:
            context = self.builder.build(installation, firmware_mode, ledger, disk)
        except StorageError as error:
            self.log.error(f"Chroot environment unavailable: {error}")
            for name, _ in steps:
                self._record(
                    summary,
                    StepResult(
                        name,
                        StepStatus.RECOVERABLE_FAILURE,
                        f"skipped, chroot environment unavailable: {error}",
                    ),
                )
        else:
            try:
                for name, action in steps:
                    self._check_cancelled(cancel_event)
                    self._run_step(
                        summary, name, lambda action=action: action(context), recoverable=True
                    )
            finally:
                self.builder.teardown(context)
        self._check_cancelled(cancel_event)
        self._run_step(
            summary, "boot-flags", lambda: self._fix_boot_flags(summary), recoverable=True
        )

    def _fix_boot_flags(self, summary: RepairSummary) -> str:
        outcomes = check_boot_flags(owner=summary.session_id)
        for outcome in outcomes:
            line = f"{outcome.disk}: boot flag {outcome.status.value}"
            if outcome.partition:
                line += f" ({outcome.partition})"
            summary.report.append(line)
        failed = [outcome for outcome in outcomes if outcome.failed]
        if failed:
            raise PartitionTableError(failed[0].disk, failed[0].message)
        return "\n".join(summary.report)

    def _inspect(self, summary: RepairSummary, installation: Installation) -> str:
        report = inspect_installation(
            installation, summary.firmware_mode or FirmwareMode.BIOS
        )
        summary.report.extend(report.to_lines())
        return ""

    def _restore_mbr(self, installation: Installation) -> str:
        """grub-install to the raw disk from the host, using the target's /boot."""
        if installation.mount_path is None:
            raise RepairError(f"{installation.partition.path} is not mounted")
        boot_directory = Path(installation.mount_path) / "boot"
        command = [
            "grub-install",
            "--target=i386-pc",
            f"--boot-directory={boot_directory}",
            installation.disk_path,
        ]
        self.log.info("Restoring MBR only...")
        try:
            result = run_command(command, timeout=self.builder.command_timeout())
        except (subprocess.CalledProcessError, FileNotFoundError) as error:
            raise RepairError(f"MBR restore failed: {command_error_detail(error)}") from error
        except subprocess.TimeoutExpired as error:
            if self.builder.deadline_passed():
                raise RepairCancelledError("session deadline reached") from error
            raise RepairError(f"MBR restore timed out after {error.timeout}s") from error
        self.log.success("MBR restored successfully")
        return result.stdout or ""
