"""Human-readable end-of-session summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from boot_rescue.domain.models import (
    FirmwareMode,
    Installation,
    RepairIntent,
    SessionStatus,
    StepResult,
    StepStatus,
)

DUAL_BOOT_ADVISORY = (
    "Windows was detected alongside this installation. Only the Linux boot "
    "files were changed; if Windows is missing from the menu, run the menu "
    "regeneration again with os-prober enabled."
)


@dataclass
class RepairSummary:
    intent: RepairIntent
    session_id: str
    status: SessionStatus = SessionStatus.SUCCESS
    firmware_mode: Optional[FirmwareMode] = None
    installation: Optional[Installation] = None
    steps: list[StepResult] = field(default_factory=list)
    log_path: Optional[Path] = None
    error: Optional[str] = None
    report: list[str] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if step.status.failed]

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def resolve_status(self) -> SessionStatus:
        """Derive the session status from the recorded step outcomes.

        Any fatal step fails the session. Recoverable failures inside a
        composite action make it partial.
        """
        if any(step.status is StepStatus.FATAL_FAILURE for step in self.steps):
            return SessionStatus.FAILED
        if self.failed_steps:
            return SessionStatus.PARTIAL
        return SessionStatus.SUCCESS

    def to_lines(self) -> list[str]:
        lines = ["", "=== Boot Repair Summary ===", f"Session: {self.session_id}"]
        lines.append(f"Action: {self.intent.value}")
        if self.firmware_mode is not None:
            lines.append(f"Boot mode: {self.firmware_mode.value.upper()}")
        if self.installation is not None:
            lines.append(f"Installation: {self.installation.format_label()}")
        for step in self.steps:
            line = f"  [{step.status.value}] {step.name}"
            if step.message:
                line += f": {step.message}"
            lines.append(line)
        lines.extend(self.report)
        if self.error:
            lines.append(f"Error: {self.error}")
        if self.installation is not None and self.installation.dual_boot:
            lines.append(f"Advisory: {DUAL_BOOT_ADVISORY}")
        lines.append(f"Result: {self.status.name}")
        if self.log_path is not None:
            lines.append(f"Log file: {self.log_path}")
        return lines

    def render(self) -> str:
        return "\n".join(self.to_lines())
