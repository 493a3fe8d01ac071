"""External command execution shared by the storage and repair layers."""

from __future__ import annotations

import shutil
import subprocess
from typing import Optional, Sequence

from boot_rescue.logging import LoggerFactory


log = LoggerFactory.for_command()


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run a command with captured output, logging what happened.

    Raises:
        subprocess.CalledProcessError: If check is set and the command fails
        subprocess.TimeoutExpired: If the timeout elapses
        FileNotFoundError: If the executable does not exist
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, timeout=timeout
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_error_detail(error: Exception) -> str:
    """Best human-readable reason from a failed command."""
    if isinstance(error, subprocess.CalledProcessError):
        stderr = (error.stderr or "").strip()
        stdout = (error.stdout or "").strip()
        return stderr or stdout or f"exit status {error.returncode}"
    return str(error)


def command_available(name: str) -> bool:
    return shutil.which(name) is not None
