from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BOOT_RESCUE_LOG_DIR",
        Path.home() / ".local" / "state" / "boot-rescue" / "logs",
    )
)

SESSION_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {message}"


def _should_log_command_echo(record) -> bool:
    """Keep per-command echo lines out of the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command" in tags and record["message"].startswith("Running command:"):
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_cache(record) -> bool:
    """Filter cache hit logs - these are noisy and not useful."""
    message = record["message"].lower()

    if "cache hit" in message or "cached" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_echo(record) and _should_log_cache(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal repair outcomes, unrecoverable errors
    - SUCCESS/INFO: Discovery results, repair steps, state changes
    - DEBUG: Detailed diagnostics, command execution
    - TRACE: Ultra-verbose (every command echo, cache lookups)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Per-session logs are added separately with session_log().

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/boot-rescue/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["chroot", "grub"])
        source: Source component (e.g., "probe", "ledger", "chroot")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_session_id() -> str:
    return f"repair-{uuid.uuid4().hex[:8]}"


@contextmanager
def session_log(session_id: str, log_dir: Path | None = None) -> Iterator[Path]:
    """
    Write every record emitted inside this block to a session log file.

    Records are routed by the ``session`` extra, which is set for the
    duration of the block with ``logger.contextualize`` so module loggers
    do not need to know about the session.

    Yields:
        Path of the session log file
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = log_dir / f"boot_repair_{stamp}_{session_id}.log"

    sink_id = logger.add(
        path,
        level="INFO",
        format=SESSION_LOG_FORMAT,
        filter=lambda record: record["extra"].get("session") == session_id,
        backtrace=False,
        diagnose=False,
    )
    try:
        with logger.contextualize(session=session_id, job_id=session_id):
            yield path
    finally:
        logger.remove(sink_id)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "bootloader", "menu", "mbr")
        **details: Operation-specific details to log

    Yields:
        Logger bound with operation context

    Example:
        with operation_context("bootloader", partition="/dev/sda2") as log:
            log.debug("Building chroot")
            # ... install bootloader ...
    """
    with logger.contextualize(operation=operation, **details):
        start_time = time.time()
        log = get_logger(source=operation, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed: {e}",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_catalog() -> Logger:
        """Logger for block device enumeration and partition tables."""
        return get_logger(source="catalog", tags=["catalog", "storage"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return get_logger(source="command", tags=["command"])

    @staticmethod
    def for_probe() -> Logger:
        """Logger for filesystem probing and installation discovery."""
        return get_logger(source="probe", tags=["probe", "discovery"])

    @staticmethod
    def for_ledger() -> Logger:
        """Logger for tracked mounts, backups and their unwinding."""
        return get_logger(source="ledger", tags=["ledger", "rollback"])

    @staticmethod
    def for_efi() -> Logger:
        """Logger for EFI System Partition lookup."""
        return get_logger(source="efi", tags=["efi", "storage"])

    @staticmethod
    def for_chroot() -> Logger:
        """Logger for chroot environment construction and commands."""
        return get_logger(source="chroot", tags=["chroot", "repair"])

    @staticmethod
    def for_dispatcher(job_id: str | None = None) -> Logger:
        """Logger for repair sessions and action dispatch."""
        return get_logger(job_id=job_id, source="dispatch", tags=["dispatch", "repair"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return get_logger(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common repair events with
    consistent structure and fields.
    """

    @staticmethod
    def log_installation_found(
        log: Logger, partition: str, distro: str, dual_boot: bool, **extra
    ) -> None:
        """Log a discovered Linux installation."""
        log.success(
            f"Found Linux installation on {partition}: {distro}",
            event_type="installation_found",
            partition=partition,
            distro=distro,
            dual_boot=dual_boot,
            **extra,
        )

    @staticmethod
    def log_step_outcome(
        log: Logger, step: str, status: str, message: str = "", **extra
    ) -> None:
        """Log the outcome of one repair step."""
        text = f"Step '{step}': {status}"
        if message:
            text += f" ({message})"
        level = "SUCCESS" if status == "success" else "ERROR"
        log.log(
            level,
            text,
            event_type="step_outcome",
            step=step,
            status=status,
            **extra,
        )

    @staticmethod
    def log_unwind(log: Logger, entries: int, failures: int, **extra) -> None:
        """Log completion of a ledger unwind."""
        if failures:
            log.warning(
                f"Rollback finished with {failures} failure(s) across {entries} entries",
                event_type="ledger_unwind",
                entries=entries,
                failures=failures,
                **extra,
            )
        else:
            log.info(
                f"Rollback finished, released {entries} entries",
                event_type="ledger_unwind",
                entries=entries,
                failures=failures,
                **extra,
            )
