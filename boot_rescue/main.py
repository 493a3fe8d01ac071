import argparse
import os
import sys
from pathlib import Path

from boot_rescue.__version__ import __version__
from boot_rescue.domain.models import RepairIntent
from boot_rescue.logging import LoggerFactory, setup_logging
from boot_rescue.repair.chroot import ChrootBuilder
from boot_rescue.repair.discovery import discover
from boot_rescue.repair.dispatcher import RepairDispatcher
from boot_rescue.repair.firmware import parse_firmware_option
from boot_rescue.storage.devices import enumerate_devices

LIST_COMMAND = "list"
INTENT_CHOICES = [intent.value for intent in RepairIntent] + [LIST_COMMAND]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="boot-rescue",
        description="Discover Linux installations and repair their boot configuration",
    )
    parser.add_argument("intent", choices=INTENT_CHOICES, help="Repair action to run")
    parser.add_argument(
        "-i", "--index", type=int, help="1-based installation to repair (see 'list')"
    )
    parser.add_argument(
        "--firmware",
        choices=["auto", "uefi", "bios"],
        default="auto",
        help="Force the firmware mode instead of detecting it",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Cancel the session (with full rollback) after this many seconds",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every command echo")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def list_installations() -> int:
    installations = discover(enumerate_devices())
    if not installations:
        print("No Linux installations found")
        return 1
    print("Found Linux installations:")
    for number, installation in enumerate(installations, start=1):
        line = f"{number}) {installation.format_label()}"
        if installation.dual_boot:
            line += " [Windows dual-boot]"
        print(line)
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    if os.geteuid() != 0:
        log.warning("Not running as root, mounts and bootloader installs will fail")

    if args.intent == LIST_COMMAND:
        sys.exit(list_installations())

    dispatcher = RepairDispatcher(builder=ChrootBuilder(), log_dir=args.log_dir)
    try:
        summary = dispatcher.run(
            RepairIntent(args.intent),
            index=args.index,
            firmware=parse_firmware_option(args.firmware),
            timeout=args.timeout,
        )
    except KeyboardInterrupt:
        log.warning("Interrupted")
        sys.exit(130)

    print(summary.render())
    sys.exit(summary.exit_code)


if __name__ == "__main__":
    main()
