"""Tests for main application module."""

import pytest

from boot_rescue import main
from boot_rescue.domain.models import (
    FilesystemKind,
    FirmwareMode,
    Installation,
    Partition,
    RepairIntent,
    SessionStatus,
)
from boot_rescue.repair.summary import RepairSummary


@pytest.fixture(autouse=True)
def as_root(mocker):
    mocker.patch("os.geteuid", return_value=0)


@pytest.fixture
def dispatcher(mocker):
    summary = RepairSummary(
        intent=RepairIntent.BOOTLOADER,
        session_id="repair-0000abcd",
        status=SessionStatus.SUCCESS,
    )
    dispatcher_cls = mocker.patch("boot_rescue.main.RepairDispatcher")
    dispatcher_cls.return_value.run.return_value = summary
    return dispatcher_cls


def run_main(*argv):
    with pytest.raises(SystemExit) as exc_info:
        main.main(list(argv))
    return exc_info.value.code


class TestParser:
    def test_intents_and_list(self):
        args = main.build_parser().parse_args(["auto", "-i", "2", "--firmware", "uefi"])

        assert args.intent == "auto"
        assert args.index == 2
        assert args.firmware == "uefi"
        assert "list" in main.INTENT_CHOICES
        assert "boot-flags" in main.INTENT_CHOICES

    def test_unknown_intent_rejected(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["format"])


class TestMain:
    def test_runs_dispatcher_and_exits_with_status(self, dispatcher, tmp_path, capsys):
        code = run_main("bootloader", "--firmware", "bios", "--log-dir", str(tmp_path))

        assert code == 0
        call = dispatcher.return_value.run.call_args
        assert call.args[0] is RepairIntent.BOOTLOADER
        assert call.kwargs["firmware"] is FirmwareMode.BIOS
        assert call.kwargs["index"] is None
        assert "=== Boot Repair Summary ===" in capsys.readouterr().out

    def test_partial_exit_code(self, dispatcher, tmp_path):
        dispatcher.return_value.run.return_value.status = SessionStatus.PARTIAL

        assert run_main("auto", "--log-dir", str(tmp_path)) == 2

    def test_keyboard_interrupt_exits_130(self, dispatcher, tmp_path):
        dispatcher.return_value.run.side_effect = KeyboardInterrupt

        assert run_main("menu", "--log-dir", str(tmp_path)) == 130

    def test_timeout_passed_as_session_deadline(self, dispatcher, tmp_path):
        run_main("auto", "--timeout", "90", "--log-dir", str(tmp_path))

        assert dispatcher.return_value.run.call_args.kwargs["timeout"] == 90.0

    def test_no_timeout_by_default(self, dispatcher, tmp_path):
        run_main("menu", "--log-dir", str(tmp_path))

        assert dispatcher.return_value.run.call_args.kwargs["timeout"] is None

    def test_list_installations(self, mocker, tmp_path, capsys):
        installation = Installation(
            partition=Partition(path="/dev/sda1", disk_path="/dev/sda", fs_kind=FilesystemKind.EXT4),
            distro_name="Ubuntu",
            dual_boot=True,
        )
        mocker.patch("boot_rescue.main.enumerate_devices", return_value=[])
        mocker.patch("boot_rescue.main.discover", return_value=[installation])

        assert run_main("list", "--log-dir", str(tmp_path)) == 0
        assert "1) /dev/sda1 - Ubuntu [Windows dual-boot]" in capsys.readouterr().out

    def test_list_without_installations(self, mocker, tmp_path):
        mocker.patch("boot_rescue.main.enumerate_devices", return_value=[])
        mocker.patch("boot_rescue.main.discover", return_value=[])

        assert run_main("list", "--log-dir", str(tmp_path)) == 1
