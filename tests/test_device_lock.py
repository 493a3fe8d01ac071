"""Tests for storage/device_lock.py."""

import threading

import pytest

from boot_rescue.storage.device_lock import disk_session, is_disk_locked
from boot_rescue.storage.exceptions import DeviceBusyError


def test_session_holds_and_releases_disk():
    with disk_session("/dev/sda", "repair-1"):
        assert is_disk_locked("/dev/sda")

    assert not is_disk_locked("/dev/sda")


def test_other_session_is_refused():
    with disk_session("/dev/sda", "repair-1"):
        with pytest.raises(DeviceBusyError) as exc_info:
            with disk_session("/dev/sda", "repair-2"):
                pass

        assert exc_info.value.device_name == "/dev/sda"
        assert "held by session repair-1" in str(exc_info.value)

    assert not is_disk_locked("/dev/sda")


def test_different_disks_are_independent():
    with disk_session("/dev/sda", "repair-1"):
        with disk_session("/dev/sdb", "repair-2"):
            assert is_disk_locked("/dev/sda")
            assert is_disk_locked("/dev/sdb")


def test_reentry_by_owner_keeps_lock():
    with disk_session("/dev/sda", "repair-1"):
        with disk_session("/dev/sda", "repair-1"):
            pass
        assert is_disk_locked("/dev/sda")

    assert not is_disk_locked("/dev/sda")


def test_released_on_exception():
    with pytest.raises(RuntimeError):
        with disk_session("/dev/sda", "repair-1"):
            raise RuntimeError("step failed")

    assert not is_disk_locked("/dev/sda")


def test_only_one_thread_wins():
    barrier = threading.Barrier(2)
    release = threading.Event()
    results = []

    def contend(owner):
        barrier.wait()
        try:
            with disk_session("/dev/sda", owner):
                results.append(owner)
                release.wait(timeout=2)
        except DeviceBusyError:
            results.append("busy")
            release.set()

    threads = [threading.Thread(target=contend, args=(f"repair-{n}",)) for n in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert results.count("busy") == 1
    assert not is_disk_locked("/dev/sda")
