"""Tests for repair/dualboot.py - Windows coexistence heuristics."""

from boot_rescue.repair.dualboot import (
    detect_windows_coexistence,
    fstab_windows_reasons,
    sibling_windows_reasons,
)
from boot_rescue.repair.fstab import parse_fstab


def write_fstab(root, text):
    (root / "etc").mkdir(parents=True, exist_ok=True)
    (root / "etc" / "fstab").write_text(text)


class TestFstabHeuristic:
    def test_ntfs_entry_detected(self):
        entries = parse_fstab("UUID=X / ext4 defaults 0 1\n/dev/sda3 /windows ntfs-3g defaults 0 0\n")

        reasons = fstab_windows_reasons(entries)

        assert len(reasons) == 1
        assert "/windows" in reasons[0]

    def test_boot_flagged_fat_entry_detected(self):
        entries = parse_fstab("UUID=1234 /boot/efi vfat umask=0077,boot 0 1\n")

        assert fstab_windows_reasons(entries)

    def test_plain_esp_entry_is_not_windows(self):
        entries = parse_fstab("UUID=1234 /boot/efi vfat umask=0077 0 1\n")

        assert fstab_windows_reasons(entries) == []

    def test_boot_must_be_a_whole_option(self):
        entries = parse_fstab("UUID=1234 /boot/efi vfat umask=0077,nobootwait 0 1\n")

        assert fstab_windows_reasons(entries) == []


class TestSiblingHeuristic:
    def test_ntfs_sibling_on_same_disk(self, catalog, dual_boot_disk):
        (disk,) = catalog(dual_boot_disk)

        reasons = sibling_windows_reasons(disk.partition("/dev/sda1"), disk)

        assert reasons == ["NTFS partition /dev/sda2 on /dev/sda"]

    def test_no_disk_no_reasons(self, catalog, dual_boot_disk):
        (disk,) = catalog(dual_boot_disk)

        assert sibling_windows_reasons(disk.partition("/dev/sda1"), None) == []

    def test_ntfs_on_other_disk_is_ignored(self, catalog, ext4_disk, dual_boot_disk):
        dual_boot_disk["path"] = "/dev/sdb"
        for child in dual_boot_disk["children"]:
            child["path"] = child["path"].replace("sda", "sdb")
        linux_disk, _windows_disk = catalog(ext4_disk, dual_boot_disk)

        assert sibling_windows_reasons(linux_disk.partition("/dev/sda1"), linux_disk) == []


class TestDetectWindowsCoexistence:
    def test_flag_set_iff_either_heuristic_matches(self, tmp_path, catalog, ext4_disk, dual_boot_disk):
        write_fstab(tmp_path, "UUID=X / ext4 defaults 0 1\n")
        (plain,) = catalog(ext4_disk)
        (windows,) = catalog(dual_boot_disk)

        assert not detect_windows_coexistence(tmp_path, plain.partitions[0], plain).detected
        verdict = detect_windows_coexistence(tmp_path, windows.partitions[0], windows)
        assert verdict.detected
        assert verdict.reasons

    def test_fstab_alone_sets_flag(self, tmp_path, catalog, ext4_disk):
        write_fstab(tmp_path, "UUID=X / ext4 defaults 0 1\n/dev/sdb1 /win ntfs defaults 0 0\n")
        (plain,) = catalog(ext4_disk)

        assert detect_windows_coexistence(tmp_path, plain.partitions[0], plain).detected
