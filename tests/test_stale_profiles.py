"""
Tests for the profile share scan and its status rules.
"""
import csv
import datetime
import logging
import os

import pytest

import stale_profiles
from stale_profiles import (
    FIELDS,
    STATUS_ACTIVE,
    STATUS_DELETE,
    STATUS_LEGACY,
    classify,
    folder_size,
    looks_renamed,
    scan_profiles,
    summarize,
)
from vdi_common import PreflightError, write_csv

NOW = datetime.datetime(2026, 3, 1, 12, 0, 0)


def make_profile(root, user, platform, idle_days, files=None):
    path = root / user / platform
    path.mkdir(parents=True)
    for name, size in (files or {}).items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"x" * size)
    # Back-date after writing so the directory mtime sticks.
    ts = (NOW - datetime.timedelta(days=idle_days, hours=1)).timestamp()
    os.utime(path, (ts, ts))
    return path


@pytest.mark.parametrize(
    "user, platform, idle, expected",
    [
        ("jdoe", "Win7x64", 1, STATUS_LEGACY),
        ("jane.old", "Win11x64", 10, STATUS_DELETE),
        ("bsmith", "Win11x64", 200, STATUS_DELETE),
        ("csmith", "Win11x64", 10, STATUS_ACTIVE),
        ("csmith", "Win11x64", 182, STATUS_ACTIVE),
        ("csmith", "Win11x64", 183, STATUS_DELETE),
        ("jane.old", "win2012R2", 500, STATUS_LEGACY),
        ("goldberg", "Win11x64", 10, STATUS_ACTIVE),
    ],
)
def test_classify_precedence(user, platform, idle, expected):
    assert classify(user, platform, idle) == expected


def test_custom_keywords_and_cutoff():
    assert classify("a", "Win10_v6", 1, legacy_keywords=["v6"]) == STATUS_LEGACY
    assert classify("a", "Win7x64", 1, legacy_keywords=["Win2016"]) == STATUS_ACTIVE
    assert classify("a", "Win11", 31, cutoff_days=30) == STATUS_DELETE


@pytest.mark.parametrize(
    "user, expected",
    [
        ("jane.old", True),
        ("jane_OLD2", True),
        ("jane-old", True),
        ("janeold", False),  # no separator
        ("old.jane.smith", False),  # marker not in the last five characters
        ("j.goldsmith", False),
        ("x.Old", True),
    ],
)
def test_looks_renamed(user, expected):
    assert looks_renamed(user) is expected


def test_scan_reads_exactly_two_levels(tmp_path):
    make_profile(tmp_path, "jdoe", "Win7x64", 1)
    make_profile(tmp_path, "jane.old", "Win11x64", 10)
    make_profile(tmp_path, "bsmith", "Win11x64", 200)
    make_profile(tmp_path, "csmith", "Win11x64", 10, files={"AppData/deep.dat": 10})
    (tmp_path / "stray.txt").write_text("not a profile")
    (tmp_path / "csmith" / "readme.txt").write_text("not a platform folder")
    (tmp_path / "empty_user").mkdir()

    records = scan_profiles(tmp_path, now=NOW)

    got = {(r.user_name, r.platform_folder): (r.idle_days, r.status) for r in records}
    assert got == {
        ("bsmith", "Win11x64"): (200, STATUS_DELETE),
        ("csmith", "Win11x64"): (10, STATUS_ACTIVE),
        ("jane.old", "Win11x64"): (10, STATUS_DELETE),
        ("jdoe", "Win7x64"): (1, STATUS_LEGACY),
    }
    assert all(r.size_mb is None for r in records)
    assert summarize(records) == {STATUS_ACTIVE: 1, STATUS_DELETE: 2, STATUS_LEGACY: 1}


def test_scan_with_sizes(tmp_path):
    make_profile(
        tmp_path,
        "jdoe",
        "Win11x64",
        3,
        files={"NTUSER.DAT": 1024 * 1024, "AppData/Roaming/a.bin": 512 * 1024},
    )
    (record,) = scan_profiles(tmp_path, compute_size=True, now=NOW)
    assert record.size_mb == 1.5
    assert folder_size(tmp_path / "jdoe") == 1024 * 1024 + 512 * 1024


def test_unreachable_root(tmp_path):
    with pytest.raises(PreflightError):
        scan_profiles(tmp_path / "missing", now=NOW)


def test_csv_round_trip(tmp_path):
    root = tmp_path / "share"
    make_profile(root, "jane.old", "Win11x64", 10, files={"f": 2048})
    make_profile(root, "o'brien, pat", "Win7x64", 400)
    records = scan_profiles(root, compute_size=True, now=NOW)

    out = tmp_path / "report" / "profiles.csv"
    assert write_csv(out, FIELDS, (r.as_row() for r in records)) == 2

    with out.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        assert reader.fieldnames == FIELDS
        rows = list(reader)
    assert rows == [r.as_row() for r in records]
    assert rows[1]["UserName"] == "o'brien, pat"
    assert rows[1]["FullPath"] == str(root / "o'brien, pat" / "Win7x64")


def test_main_writes_report(tmp_path):
    root = tmp_path / "share"
    make_profile(root, "jdoe", "Win7x64", 1)
    out = tmp_path / "stale.csv"
    assert stale_profiles.main(["--root", str(root), "--output", str(out)]) == 0
    with out.open(newline="", encoding="utf-8") as fh:
        (row,) = list(csv.DictReader(fh))
    assert row["Status"] == STATUS_LEGACY
    assert row["SizeMB"] == ""


def test_main_missing_root_is_fatal(tmp_path):
    out = tmp_path / "stale.csv"
    assert stale_profiles.main(["--root", str(tmp_path / "nope"), "--output", str(out)]) == 1
    assert not out.exists()


def test_main_transcript(tmp_path):
    root = tmp_path / "share"
    make_profile(root, "jdoe", "Win11x64", 1)
    transcript = tmp_path / "logs" / "run.log"
    rc = stale_profiles.main(
        [
            "--root", str(root),
            "--output", str(tmp_path / "stale.csv"),
            "--transcript", str(transcript),
        ]
    )
    assert rc == 0
    assert "Scanning" in transcript.read_text(encoding="utf-8")


def test_capacity_failure_is_logged(tmp_path, monkeypatch, caplog):
    def unavailable(path):
        raise OSError("share offline")

    monkeypatch.setattr(stale_profiles.psutil, "disk_usage", unavailable)
    caplog.set_level(logging.DEBUG, logger="vdi.stale_profiles")
    stale_profiles.print_summary(tmp_path, [])
    assert "share offline" in caplog.text
