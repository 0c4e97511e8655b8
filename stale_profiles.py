# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
Stale Profile Scan

Walks a roaming/UPM profile share laid out as <root>/<user>/<platform> and
classifies every platform folder:

  Stale; legacy platform   platform folder names a retired OS (Win7, Win2012, ...)
  Eligible for deletion    user folder renamed to *.old-style, or idle > cutoff
  Active                   everything else

The first matching rule wins. Folder sizes are optional (--size) because a
recursive walk of a large share takes a long time.
"""

import argparse
import datetime
import logging
import stat as stat_mod
import sys
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

try:
    import psutil
except ImportError:
    print("[ERROR] psutil not installed. Run: pip install psutil")
    sys.exit(1)

from vdi_common import (
    PreflightError,
    add_common_arguments,
    default_report_path,
    format_bytes,
    report_ok,
    setup_logging,
    write_csv,
)

log = logging.getLogger("vdi.stale_profiles")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
REPORT_PREFIX = "StaleProfiles"
CUTOFF_DAYS = 182  # six months
LEGACY_KEYWORDS = ("Win7", "Win8", "Win2008", "Win2012")
OLD_MARKER = "old"
OLD_WINDOW = 5  # trailing characters of the user name searched for OLD_MARKER
SEPARATORS = "._-"
PROGRESS_EVERY = 100

STATUS_LEGACY = "Stale; legacy platform"
STATUS_DELETE = "Eligible for deletion"
STATUS_ACTIVE = "Active"

FIELDS = [
    "UserName",
    "PlatformFolder",
    "LastModified",
    "IdleDays",
    "SizeMB",
    "Status",
    "FullPath",
]


@dataclass(frozen=True)
class ProfileFolder:
    user_name: str
    platform_folder: str
    last_modified: datetime.datetime
    idle_days: int
    size_mb: float | None
    status: str
    full_path: Path

    def as_row(self) -> dict[str, str]:
        return {
            "UserName": self.user_name,
            "PlatformFolder": self.platform_folder,
            "LastModified": self.last_modified.strftime("%Y-%m-%d %H:%M:%S"),
            "IdleDays": str(self.idle_days),
            "SizeMB": "" if self.size_mb is None else f"{self.size_mb:.2f}",
            "Status": self.status,
            "FullPath": str(self.full_path),
        }


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
def looks_renamed(user_name: str) -> bool:
    """jdoe.old, jdoe_old2, jdoe-OLD: marker near the end plus a separator."""
    tail = user_name[-OLD_WINDOW:].lower()
    return OLD_MARKER in tail and any(sep in user_name for sep in SEPARATORS)


def classify(
    user_name: str,
    platform_folder: str,
    idle_days: int,
    *,
    legacy_keywords: Iterable[str] = LEGACY_KEYWORDS,
    cutoff_days: int = CUTOFF_DAYS,
) -> str:
    platform_lc = platform_folder.lower()
    if any(k.lower() in platform_lc for k in legacy_keywords if k):
        return STATUS_LEGACY
    if looks_renamed(user_name) or idle_days > cutoff_days:
        return STATUS_DELETE
    return STATUS_ACTIVE


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------
def _subdirs(path: Path) -> list[Path]:
    dirs = []
    for entry in path.iterdir():
        try:
            mode = entry.lstat().st_mode
        except OSError:
            continue
        if stat_mod.S_ISDIR(mode) and not stat_mod.S_ISLNK(mode):
            dirs.append(entry)
    return sorted(dirs, key=lambda p: p.name.lower())


def iter_profile_dirs(root: Path) -> Iterator[Path]:
    """Directories exactly two levels below *root* (<user>/<platform>)."""
    try:
        users = _subdirs(root)
    except OSError as exc:
        raise PreflightError(f"cannot list {root}: {exc}") from exc
    for user_dir in users:
        try:
            platforms = _subdirs(user_dir)
        except OSError as exc:
            log.warning("Skipping %s: %s", user_dir, exc)
            continue
        yield from platforms


def folder_size(root: Path) -> int:
    """Total bytes of regular files under *root*; symlinks are not followed."""
    total = 0
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            entries = list(current.iterdir())
        except OSError:
            continue
        for entry in entries:
            try:
                st = entry.lstat()
            except OSError:
                continue
            if stat_mod.S_ISLNK(st.st_mode):
                continue
            if stat_mod.S_ISDIR(st.st_mode):
                stack.append(entry)
            elif stat_mod.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def scan_profiles(
    root: Path,
    *,
    compute_size: bool = False,
    now: datetime.datetime | None = None,
    legacy_keywords: Iterable[str] = LEGACY_KEYWORDS,
    cutoff_days: int = CUTOFF_DAYS,
) -> list[ProfileFolder]:
    if not root.is_dir():
        raise PreflightError(f"profile root {root} is not reachable")
    now = now or datetime.datetime.now()
    keywords = tuple(legacy_keywords)
    records: list[ProfileFolder] = []

    for path in iter_profile_dirs(root):
        try:
            mtime = datetime.datetime.fromtimestamp(path.stat().st_mtime)
        except OSError as exc:
            log.warning("Skipping %s: %s", path, exc)
            continue
        idle = max((now - mtime).days, 0)
        size_mb = None
        if compute_size:
            size_mb = round(folder_size(path) / (1024 * 1024), 2)
        user, platform_folder = path.parent.name, path.name
        records.append(
            ProfileFolder(
                user_name=user,
                platform_folder=platform_folder,
                last_modified=mtime,
                idle_days=idle,
                size_mb=size_mb,
                status=classify(
                    user,
                    platform_folder,
                    idle,
                    legacy_keywords=keywords,
                    cutoff_days=cutoff_days,
                ),
                full_path=path,
            )
        )
        if len(records) % PROGRESS_EVERY == 0:
            log.info("  ... %d folders scanned", len(records))
    return records


def summarize(records: Iterable[ProfileFolder]) -> dict[str, int]:
    counts = Counter(r.status for r in records)
    return dict(sorted(counts.items()))


def print_summary(root: Path, records: list[ProfileFolder]) -> None:
    print()
    print(f"{'Status':<24} {'Count':>7}")
    print(f"{'-' * 24} {'-' * 7}")
    for status, count in summarize(records).items():
        print(f"{status:<24} {count:>7,}")
    print(f"{'Total':<24} {len(records):>7,}")

    if any(r.size_mb is not None for r in records):
        reclaim = sum(r.size_mb or 0 for r in records if r.status != STATUS_ACTIVE)
        print(f"Reclaimable: {format_bytes(reclaim * 1024 * 1024)}")
    try:
        usage = psutil.disk_usage(str(root))
        print(
            f"Share: {format_bytes(usage.used)} used of {format_bytes(usage.total)} "
            f"({usage.percent:.1f}%), {format_bytes(usage.free)} free"
        )
    except OSError as exc:
        log.debug("No capacity figures for %s: %s", root, exc)


# ============================================================
# Main
# ============================================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Classify user profile folders on a profile share."
    )
    parser.add_argument("--root", type=Path, required=True, help="Profile share root")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"CSV file to write (default: {REPORT_PREFIX}-<host>-<date>.csv in cwd)",
    )
    parser.add_argument(
        "--size",
        action="store_true",
        help="Compute folder sizes (walks every file; slow on large shares)",
    )
    parser.add_argument(
        "--cutoff-days",
        type=int,
        default=CUTOFF_DAYS,
        help=f"Idle days after which a folder is eligible for deletion (default: {CUTOFF_DAYS})",
    )
    parser.add_argument(
        "--legacy-keyword",
        action="append",
        default=None,
        metavar="TEXT",
        help="Platform folder keyword marking a retired OS; repeatable "
        f"(default: {', '.join(LEGACY_KEYWORDS)})",
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.transcript)
    output = args.output or default_report_path(REPORT_PREFIX)

    log.info("Scanning %s%s", args.root, " (with sizes)" if args.size else "")
    try:
        records = scan_profiles(
            args.root,
            compute_size=args.size,
            legacy_keywords=args.legacy_keyword or LEGACY_KEYWORDS,
            cutoff_days=args.cutoff_days,
        )
    except PreflightError as exc:
        log.error("%s", exc)
        return 1

    if not records:
        log.warning("No profile folders found under %s", args.root)

    print_summary(args.root, records)
    write_csv(output, FIELDS, (r.as_row() for r in records))
    print()
    print(f"Done. {len(records)} profile folders classified.")
    report_ok(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
