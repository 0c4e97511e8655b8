# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
Shared helpers for the VDI admin report scripts.

Covers the PowerShell bridge used to reach the broker and directory
cmdlets, CSV output, filesystem-safe names, the destructive-action
confirmation prompt and per-run logging (console + optional transcript).
"""

import csv
import datetime
import json
import logging
import os
import re
import socket
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeAlias

log = logging.getLogger("vdi")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
HOSTNAME = socket.gethostname()
DATESTAMP = datetime.date.today().isoformat()
POWERSHELL = os.environ.get("VDI_POWERSHELL", "powershell")
PS_TIMEOUT = 300

BROKER_SNAPIN = "Citrix.Broker.Admin.V2"
PLACEHOLDER = "N/A"
UNASSIGNED = "Unassigned"

_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class QueryError(RuntimeError):
    """A PowerShell query failed, timed out or returned unreadable output."""

    def __init__(self, command: str, detail: str = "") -> None:
        self.command = command
        self.detail = detail.strip()
        msg = f"query failed: {command}"
        if self.detail:
            msg += f" ({self.detail.splitlines()[0]})"
        super().__init__(msg)


class PreflightError(RuntimeError):
    """A precondition for the run is not met; nothing has been written."""


class Aborted(RuntimeError):
    """The operator did not confirm a destructive action."""


# ---------------------------------------------------------------------------
# PowerShell bridge
# ---------------------------------------------------------------------------
def ps_quote(value: str) -> str:
    """Quote *value* as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


class PowerShell:
    """Runs commands through ``powershell -NoProfile -Command``.

    Every command runs with ``$ErrorActionPreference = 'Stop'`` so a cmdlet
    error ends the process non-zero and surfaces as :class:`QueryError`.
    *preamble* is prepended to every command (snap-in loads, module imports).
    """

    def __init__(
        self,
        executable: str = POWERSHELL,
        *,
        preamble: str = "",
        timeout: int = PS_TIMEOUT,
    ) -> None:
        self.executable = executable
        self.preamble = preamble
        self.timeout = timeout

    def run(self, command: str) -> str:
        script = "$ErrorActionPreference = 'Stop'; "
        if self.preamble:
            script += self.preamble.rstrip("; ") + "; "
        script += command
        log.debug("PS> %s", command)
        try:
            r = subprocess.run(
                [self.executable, "-NoProfile", "-NonInteractive", "-Command", script],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise QueryError(command, str(exc)) from exc
        if r.returncode != 0:
            raise QueryError(command, r.stderr or r.stdout)
        return r.stdout.strip()

    def json(self, command: str) -> list[dict]:
        """Run a command that emits objects, return them as a list of dicts."""
        raw = self.run(f"{command} | ConvertTo-Json -Compress -Depth 4")
        return decode_ps_json(raw, command)


def decode_ps_json(raw: str, command: str = "") -> list[dict]:
    """ConvertTo-Json gives nothing, one object or an array; normalise to a list."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise QueryError(command, f"invalid JSON output: {exc}") from exc
    if isinstance(data, dict):
        return [data]
    return [d for d in data if isinstance(d, dict)]


def broker_shell(admin_address: str | None = None) -> PowerShell:
    """A runner with the broker snap-in loaded.

    The snap-in is absent on hosts that ship the broker cmdlets as a module,
    so its load is allowed to fail quietly.
    """
    preamble = f"Add-PSSnapin {BROKER_SNAPIN} -ErrorAction SilentlyContinue"
    if admin_address:
        preamble += (
            f"; $PSDefaultParameterValues['*-Broker*:AdminAddress'] = "
            f"{ps_quote(admin_address)}"
        )
    return PowerShell(preamble=preamble)


def require_command(runner, name: str) -> None:
    """Raise :class:`PreflightError` unless cmdlet *name* is available."""
    try:
        found = runner.json(f"Get-Command -Name {ps_quote(name)} | Select-Object Name")
    except QueryError as exc:
        raise PreflightError(f"{name} is not available on this host") from exc
    if not found:
        raise PreflightError(f"{name} is not available on this host")


def as_list(value) -> list:
    """Cmdlet properties arrive as null, a scalar or an array."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


# ---------------------------------------------------------------------------
# Broker objects
# ---------------------------------------------------------------------------
# Broker cmdlets return 250 records unless told otherwise.
MAX_RECORDS = 100_000

APP_PROPERTIES = (
    "Uid",
    "Name",
    "PublishedName",
    "Enabled",
    "Visible",
    "CommandLineExecutable",
    "CommandLineArguments",
    "WorkingDirectory",
    "AssociatedDesktopGroupNames",
    "AssociatedDesktopGroupUids",
    "AssociatedApplicationGroupUids",
)


@dataclass(frozen=True)
class ApplicationRecord:
    uid: int | None
    name: str
    published_name: str
    enabled: bool
    visible: bool
    command_line_executable: str | None
    command_line_arguments: str | None
    working_directory: str | None
    group_names: tuple[str, ...] = ()
    group_uids: tuple[int, ...] = ()
    app_group_uids: tuple[int, ...] = ()
    raw: Mapping = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_ps(cls, row: Mapping) -> "ApplicationRecord":
        name = row.get("Name") or ""
        return cls(
            uid=row.get("Uid"),
            name=name,
            published_name=row.get("PublishedName") or name,
            enabled=as_bool(row.get("Enabled")),
            visible=as_bool(row.get("Visible")),
            command_line_executable=row.get("CommandLineExecutable") or None,
            command_line_arguments=row.get("CommandLineArguments") or None,
            working_directory=row.get("WorkingDirectory") or None,
            group_names=tuple(str(n) for n in as_list(row.get("AssociatedDesktopGroupNames")) if n),
            group_uids=tuple(as_list(row.get("AssociatedDesktopGroupUids"))),
            app_group_uids=tuple(as_list(row.get("AssociatedApplicationGroupUids"))),
            raw=dict(row),
        )


def load_applications(runner, extra_properties: Iterable[str] = ()) -> list[ApplicationRecord]:
    """All broker applications; *extra_properties* are selected as well and land in ``raw``."""
    properties = list(APP_PROPERTIES)
    properties += [p for p in extra_properties if p and p not in properties]
    rows = runner.json(
        f"Get-BrokerApplication -MaxRecordCount {MAX_RECORDS} | "
        f"Select-Object {', '.join(properties)}"
    )
    return [ApplicationRecord.from_ps(r) for r in rows]


def clean_names(names: Iterable[str | None]) -> list[str]:
    """Drop empty entries, deduplicate and sort."""
    return sorted({n.strip() for n in names if n and n.strip()})


def format_groups(names: Iterable[str | None]) -> str:
    cleaned = clean_names(names)
    return ", ".join(cleaned) if cleaned else UNASSIGNED


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------
def sanitize_filename(name: str, replacement: str = "_") -> str:
    """Make *name* usable as a single Windows path segment."""
    cleaned = _INVALID_NAME_CHARS.sub(replacement, name).strip().rstrip(".")
    return cleaned or replacement


def write_csv(path: Path, fieldnames: list[str], rows: Iterable[Mapping]) -> int:
    """Write *rows* under a header of *fieldnames*; return the row count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in fieldnames})
            count += 1
    return count


def default_report_path(prefix: str, suffix: str = ".csv") -> Path:
    return Path.cwd() / f"{prefix}-{HOSTNAME}-{DATESTAMP}{suffix}"


def format_bytes(n: int | float) -> str:
    """Format bytes to human-readable string."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(n) < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} PB"


def report_ok(path: Path) -> None:
    size = format_bytes(path.stat().st_size) if path.exists() else "?"
    print(f"  [OK] {path} ({size})")


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------
Confirm: TypeAlias = Callable[[str], str]

AFFIRMATIVE = "y"
NEGATIVE = "n"


def confirm_action(question: str, confirm: Confirm = input) -> None:
    """Ask *question*; return only on an exact affirmative answer.

    ``Y`` (any case, surrounding blanks ignored) proceeds. ``N`` and every
    other answer raise :class:`Aborted`.
    """
    answer = confirm(f"{question} (Y/N): ")
    reply = (answer or "").strip().lower()
    if reply == AFFIRMATIVE:
        return
    if reply == NEGATIVE:
        raise Aborted("declined by operator")
    raise Aborted(f"unrecognised answer {answer!r}; expected Y or N")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
def setup_logging(verbose: bool = False, transcript: Path | None = None) -> None:
    """Console logging on stderr; with *transcript*, mirror every line to a file."""
    root = logging.getLogger()
    # Re-running main() in one process must not stack handlers.
    for handler in [h for h in root.handlers if getattr(h, "_vdi", False)]:
        root.removeHandler(handler)
        handler.close()
    level = logging.DEBUG if verbose else logging.INFO
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    console._vdi = True
    root.addHandler(console)

    if transcript is not None:
        transcript.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(transcript, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        fh._vdi = True
        root.addHandler(fh)
        root.setLevel(logging.DEBUG)


def add_common_arguments(parser) -> None:
    parser.add_argument(
        "--transcript",
        type=Path,
        default=None,
        help="Mirror all log lines to this file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
