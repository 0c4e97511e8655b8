# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
Published Applications Export

Dumps broker applications to CSV, either as a minimal 5-column list or
enriched with visibility, working directory and delivery group names.

"Published" is approximated by a boolean flag on the application object,
``Visible`` unless --published-flag names another one. The broker has no
single property that means "published to users"; treat the filter as a
heuristic.

Delivery group uids are resolved through one lookup table built from a
single Get-BrokerDesktopGroup call, not one call per application.
"""

import argparse
import logging
import sys
from collections.abc import Iterable, Mapping
from pathlib import Path

from vdi_common import (
    MAX_RECORDS,
    PLACEHOLDER,
    ApplicationRecord,
    PreflightError,
    QueryError,
    add_common_arguments,
    as_bool,
    broker_shell,
    default_report_path,
    format_groups,
    load_applications,
    report_ok,
    require_command,
    setup_logging,
    write_csv,
)

log = logging.getLogger("vdi.published_apps")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
PUBLISHED_FLAG = "Visible"
REPORT_PREFIX = "PublishedApps"

MINIMAL_FIELDS = [
    "Name",
    "PublishedName",
    "Enabled",
    "CommandLineExecutable",
    "CommandLineArguments",
]
ENRICHED_FIELDS = MINIMAL_FIELDS + ["Visible", "WorkingDirectory", "DeliveryGroups"]


def filter_published(
    apps: Iterable[ApplicationRecord], flag: str = PUBLISHED_FLAG
) -> list[ApplicationRecord]:
    """Applications whose *flag* property is true."""
    return [a for a in apps if as_bool(a.raw.get(flag))]


def build_group_lookup(runner) -> dict[int, str]:
    """uid -> name for every delivery group, fetched once."""
    rows = runner.json(
        f"Get-BrokerDesktopGroup -MaxRecordCount {MAX_RECORDS} | Select-Object Uid, Name"
    )
    return {r["Uid"]: r["Name"] for r in rows if r.get("Uid") is not None and r.get("Name")}


def to_minimal_row(app: ApplicationRecord) -> dict[str, str]:
    return {
        "Name": app.name,
        "PublishedName": app.published_name,
        "Enabled": str(app.enabled),
        "CommandLineExecutable": app.command_line_executable or PLACEHOLDER,
        "CommandLineArguments": app.command_line_arguments or PLACEHOLDER,
    }


def to_enriched_row(app: ApplicationRecord, group_lookup: Mapping[int, str]) -> dict[str, str]:
    row = to_minimal_row(app)
    names = list(app.group_names)
    for uid in app.group_uids:
        name = group_lookup.get(uid)
        if name is None:
            log.debug("%s: delivery group uid %s not in lookup", app.name, uid)
            continue
        names.append(name)
    row["Visible"] = str(app.visible)
    row["WorkingDirectory"] = app.working_directory or PLACEHOLDER
    row["DeliveryGroups"] = format_groups(names)
    return row


# ============================================================
# Main
# ============================================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export broker applications to CSV.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"CSV file to write (default: {REPORT_PREFIX}-<host>-<date>.csv in cwd)",
    )
    parser.add_argument(
        "--visible-only",
        action="store_true",
        help="Keep only applications whose published flag is set",
    )
    parser.add_argument(
        "--published-flag",
        default=PUBLISHED_FLAG,
        help=f"Application property used as the published flag (default: {PUBLISHED_FLAG})",
    )
    parser.add_argument(
        "--minimal",
        action="store_true",
        help="Write only " + ", ".join(MINIMAL_FIELDS),
    )
    parser.add_argument("--admin-address", default=None, help="Delivery controller to query")
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, runner=None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.transcript)
    runner = runner or broker_shell(args.admin_address)
    output = args.output or default_report_path(REPORT_PREFIX)

    try:
        require_command(runner, "Get-BrokerApplication")
        extra = [args.published_flag] if args.visible_only else []
        apps = load_applications(runner, extra)
        log.info("Retrieved %d applications", len(apps))
        if args.visible_only:
            apps = filter_published(apps, args.published_flag)
            log.info("%d applications have %s set", len(apps), args.published_flag)
        if not apps:
            log.warning("No applications matched; no CSV written")
            return 0
        if args.minimal:
            fields = MINIMAL_FIELDS
            rows = [to_minimal_row(a) for a in apps]
        else:
            fields = ENRICHED_FIELDS
            group_lookup = build_group_lookup(runner)
            log.info("Loaded %d delivery groups", len(group_lookup))
            rows = [to_enriched_row(a, group_lookup) for a in apps]
    except (PreflightError, QueryError) as exc:
        log.error("%s", exc)
        return 1

    rows.sort(key=lambda r: r["Name"].lower())
    write_csv(output, fields, rows)
    print(f"Done. {len(rows)} applications exported.")
    report_ok(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
