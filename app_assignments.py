# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
Application Assignment Report

Lists every broker application with the delivery groups it is assigned to.
Groups are collected from three places on the application object:
  1. group names carried directly on the application
  2. delivery group uids, looked up one by one
  3. application groups, whose own delivery group uids are looked up

Application groups are followed one level only. A uid that cannot be
resolved is left out of the result and never stops the run.

Writes one CSV (Name, PublishedName, Enabled, DeliveryGroups) and prints the
same table to the console, sorted by application name.
"""

import argparse
import logging
import sys
from collections.abc import Iterable
from pathlib import Path

from vdi_common import (
    UNASSIGNED,
    ApplicationRecord,
    PreflightError,
    QueryError,
    add_common_arguments,
    as_list,
    broker_shell,
    clean_names,
    default_report_path,
    format_groups,
    load_applications,
    report_ok,
    require_command,
    setup_logging,
    write_csv,
)

log = logging.getLogger("vdi.app_assignments")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
FIELDS = ["Name", "PublishedName", "Enabled", "DeliveryGroups"]
REPORT_PREFIX = "AppAssignments"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
class BrokerDirectory:
    """Per-uid lookups of delivery groups and application groups.

    Answers are memoised for the run, failures included, so each uid costs
    at most one broker call.
    """

    def __init__(self, runner) -> None:
        self.runner = runner
        self._groups: dict[int, str | QueryError] = {}
        self._app_groups: dict[int, tuple[int, ...] | QueryError] = {}

    def group_name(self, uid: int) -> str:
        if uid not in self._groups:
            try:
                rows = self.runner.json(
                    f"Get-BrokerDesktopGroup -Uid {int(uid)} | Select-Object Uid, Name"
                )
                if not rows or not rows[0].get("Name"):
                    raise QueryError(f"Get-BrokerDesktopGroup -Uid {uid}", "no such group")
                self._groups[uid] = rows[0]["Name"]
            except QueryError as exc:
                self._groups[uid] = exc
        found = self._groups[uid]
        if isinstance(found, QueryError):
            raise found
        return found

    def app_group_group_uids(self, uid: int) -> tuple[int, ...]:
        if uid not in self._app_groups:
            try:
                rows = self.runner.json(
                    f"Get-BrokerApplicationGroup -Uid {int(uid)} | "
                    "Select-Object Uid, Name, AssociatedDesktopGroupUids"
                )
                if not rows:
                    raise QueryError(
                        f"Get-BrokerApplicationGroup -Uid {uid}", "no such application group"
                    )
                self._app_groups[uid] = tuple(as_list(rows[0].get("AssociatedDesktopGroupUids")))
            except QueryError as exc:
                self._app_groups[uid] = exc
        found = self._app_groups[uid]
        if isinstance(found, QueryError):
            raise found
        return found


def _names_for(uids: Iterable[int], directory: BrokerDirectory, app: str) -> list[str]:
    names = []
    for uid in uids:
        try:
            names.append(directory.group_name(uid))
        except QueryError:
            log.debug("%s: delivery group uid %s not found", app, uid)
    return names


def resolve_groups(app: ApplicationRecord, directory: BrokerDirectory) -> list[str]:
    """Sorted, deduplicated delivery group names reachable from *app*."""
    # Stage 1: direct names and delivery group uids.
    names = list(app.group_names)
    names += _names_for(app.group_uids, directory, app.name)

    # Stage 2: one hop through application groups. Not recursive.
    for ag_uid in app.app_group_uids:
        try:
            member_uids = directory.app_group_group_uids(ag_uid)
        except QueryError:
            log.debug("%s: application group uid %s not found", app.name, ag_uid)
            continue
        names += _names_for(member_uids, directory, app.name)

    return clean_names(names)


def build_rows(
    apps: Iterable[ApplicationRecord], directory: BrokerDirectory
) -> list[dict[str, str]]:
    rows = [
        {
            "Name": app.name,
            "PublishedName": app.published_name,
            "Enabled": str(app.enabled),
            "DeliveryGroups": format_groups(resolve_groups(app, directory)),
        }
        for app in apps
    ]
    rows.sort(key=lambda r: (r["Name"].lower(), r["Name"]))
    return rows


def print_table(rows: list[dict[str, str]]) -> None:
    width = max((len(r["Name"]) for r in rows), default=4)
    width = min(max(width, 4), 50)
    print(f"{'Name':<{width}}  {'Enabled':<7}  DeliveryGroups")
    print(f"{'-' * width}  {'-' * 7}  {'-' * 14}")
    for r in rows:
        print(f"{r['Name'][:width]:<{width}}  {r['Enabled']:<7}  {r['DeliveryGroups']}")


# ============================================================
# Main
# ============================================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Report the delivery groups each broker application is assigned to."
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"CSV file to write (default: {REPORT_PREFIX}-<host>-<date>.csv in cwd)",
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
        apps = load_applications(runner)
    except (PreflightError, QueryError) as exc:
        log.error("%s", exc)
        return 1

    if not apps:
        log.warning("No applications returned by the broker; nothing to report")
        return 0

    log.info("Resolving delivery groups for %d applications...", len(apps))
    rows = build_rows(apps, BrokerDirectory(runner))
    print_table(rows)

    write_csv(output, FIELDS, rows)
    unassigned = sum(1 for r in rows if r["DeliveryGroups"] == UNASSIGNED)
    print()
    print(f"Done. {len(rows)} applications, {unassigned} unassigned.")
    report_ok(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
