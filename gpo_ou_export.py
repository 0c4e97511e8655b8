# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
GPO Export per Organizational Unit

Exports a Get-GPOReport file for every Group Policy Object linked to an OU,
optionally walking all child OUs as well.

Layout of the output folder:
  <output>/               reports for GPOs linked to the target OU
  <output>/<child OU>/    reports for GPOs linked to each child OU

A GPO linked from several OUs is looked up once and written once per
distinct destination folder. The output folder is created, or deleted and
recreated, only after the operator answers Y.
"""

import argparse
import logging
import shutil
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeAlias

from vdi_common import (
    Aborted,
    Confirm,
    PowerShell,
    PreflightError,
    QueryError,
    add_common_arguments,
    confirm_action,
    ps_quote,
    require_command,
    sanitize_filename,
    setup_logging,
)

log = logging.getLogger("vdi.gpo_ou_export")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
REPORT_TYPES = {"html": ("Html", ".html"), "xml": ("Xml", ".xml")}
REQUIRED_CMDLETS = ("Get-ADOrganizationalUnit", "Get-GPInheritance", "Get-GPOReport")


@dataclass(frozen=True)
class OrganizationalUnit:
    name: str
    distinguished_name: str


@dataclass(frozen=True)
class PolicyLink:
    gpo_id: str
    display_name: str


@dataclass
class ExportSummary:
    policies: int = 0
    written: int = 0
    failed: int = 0


ExportPlan: TypeAlias = dict[str, set[Path]]


def directory_shell(server: str | None = None) -> PowerShell:
    preamble = "Import-Module ActiveDirectory, GroupPolicy"
    if server:
        quoted = ps_quote(server)
        preamble += (
            f"; $PSDefaultParameterValues['*-AD*:Server'] = {quoted}"
            f"; $PSDefaultParameterValues['*-GP*:Server'] = {quoted}"
        )
    return PowerShell(preamble=preamble)


# ---------------------------------------------------------------------------
# (a) scopes
# ---------------------------------------------------------------------------
def _ou(row: dict) -> OrganizationalUnit:
    return OrganizationalUnit(
        name=row.get("Name") or "", distinguished_name=row.get("DistinguishedName") or ""
    )


def resolve_scopes(runner, target_dn: str, recurse: bool = False) -> list[OrganizationalUnit]:
    """The target OU first, then (with *recurse*) every descendant OU.

    A missing target raises :class:`QueryError`.
    """
    rows = runner.json(
        f"Get-ADOrganizationalUnit -Identity {ps_quote(target_dn)} | "
        "Select-Object Name, DistinguishedName"
    )
    if not rows:
        raise QueryError(f"Get-ADOrganizationalUnit -Identity {target_dn}", "OU not found")
    target = _ou(rows[0])
    scopes = [target]
    if recurse:
        children = runner.json(
            f"Get-ADOrganizationalUnit -Filter * -SearchBase {ps_quote(target.distinguished_name)} "
            "-SearchScope Subtree | Select-Object Name, DistinguishedName"
        )
        seen = {target.distinguished_name.lower()}
        for row in children:
            ou = _ou(row)
            if ou.distinguished_name.lower() in seen:
                continue
            seen.add(ou.distinguished_name.lower())
            scopes.append(ou)
    return scopes


# ---------------------------------------------------------------------------
# (b) links
# ---------------------------------------------------------------------------
def fetch_links(runner, ou: OrganizationalUnit, direct_only: bool = False) -> list[PolicyLink]:
    prop = "GpoLinks" if direct_only else "InheritedGpoLinks"
    rows = runner.json(
        f"(Get-GPInheritance -Target {ps_quote(ou.distinguished_name)}).{prop} | "
        "Select-Object DisplayName, @{n='GpoId';e={$_.GpoId.ToString()}}"
    )
    return [
        PolicyLink(gpo_id=str(r["GpoId"]).strip("{}").lower(), display_name=r.get("DisplayName") or "")
        for r in rows
        if r.get("GpoId")
    ]


# ---------------------------------------------------------------------------
# (c) + (d) plan
# ---------------------------------------------------------------------------
def destination_for(
    ou: OrganizationalUnit, target: OrganizationalUnit, output_root: Path
) -> Path:
    if ou.distinguished_name.lower() == target.distinguished_name.lower():
        return output_root
    return output_root / sanitize_filename(ou.name)


def build_export_plan(
    scopes: Iterable[OrganizationalUnit],
    target: OrganizationalUnit,
    output_root: Path,
    link_fetcher: Callable[[OrganizationalUnit], list[PolicyLink]],
) -> ExportPlan:
    """gpo id -> set of destination folders.

    An OU whose links cannot be read is logged and skipped.
    """
    plan: ExportPlan = {}
    for ou in scopes:
        try:
            links = link_fetcher(ou)
        except QueryError as exc:
            log.warning("Skipping OU %s: %s", ou.distinguished_name, exc)
            continue
        dest = destination_for(ou, target, output_root)
        for link in links:
            plan.setdefault(link.gpo_id, set()).add(dest)
        log.debug("%s: %d links", ou.distinguished_name, len(links))
    return plan


# ---------------------------------------------------------------------------
# (e) export
# ---------------------------------------------------------------------------
def gpo_display_name(runner, gpo_id: str) -> str:
    rows = runner.json(f"Get-GPO -Guid {ps_quote(gpo_id)} | Select-Object DisplayName")
    if not rows or not rows[0].get("DisplayName"):
        raise QueryError(f"Get-GPO -Guid {gpo_id}", "GPO not found")
    return rows[0]["DisplayName"]


def export_plan(runner, plan: ExportPlan, report_type: str = "html") -> ExportSummary:
    ps_type, suffix = REPORT_TYPES[report_type]
    summary = ExportSummary(policies=len(plan))
    written: set[Path] = set()

    for gpo_id in sorted(plan):
        try:
            display = gpo_display_name(runner, gpo_id)
        except QueryError as exc:
            log.warning("Skipping GPO %s: %s", gpo_id, exc)
            summary.failed += len(plan[gpo_id])
            continue

        for dest in sorted(plan[gpo_id]):
            path = dest / f"{sanitize_filename(display)}{suffix}"
            if path in written:
                # Two GPOs share a display name in the same folder.
                path = dest / f"{sanitize_filename(display)} ({gpo_id}){suffix}"
            try:
                dest.mkdir(parents=True, exist_ok=True)
                runner.run(
                    f"Get-GPOReport -Guid {ps_quote(gpo_id)} -ReportType {ps_type} "
                    f"-Path {ps_quote(str(path))}"
                )
            except (QueryError, OSError) as exc:
                log.warning("Export of %s (%s) to %s failed: %s", display, gpo_id, dest, exc)
                summary.failed += 1
                continue
            written.add(path)
            summary.written += 1
            log.info("Exported %s -> %s", display, path)
    return summary


def prepare_output_root(path: Path, confirm: Confirm = input) -> None:
    """Create *path*, or wipe and recreate it, after an explicit Y.

    Raises :class:`Aborted` on any other answer, leaving the filesystem as is,
    and :class:`PreflightError` when the folder cannot be deleted or created.
    """
    if path.exists():
        confirm_action(f"Output folder {path} already exists. Delete it and all contents?", confirm)
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise PreflightError(f"cannot delete {path}: {exc}") from exc
        log.info("Deleted %s", path)
    else:
        confirm_action(f"Output folder {path} does not exist. Create it?", confirm)
    try:
        path.mkdir(parents=True)
    except OSError as exc:
        raise PreflightError(f"cannot create {path}: {exc}") from exc
    log.info("Created %s", path)


# ============================================================
# Main
# ============================================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export reports for the GPOs linked to an OU (and its children)."
    )
    parser.add_argument("--ou", required=True, help="Distinguished name of the target OU")
    parser.add_argument("--output", type=Path, required=True, help="Output root folder")
    parser.add_argument("--recurse", action="store_true", help="Include all child OUs")
    parser.add_argument(
        "--direct-only",
        action="store_true",
        help="Use only links set on each OU, not inherited ones",
    )
    parser.add_argument("--report-type", choices=sorted(REPORT_TYPES), default="html")
    parser.add_argument("--server", default=None, help="Domain controller to query")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Answer Y to the output folder prompt (non-interactive runs)",
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, runner=None, confirm: Confirm = input) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.transcript)
    runner = runner or directory_shell(args.server)
    if args.yes:
        confirm = lambda _prompt: "Y"  # noqa: E731
    output_root = args.output.resolve()

    try:
        for cmdlet in REQUIRED_CMDLETS:
            require_command(runner, cmdlet)
        scopes = resolve_scopes(runner, args.ou, args.recurse)
        prepare_output_root(output_root, confirm)
    except (PreflightError, QueryError, Aborted) as exc:
        log.error("%s", exc)
        return 1

    target = scopes[0]
    log.info("Collecting GPO links for %d OU(s) under %s", len(scopes), target.distinguished_name)
    plan = build_export_plan(
        scopes,
        target,
        output_root,
        lambda ou: fetch_links(runner, ou, args.direct_only),
    )
    if not plan:
        log.warning("No GPO links found under %s", target.distinguished_name)
        return 0

    summary = export_plan(runner, plan, args.report_type)
    print()
    print(
        f"Done. {summary.policies} unique GPOs, {summary.written} reports written, "
        f"{summary.failed} failed."
    )
    print(f"  [OK] {output_root} ({summary.written} reports)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
