"""
Tests for delivery group resolution of broker applications.
"""
import csv

import pytest

import app_assignments
from app_assignments import BrokerDirectory, build_rows, resolve_groups
from vdi_common import ApplicationRecord, QueryError, format_groups


def make_app(name="Notepad", **kw):
    return ApplicationRecord(
        uid=kw.pop("uid", 1),
        name=name,
        published_name=kw.pop("published_name", name),
        enabled=kw.pop("enabled", True),
        visible=kw.pop("visible", True),
        command_line_executable=kw.pop("exe", None),
        command_line_arguments=None,
        working_directory=None,
        **kw,
    )


@pytest.fixture
def broker(fake_runner):
    return fake_runner(
        {
            "Get-BrokerDesktopGroup -Uid 1 |": [{"Uid": 1, "Name": "Office"}],
            "Get-BrokerDesktopGroup -Uid 2 |": [{"Uid": 2, "Name": "Finance"}],
            "Get-BrokerDesktopGroup -Uid 3 |": [{"Uid": 3, "Name": "Office"}],
            "Get-BrokerDesktopGroup -Uid 99 |": QueryError("Get-BrokerDesktopGroup", "not found"),
            "Get-BrokerApplicationGroup -Uid 10 |": [
                {"Uid": 10, "Name": "Finance apps", "AssociatedDesktopGroupUids": [2, 99]}
            ],
            "Get-BrokerApplicationGroup -Uid 11 |": [
                {"Uid": 11, "Name": "Single", "AssociatedDesktopGroupUids": 1}
            ],
            "Get-BrokerApplicationGroup -Uid 404 |": QueryError("Get-BrokerApplicationGroup"),
        }
    )


def test_direct_names_sorted_and_deduplicated(broker):
    app = make_app(group_names=("Sales", "Admins", "Sales", "", "  "))
    names = resolve_groups(app, BrokerDirectory(broker))
    assert names == ["Admins", "Sales"]
    assert format_groups(names) == "Admins, Sales"
    assert broker.commands == []


def test_unresolvable_uid_is_omitted(broker):
    app = make_app(group_uids=(1, 99))
    assert resolve_groups(app, BrokerDirectory(broker)) == ["Office"]


def test_empty_lookup_result_counts_as_missing(fake_runner):
    runner = fake_runner({"Get-BrokerDesktopGroup -Uid 7 |": []})
    app = make_app(group_uids=(7,))
    assert resolve_groups(app, BrokerDirectory(runner)) == []


def test_application_group_resolved_one_level(broker):
    app = make_app(app_group_uids=(10, 11, 404))
    names = resolve_groups(app, BrokerDirectory(broker))
    assert names == ["Finance", "Office"]


def test_all_sources_merge(broker):
    app = make_app(group_names=("Office",), group_uids=(3,), app_group_uids=(10,))
    assert resolve_groups(app, BrokerDirectory(broker)) == ["Finance", "Office"]


def test_lookups_are_memoised(broker):
    directory = BrokerDirectory(broker)
    apps = [make_app("A", group_uids=(1, 99)), make_app("B", group_uids=(1, 99))]
    build_rows(apps, directory)
    assert broker.count("Get-BrokerDesktopGroup -Uid 1 |") == 1
    assert broker.count("Get-BrokerDesktopGroup -Uid 99 |") == 1


def test_rows_sorted_by_name_with_unassigned_sentinel(broker):
    apps = [
        make_app("zeta", group_uids=(2,)),
        make_app("Alpha"),
        make_app("beta", group_names=("Office",)),
    ]
    rows = build_rows(apps, BrokerDirectory(broker))
    assert [r["Name"] for r in rows] == ["Alpha", "beta", "zeta"]
    assert rows[0]["DeliveryGroups"] == "Unassigned"
    assert rows[2]["DeliveryGroups"] == "Finance"


def test_main_writes_csv(broker, tmp_path):
    broker.responses["Get-BrokerApplication -MaxRecordCount"] = [
        {
            "Uid": 1,
            "Name": "Calc",
            "PublishedName": "Calculator",
            "Enabled": True,
            "AssociatedDesktopGroupUids": [1, 2],
            "AssociatedApplicationGroupUids": None,
        },
        {"Uid": 2, "Name": "Paint", "Enabled": False},
    ]
    out = tmp_path / "assign.csv"

    assert app_assignments.main(["--output", str(out)], runner=broker) == 0

    with out.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh))
    assert rows == [
        {"Name": "Calc", "PublishedName": "Calculator", "Enabled": "True",
         "DeliveryGroups": "Finance, Office"},
        {"Name": "Paint", "PublishedName": "Paint", "Enabled": "False",
         "DeliveryGroups": "Unassigned"},
    ]


def test_main_fails_without_broker_cmdlets(fake_runner, tmp_path):
    runner = fake_runner(missing={"Get-BrokerApplication"})
    out = tmp_path / "assign.csv"
    assert app_assignments.main(["--output", str(out)], runner=runner) == 1
    assert not out.exists()
