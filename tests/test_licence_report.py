from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from conftest import PLAN_EXO, SKU_E3, SKU_VISIO, FakeGraphClient
from core.lookups import LookupFileError, ServicePlanRecord, SkuRecord
from handlers.graph.client import GraphRequestError
from modules.entra import licence_report
from modules.entra.licence_report import (
    REPORT_COLUMNS,
    GroupNameCache,
    NoLicensedUsersError,
    fncBuildUserRow,
    fncSkuUsageSummary,
)

GROUP_ID = "8f2c4a1e-0000-4000-8000-000000000001"


def _state(sku, group=None, state="Active", error="None"):
    return {"skuId": sku, "assignedByGroup": group, "state": state, "error": error,
            "lastUpdatedDateTime": "2024-03-01T10:00:00Z"}


def _user(uid, name, states, disabled=(), last=None, last_ni=None, dept=""):
    skus = list(dict.fromkeys(s["skuId"] for s in states))
    return {
        "id": uid,
        "displayName": name,
        "userPrincipalName": f"{name.lower()}@contoso.com",
        "accountEnabled": True,
        "country": "GB",
        "department": dept,
        "jobTitle": "Analyst",
        "companyName": "Contoso",
        "assignedLicenses": [{"skuId": s, "disabledPlans": list(disabled)} for s in skus],
        "licenseAssignmentStates": states,
        "signInActivity": {"lastSignInDateTime": last, "lastNonInteractiveSignInDateTime": last_ni},
    }


def _three_users():
    # deliberately out of display-name order
    return [
        _user("u3", "Charlie", [_state(SKU_E3), _state(SKU_E3, group=GROUP_ID)],
              last="2024-05-25T09:00:00Z", dept="Sales"),
        _user("u1", "alice", [_state(SKU_E3)], disabled=[PLAN_EXO],
              last="2024-01-01T00:00:00Z", dept="Finance"),
        _user("u2", "Bob", [], dept="Finance"),
    ]


def _client(users, **extra):
    return FakeGraphClient(
        pages={
            "users": users,
            "subscribedSkus": [
                {"skuId": SKU_E3, "skuPartNumber": "ENTERPRISEPACK",
                 "consumedUnits": 2, "prepaidUnits": {"enabled": 2}},
                {"skuId": SKU_VISIO, "skuPartNumber": "VISIOCLIENT",
                 "consumedUnits": 0, "prepaidUnits": {"enabled": 5}},
            ],
        },
        objects={f"groups/{GROUP_ID}": {"id": GROUP_ID, "displayName": "Sales Licensing"}},
        **extra,
    )


def test_three_user_report(priced_lookups, args) -> None:
    data = licence_report.run(_client(_three_users()), args)
    rows = data["users"]

    assert len(rows) == 3
    assert [r["DisplayName"] for r in rows] == ["alice", "Bob", "Charlie"]
    alice, bob, charlie = rows

    assert alice["AnnualCost"] == Decimal("120.00")
    assert alice["MonthlyCost"] == Decimal("10.00")
    assert alice["Currency"] == "USD"
    assert alice["DuplicateLicences"] == "N/A"
    assert alice["DisabledServicePlans"] == ["Exchange Online (Plan 2)"]
    assert alice["InactivityStatus"] == "Cleanup candidate"

    assert bob["AnnualCost"] == Decimal("0.00")
    assert bob["DirectLicences"] == []
    assert bob["InactivityStatus"] == "Never logged in"
    assert bob["DaysSinceLastSignIn"] == "Never"

    assert charlie["DuplicateLicences"] != "N/A"
    assert charlie["DuplicateLicences"] == "Office 365 E3"
    assert charlie["DirectLicences"] == ["Office 365 E3"]
    assert charlie["GroupLicences"] == ["Office 365 E3 (via Sales Licensing)"]
    # duplicates are reported, not double-billed
    assert charlie["AnnualCost"] == Decimal("120.00")

    summary = data["summary"]
    per_user_total = sum(r["AnnualCost"] for r in rows)
    assert summary["Annual Cost (Purchased Seats)"] == per_user_total
    assert summary["Annual Cost (Assigned Seats)"] == Decimal("240.00")
    assert summary["Purchased Cost Assigned %"] == 100.0
    assert summary["Users With Duplicate Licences"] == 1
    assert summary["Licence Errors"] == 0

    assert data["_csv_columns"]["users"][:len(REPORT_COLUMNS)] == REPORT_COLUMNS
    assert "AnnualCost" in data["_csv_columns"]["users"]


def test_users_request_uses_advanced_query(priced_lookups, args) -> None:
    client = _client(_three_users())
    licence_report.run(client, args)

    _, endpoint, params, headers = next(c for c in client.calls if c[1] == "users")
    assert params["$filter"] == "assignedLicenses/$count ne 0"
    assert params["$count"] == "true"
    assert "signInActivity" in params["$select"]
    assert headers == {"ConsistencyLevel": "eventual"}


def test_group_names_are_cached(priced_lookups, args) -> None:
    users = _three_users() + [
        _user("u4", "Dana", [_state(SKU_E3, group=GROUP_ID)], last="2024-05-30T00:00:00Z"),
    ]
    client = _client(users)
    licence_report.run(client, args)
    group_calls = [c for c in client.calls if c[1] == f"groups/{GROUP_ID}"]
    assert len(group_calls) == 1


def test_licence_errors_are_annotated_and_counted(priced_lookups, args) -> None:
    users = [
        _user("u1", "Erin", [
            _state(SKU_E3),
            _state(SKU_VISIO, group=GROUP_ID, state="Error", error="CountViolation"),
        ], last="2024-05-30T00:00:00Z"),
    ]
    data = licence_report.run(_client(users), args)
    row = data["users"][0]

    assert row["LicenceErrors"] == ["Visio Plan 2 via Sales Licensing (CountViolation)"]
    assert row["GroupLicences"] == []
    assert data["summary"]["Licence Errors"] == 1


def test_sign_in_activity_rejected_marks_unknown(priced_lookups, args, capsys) -> None:
    def reject_sign_in(params):
        if "signInActivity" in params.get("$select", ""):
            return GraphRequestError(403, "Neither tenant is B2C or tenant doesn't have premium license", "users")
        return None

    client = _client(_three_users(), reject={"users": reject_sign_in})
    data = licence_report.run(client, args)

    assert len(data["users"]) == 3
    assert {r["InactivityStatus"] for r in data["users"]} == {"Unknown"}
    assert {r["DaysSinceLastSignIn"] for r in data["users"]} == {"Unknown"}
    assert data["summary"]["Sign-in Data"] == "Unavailable"
    assert "Sign-in activity unavailable" in capsys.readouterr().out


def test_unresolvable_group_falls_back_to_id(priced_lookups, args) -> None:
    client = _client(_three_users())
    client.objects = {}
    data = licence_report.run(client, args)
    charlie = data["users"][2]
    assert charlie["GroupLicences"] == [f"Office 365 E3 (via {GROUP_ID})"]


def test_group_lookup_network_failure_falls_back_to_id(priced_lookups, args, capsys) -> None:
    client = _client(_three_users())
    client.reject = {f"groups/{GROUP_ID}": lambda params: requests.ConnectionError("connection reset")}
    data = licence_report.run(client, args)
    charlie = data["users"][2]
    assert charlie["GroupLicences"] == [f"Office 365 E3 (via {GROUP_ID})"]
    assert f"Could not reach Graph for group {GROUP_ID}" in capsys.readouterr().out


def test_filter_options_are_built_as_text_not_markup() -> None:
    js = licence_report.REPORT_JS
    assert "createElement('option')" in js
    assert "opt.textContent" in js
    # dropdown values never reach the innerHTML template
    template = js[js.index("bar.innerHTML"):js.index("section.insertBefore")]
    assert "${" not in template


def test_zero_users_is_fatal(priced_lookups, args) -> None:
    with pytest.raises(NoLicensedUsersError):
        licence_report.run(_client([]), args)


def test_missing_lookups_are_fatal(args) -> None:
    with pytest.raises(LookupFileError):
        licence_report.run(_client(_three_users()), args)


def test_no_pricing_leaves_cost_columns_out(tmp_path, args) -> None:
    from conftest import write_csv

    data_dir = tmp_path / "data"
    write_csv(data_dir / "sku_lookup.csv", ["SkuId", "SkuPartNumber", "DisplayName", "Price", "Currency"],
              [[SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "", ""]])
    write_csv(data_dir / "service_plan_lookup.csv",
              ["ServicePlanId", "ServicePlanName", "ServicePlanDisplayName"], [])

    data = licence_report.run(_client(_three_users()), args)
    assert "AnnualCost" not in data["users"][0]
    assert tuple(data["_csv_columns"]["users"]) == REPORT_COLUMNS
    assert "Annual Cost (Users)" not in data["summary"]


def test_department_summary(priced_lookups, args) -> None:
    data = licence_report.run(_client(_three_users()), args)
    by_dept = {d["Department"]: d for d in data["departments"]}
    assert by_dept["Finance"]["Users"] == 2
    assert by_dept["Finance"]["Licences"] == 1
    assert by_dept["Finance"]["AnnualCost"] == Decimal("120.00")
    assert by_dept["Sales"]["Users"] == 1


def test_build_user_row_falls_back_to_assigned_licences() -> None:
    user = {
        "displayName": "Legacy",
        "assignedLicenses": [{"skuId": SKU_E3, "disabledPlans": []}],
        "licenseAssignmentStates": None,
    }
    skus = {SKU_E3: SkuRecord(SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "10.00", "USD")}
    row, facts = fncBuildUserRow(
        user, skus, {}, GroupNameCache(FakeGraphClient()),
        datetime(2024, 6, 1, tzinfo=timezone.utc),
        price_map={SKU_E3: "10.00"},
    )
    assert row["DirectLicences"] == ["Office 365 E3"]
    assert row["AnnualCost"] == Decimal("120.00")
    assert facts["sku_ids"] == [SKU_E3]


def test_sku_usage_percent_is_na_without_priced_purchases() -> None:
    skus = {SKU_VISIO: SkuRecord(SKU_VISIO, "VISIOCLIENT", "Visio Plan 2")}
    rows, totals = fncSkuUsageSummary(
        [{"skuId": SKU_VISIO, "skuPartNumber": "VISIOCLIENT", "consumedUnits": 3, "prepaidUnits": {"enabled": 5}}],
        skus, pricing=True,
    )
    assert rows[0]["UnitsAvailable"] == 2
    assert rows[0]["AssignedAnnualCost"] == ""
    assert totals["purchased"] == Decimal("0")
    assert totals["assigned_pct"] == "N/A"


def test_disabled_plan_without_lookup_shows_id() -> None:
    user = {
        "displayName": "Fay",
        "assignedLicenses": [{"skuId": SKU_E3, "disabledPlans": ["unknown-plan"]}],
        "licenseAssignmentStates": [_state(SKU_E3)],
    }
    plans = {PLAN_EXO: ServicePlanRecord(PLAN_EXO, "EXO", "Exchange Online (Plan 2)")}
    row, _ = fncBuildUserRow(user, {}, plans, lambda gid: gid, datetime(2024, 6, 1, tzinfo=timezone.utc))
    assert row["DisabledServicePlans"] == ["unknown-plan"]
    assert row["DirectLicences"] == [SKU_E3]
    assert "AnnualCost" not in row
