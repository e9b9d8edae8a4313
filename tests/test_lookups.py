from decimal import Decimal

import pytest

from conftest import PLAN_EXO, PLAN_TEAMS, SKU_E3, SKU_EXO, read_csv, write_csv
from core.lookups import (
    LookupFileError,
    SKU_COLUMNS,
    SkuRecord,
    fncBuildReferenceIndex,
    fncBuildReferenceLookups,
    fncLoadServicePlanLookup,
    fncLoadSkuLookup,
    fncPriceMap,
    fncReadReferenceTable,
    fncWriteServicePlanLookup,
    fncWriteSkuLookup,
)

REF_HEADERS = [
    "GUID", "String_Id", "Product_Display_Name",
    "Service_Plan_Id", "Service_Plan_Name", "Service_Plans_Included_Friendly_Names",
]


def _ref(guid, product, plan_id, plan_name, friendly, string_id="SKU"):
    return {
        "GUID": guid,
        "String_Id": string_id,
        "Product_Display_Name": product,
        "Service_Plan_Id": plan_id,
        "Service_Plan_Name": plan_name,
        "Service_Plans_Included_Friendly_Names": friendly,
    }


def test_conflicting_guid_keeps_first_and_warns_once(capsys) -> None:
    rows = [
        _ref(SKU_E3, "Office 365 E3", PLAN_EXO, "EXCHANGE_S_ENTERPRISE", "Exchange Online (Plan 2)"),
        _ref(SKU_E3, "Office 365 E3 (renamed)", PLAN_TEAMS, "TEAMS1", "Microsoft Teams"),
    ]
    sku_names, plan_names = fncBuildReferenceIndex(rows)

    assert sku_names[SKU_E3] == "Office 365 E3"
    assert plan_names[PLAN_TEAMS] == "Microsoft Teams"
    assert capsys.readouterr().out.count("Skipped duplicate") == 1


def test_repeated_guid_with_same_name_is_not_a_warning(capsys) -> None:
    rows = [
        _ref(SKU_E3, "Office 365 E3", PLAN_EXO, "EXCHANGE_S_ENTERPRISE", "Exchange Online (Plan 2)"),
        _ref(SKU_E3, "Office 365 E3", PLAN_TEAMS, "TEAMS1", "Microsoft Teams"),
    ]
    sku_names, plan_names = fncBuildReferenceIndex(rows)
    assert len(sku_names) == 1 and len(plan_names) == 2
    assert "Skipped duplicate" not in capsys.readouterr().out


def test_blank_ids_are_skipped_with_warning(capsys) -> None:
    rows = [
        _ref("", "Ghost Product", "", "GHOST", "Ghost Plan"),
        _ref(SKU_EXO, "Exchange Online (Plan 1)", PLAN_EXO, "EXCHANGE_S_STANDARD", "Exchange Online"),
    ]
    sku_names, plan_names = fncBuildReferenceIndex(rows)
    out = capsys.readouterr().out

    assert list(sku_names) == [SKU_EXO]
    assert list(plan_names) == [PLAN_EXO]
    assert "Blank GUID" in out
    assert "Blank Service_Plan_Id" in out


def test_reference_index_matches_guid_case_insensitively() -> None:
    rows = [_ref(SKU_E3.upper(), "Office 365 E3", PLAN_EXO.upper(), "EXO", "Exchange Online (Plan 2)")]
    subscribed = [{
        "skuId": SKU_E3,
        "skuPartNumber": "ENTERPRISEPACK",
        "servicePlans": [{"servicePlanId": PLAN_EXO, "servicePlanName": "EXCHANGE_S_ENTERPRISE"}],
    }]
    sku_rows, plan_rows = fncBuildReferenceLookups(subscribed, rows)
    assert sku_rows[0]["DisplayName"] == "Office 365 E3"
    assert plan_rows[0]["ServicePlanDisplayName"] == "Exchange Online (Plan 2)"


def test_join_falls_back_to_part_number_and_plan_name() -> None:
    subscribed = [
        {
            "skuId": SKU_EXO,
            "skuPartNumber": "EXCHANGESTANDARD",
            "servicePlans": [
                {"servicePlanId": PLAN_TEAMS, "servicePlanName": "TEAMS1"},
            ],
        },
        {
            "skuId": SKU_E3,
            "skuPartNumber": "ENTERPRISEPACK",
            "servicePlans": [
                {"servicePlanId": PLAN_TEAMS, "servicePlanName": "TEAMS1"},
            ],
        },
        {"skuPartNumber": "NO_ID"},
    ]
    sku_rows, plan_rows = fncBuildReferenceLookups(subscribed, [])

    assert [r["DisplayName"] for r in sku_rows] == ["EXCHANGESTANDARD", "ENTERPRISEPACK"]
    assert plan_rows == [{
        "ServicePlanId": PLAN_TEAMS,
        "ServicePlanName": "TEAMS1",
        "ServicePlanDisplayName": "TEAMS1",
    }]


def test_read_reference_table_requires_file_and_columns(tmp_path) -> None:
    with pytest.raises(LookupFileError):
        fncReadReferenceTable(tmp_path / "missing.csv")

    bad = tmp_path / "bad.csv"
    write_csv(bad, ["GUID", "Product_Display_Name"], [[SKU_E3, "Office 365 E3"]])
    with pytest.raises(LookupFileError, match="Service_Plan_Id"):
        fncReadReferenceTable(bad)


def test_read_reference_table_handles_bom(tmp_path) -> None:
    path = tmp_path / "ref.csv"
    body = ",".join(REF_HEADERS) + "\n" + f"{SKU_E3},ENTERPRISEPACK,Office 365 E3,{PLAN_EXO},EXO,Exchange\n"
    path.write_bytes(b"\xef\xbb\xbf" + body.encode("utf-8"))
    rows = fncReadReferenceTable(path)
    assert rows[0]["GUID"] == SKU_E3


def test_write_sku_lookup_carries_prices(tmp_path) -> None:
    path = tmp_path / "sku_lookup.csv"
    previous = {SKU_E3: SkuRecord(SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "19.80", "GBP")}
    rows = [
        {"SkuId": SKU_E3, "SkuPartNumber": "ENTERPRISEPACK", "DisplayName": "Office 365 E3"},
        {"SkuId": SKU_EXO, "SkuPartNumber": "EXCHANGESTANDARD", "DisplayName": "Exchange Online (Plan 1)"},
    ]
    assert fncWriteSkuLookup(path, rows, previous=previous) == 2

    written = read_csv(path)
    assert list(written[0].keys()) == list(SKU_COLUMNS)
    assert written[0]["Price"] == "19.80" and written[0]["Currency"] == "GBP"
    assert written[1]["Price"] == ""

    records, pricing = fncLoadSkuLookup(path)
    assert pricing is True
    assert records[SKU_E3].monthly_price == Decimal("19.80")
    assert fncPriceMap(records) == {SKU_E3: "19.80"}


def test_pricing_detected_from_first_row_only(tmp_path) -> None:
    path = tmp_path / "sku_lookup.csv"
    write_csv(path, list(SKU_COLUMNS), [
        [SKU_EXO, "EXCHANGESTANDARD", "Exchange Online (Plan 1)", "", ""],
        [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "19.80", "GBP"],
    ])
    records, pricing = fncLoadSkuLookup(path)
    assert pricing is False
    assert len(records) == 2


def test_lookup_without_price_columns_loads(tmp_path) -> None:
    path = tmp_path / "sku_lookup.csv"
    write_csv(path, ["SkuId", "SkuPartNumber", "DisplayName"], [[SKU_E3, "ENTERPRISEPACK", "Office 365 E3"]])
    records, pricing = fncLoadSkuLookup(path)
    assert pricing is False
    assert records[SKU_E3].price == ""


def test_duplicate_sku_lookup_rows_first_wins(tmp_path, capsys) -> None:
    path = tmp_path / "sku_lookup.csv"
    write_csv(path, list(SKU_COLUMNS), [
        [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "10.00", "USD"],
        [SKU_E3, "ENTERPRISEPACK", "Something Else", "99.00", "USD"],
    ])
    records, _ = fncLoadSkuLookup(path)
    assert records[SKU_E3].display_name == "Office 365 E3"
    assert capsys.readouterr().out.count("Skipped duplicate") == 1


def test_service_plan_lookup_round_trip(tmp_path) -> None:
    path = tmp_path / "service_plan_lookup.csv"
    fncWriteServicePlanLookup(path, [
        {"ServicePlanId": PLAN_EXO, "ServicePlanName": "EXCHANGE_S_ENTERPRISE",
         "ServicePlanDisplayName": "Exchange Online (Plan 2)"},
    ])
    plans = fncLoadServicePlanLookup(path)
    assert plans[PLAN_EXO].display_name == "Exchange Online (Plan 2)"


def test_missing_lookups_raise(tmp_path) -> None:
    with pytest.raises(LookupFileError):
        fncLoadSkuLookup(tmp_path / "nope.csv")
    with pytest.raises(LookupFileError):
        fncLoadServicePlanLookup(tmp_path / "nope.csv")
