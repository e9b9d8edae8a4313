import pytest
import requests

from conftest import PLAN_EXO, PLAN_TEAMS, SKU_E3, SKU_EXO, FakeGraphClient, read_csv, write_csv
from core.lookups import LookupFileError, PLAN_COLUMNS, SKU_COLUMNS
from modules.entra import sku_reference

REF_HEADERS = [
    "GUID", "String_Id", "Product_Display_Name",
    "Service_Plan_Id", "Service_Plan_Name", "Service_Plans_Included_Friendly_Names",
]


@pytest.fixture
def reference_csv(tmp_path):
    path = tmp_path / "data" / "Product names and service plan identifiers for licensing.csv"
    write_csv(path, REF_HEADERS, [
        [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", PLAN_EXO, "EXCHANGE_S_ENTERPRISE", "Exchange Online (Plan 2)"],
        [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", PLAN_TEAMS, "TEAMS1", "Microsoft Teams"],
    ])
    return path


def _client():
    return FakeGraphClient(pages={
        "subscribedSkus": [
            {
                "skuId": SKU_E3,
                "skuPartNumber": "ENTERPRISEPACK",
                "consumedUnits": 12,
                "prepaidUnits": {"enabled": 15},
                "servicePlans": [
                    {"servicePlanId": PLAN_EXO, "servicePlanName": "EXCHANGE_S_ENTERPRISE"},
                    {"servicePlanId": PLAN_TEAMS, "servicePlanName": "TEAMS1"},
                ],
            },
            {
                "skuId": SKU_EXO,
                "skuPartNumber": "EXCHANGESTANDARD",
                "consumedUnits": 1,
                "prepaidUnits": {"enabled": 1},
                "servicePlans": [
                    {"servicePlanId": PLAN_EXO, "servicePlanName": "EXCHANGE_S_ENTERPRISE"},
                ],
            },
        ],
    })


def test_writes_both_lookups(reference_csv, args) -> None:
    data = sku_reference.run(_client(), args)
    data_dir = reference_csv.parent

    skus = read_csv(data_dir / "sku_lookup.csv")
    plans = read_csv(data_dir / "service_plan_lookup.csv")

    assert list(skus[0].keys()) == list(SKU_COLUMNS)
    assert list(plans[0].keys()) == list(PLAN_COLUMNS)
    assert [s["DisplayName"] for s in skus] == ["Office 365 E3", "EXCHANGESTANDARD"]
    assert [p["ServicePlanDisplayName"] for p in plans] == ["Exchange Online (Plan 2)", "Microsoft Teams"]

    assert data["summary"]["Subscribed SKUs"] == 2
    assert data["summary"]["Service Plans"] == 2
    assert data["summary"]["Priced SKUs"] == 0


def test_rerun_keeps_hand_entered_prices(reference_csv, args) -> None:
    data_dir = reference_csv.parent
    write_csv(data_dir / "sku_lookup.csv", list(SKU_COLUMNS), [
        [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "19.80", "GBP"],
    ])

    data = sku_reference.run(_client(), args)

    skus = {s["SkuId"]: s for s in read_csv(data_dir / "sku_lookup.csv")}
    assert skus[SKU_E3]["Price"] == "19.80"
    assert skus[SKU_E3]["Currency"] == "GBP"
    assert skus[SKU_EXO]["Price"] == ""
    assert data["summary"]["Priced SKUs"] == 1


def test_missing_reference_is_fatal(args) -> None:
    with pytest.raises(LookupFileError):
        sku_reference.run(_client(), args)


def test_download_failure_keeps_existing_file(reference_csv, args, monkeypatch, capsys) -> None:
    def boom(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(sku_reference.requests, "get", boom)
    args.download_reference = True

    data = sku_reference.run(_client(), args)
    assert data["summary"]["Subscribed SKUs"] == 2
    assert "keeping existing" in capsys.readouterr().out


def test_download_failure_without_local_copy_is_fatal(args, monkeypatch) -> None:
    def boom(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(sku_reference.requests, "get", boom)
    args.download_reference = True

    with pytest.raises(LookupFileError, match="Could not download"):
        sku_reference.run(_client(), args)


def test_download_writes_reference(tmp_path, args, monkeypatch) -> None:
    body = (",".join(REF_HEADERS) + "\n"
            + f"{SKU_E3},ENTERPRISEPACK,Office 365 E3,{PLAN_EXO},EXCHANGE_S_ENTERPRISE,Exchange Online (Plan 2)\n")

    class Resp:
        content = body.encode("utf-8")

        def raise_for_status(self):
            return None

    seen = []

    def fake_get(url, timeout):
        seen.append(url)
        return Resp()

    monkeypatch.setattr(sku_reference.requests, "get", fake_get)
    args.download_reference = True

    data = sku_reference.run(_client(), args)
    assert seen == [args.cfg["reference_url"]]
    assert (tmp_path / "data" / "Product names and service plan identifiers for licensing.csv").is_file()
    assert data["skus"][0]["DisplayName"] == "Office 365 E3"
