import csv
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from core.config import fncDefaultConfig
from handlers.graph.client import GraphRequestError

SKU_E3 = "05e9a617-0261-4cee-bb44-138d3ef5d965"
SKU_EXO = "4b9405b0-7788-4568-add1-99614e613b69"
SKU_VISIO = "c5928f49-12ba-48f7-ada3-0d743a3601d5"

PLAN_EXO = "efb87545-963c-4e0d-99df-69c6916d9eb0"
PLAN_TEAMS = "57ff2da0-773e-42df-b2af-ffb7a2317929"


class FakeGraphClient:
    """
    Stand-in for GraphClient. `pages` feeds get_all, `objects` feeds get.
    `reject` maps an endpoint to a callable(params) returning an exception
    to raise (or None to answer normally).
    """

    def __init__(
        self,
        pages: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        objects: Optional[Dict[str, Dict[str, Any]]] = None,
        reject: Optional[Dict[str, Callable[[Dict[str, Any]], Optional[Exception]]]] = None,
    ):
        self.pages = pages or {}
        self.objects = objects or {}
        self.reject = reject or {}
        self.calls: List[tuple] = []

    def _maybe_reject(self, endpoint: str, params: Dict[str, Any]) -> None:
        check = self.reject.get(endpoint)
        if check:
            ex = check(params)
            if ex is not None:
                raise ex

    def get_all(self, endpoint, params=None, headers=None):
        params = dict(params or {})
        self.calls.append(("get_all", endpoint, params, dict(headers or {})))
        self._maybe_reject(endpoint, params)
        return [dict(item) for item in self.pages.get(endpoint, [])]

    def get(self, endpoint, params=None, headers=None):
        params = dict(params or {})
        self.calls.append(("get", endpoint, params, dict(headers or {})))
        self._maybe_reject(endpoint, params)
        if endpoint not in self.objects:
            raise GraphRequestError(404, "Request_ResourceNotFound", endpoint)
        return dict(self.objects[endpoint])


def write_csv(path, headers, rows) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(headers)
        for r in rows:
            w.writerow(r)


def read_csv(path) -> List[Dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


@pytest.fixture
def fake_client_cls():
    return FakeGraphClient


@pytest.fixture
def cfg(tmp_path):
    c = fncDefaultConfig()
    c["paths"]["data_dir"] = str(tmp_path / "data")
    c["paths"]["reports_dir"] = str(tmp_path / "reports")
    return c


@pytest.fixture
def args(cfg):
    return SimpleNamespace(cfg=cfg, as_of="2024-06-01", download_reference=False)


@pytest.fixture
def priced_lookups(tmp_path):
    """SKU lookup with E3 priced at 10.00 (first row) and Visio unpriced."""
    data = tmp_path / "data"
    write_csv(
        data / "sku_lookup.csv",
        ["SkuId", "SkuPartNumber", "DisplayName", "Price", "Currency"],
        [
            [SKU_E3, "ENTERPRISEPACK", "Office 365 E3", "10.00", "USD"],
            [SKU_VISIO, "VISIOCLIENT", "Visio Plan 2", "", ""],
        ],
    )
    write_csv(
        data / "service_plan_lookup.csv",
        ["ServicePlanId", "ServicePlanName", "ServicePlanDisplayName"],
        [
            [PLAN_EXO, "EXCHANGE_S_ENTERPRISE", "Exchange Online (Plan 2)"],
            [PLAN_TEAMS, "TEAMS1", "Microsoft Teams"],
        ],
    )
    return data
