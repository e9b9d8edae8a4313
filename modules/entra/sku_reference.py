# ================================================================
# File     : modules/entra/sku_reference.py
# Purpose  : Export SKU and service-plan lookup CSVs by joining the
#            tenant's subscribed SKUs with the vendor product table
# Notes    : Read-only Graph (subscribedSkus). Output feeds the
#            licence_report module; prices typed into the SKU lookup
#            survive a re-export.
# ================================================================

import pathlib
from datetime import datetime, timezone

import requests

from core.config import fncDefaultConfig, fncResolvePath
from core.lookups import (
    LookupFileError,
    PLAN_COLUMNS,
    SKU_COLUMNS,
    fncBuildReferenceLookups,
    fncLoadSkuLookup,
    fncReadReferenceTable,
    fncWriteServicePlanLookup,
    fncWriteSkuLookup,
)
from core.utils import fncNewRunId, fncPrintMessage, fncToTable

RUN_ORDER = 10

REQUIRED_PERMS = ["Organization.Read.All"]

SKU_SELECT = "skuId,skuPartNumber,consumedUnits,prepaidUnits,capabilityStatus,servicePlans"


def _download_reference(url: str, dest: pathlib.Path, timeout: int = 120) -> None:
    """Fetch the vendor CSV. A failed download keeps any copy already on disk."""
    fncPrintMessage(f"Downloading product reference table → {dest}", "info")
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as ex:
        if dest.is_file():
            fncPrintMessage(f"Download failed ({ex}); keeping existing {dest.name}.", "warn")
            return
        raise LookupFileError(f"Could not download reference table from {url}: {ex}") from ex
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(resp.content)
    fncPrintMessage(f"Reference table saved ({len(resp.content):,} bytes).", "success")


def _previous_prices(path: pathlib.Path):
    if not path.is_file():
        return {}
    try:
        records, _ = fncLoadSkuLookup(path)
    except LookupFileError as ex:
        fncPrintMessage(f"Ignoring unreadable existing SKU lookup: {ex}", "warn")
        return {}
    return records


def run(client, args):
    run_id = fncNewRunId("skuref")
    cfg = getattr(args, "cfg", None) or fncDefaultConfig()
    fncPrintMessage(f"Running SKU Reference export (run={run_id})", "info")

    reference_path = fncResolvePath(cfg, "reference_csv")
    sku_path = fncResolvePath(cfg, "sku_lookup")
    plan_path = fncResolvePath(cfg, "service_plan_lookup")

    if getattr(args, "download_reference", False):
        _download_reference(cfg.get("reference_url") or fncDefaultConfig()["reference_url"], reference_path)

    reference_rows = fncReadReferenceTable(reference_path)

    skus = client.get_all("subscribedSkus", params={"$select": SKU_SELECT})
    fncPrintMessage(f"Tenant has {len(skus)} subscribed SKU(s).", "info")

    sku_rows, plan_rows = fncBuildReferenceLookups(skus, reference_rows)

    previous = _previous_prices(sku_path)
    fncWriteSkuLookup(sku_path, sku_rows, previous=previous)
    fncWriteServicePlanLookup(plan_path, plan_rows)

    # Re-read what we wrote so the returned tables carry carried-over prices
    records, pricing = fncLoadSkuLookup(sku_path)
    sku_table = [{
        "SkuId": r.sku_id,
        "SkuPartNumber": r.sku_part_number,
        "DisplayName": r.display_name,
        "Price": r.price,
        "Currency": r.currency,
    } for r in records.values()]

    if sku_table:
        fncPrintMessage("SKU lookup (top 15)", "info")
        print(fncToTable(sku_table, headers=["SkuPartNumber", "DisplayName", "Price", "Currency"], max_rows=15))

    if not pricing:
        fncPrintMessage(
            f"No prices yet — fill the Price/Currency columns in {sku_path} to enable cost analysis.",
            "warn",
        )

    summary = {
        "Subscribed SKUs": len(sku_table),
        "Service Plans": len(plan_rows),
        "Reference Rows": len(reference_rows),
        "Priced SKUs": sum(1 for r in records.values() if r.price),
        "SKU Lookup": str(sku_path),
        "Service Plan Lookup": str(plan_path),
    }

    data = {
        "provider": "entra",
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "summary": summary,

        "skus": sku_table,
        "service_plans": plan_rows,

        "_kpis": [
            {"label": "Subscribed SKUs", "value": len(sku_table), "tone": "primary", "badge": "SKUs"},
            {"label": "Service Plans", "value": len(plan_rows), "tone": "info", "badge": "Plans"},
            {"label": "Priced SKUs", "value": summary["Priced SKUs"],
             "tone": "success" if pricing else "warning", "badge": "Pricing"},
        ],
        "_csv_columns": {"skus": SKU_COLUMNS, "service_plans": PLAN_COLUMNS},
        "_title": "SKU Reference",
        "_subtitle": "Subscribed SKUs and service plans with friendly product names",
    }

    fncPrintMessage("SKU Reference module complete.", "success")
    return data
