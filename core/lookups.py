# ================================================================
# File     : core/lookups.py
# Purpose  : Reference lookup builder + SKU / service-plan lookup
#            CSV read/write
# Notes    : First occurrence of an id always wins; later rows are
#            skipped and logged, never overwritten. No Graph calls.
# ================================================================

import pathlib
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from core.utils import fncPrintMessage, fncReadCSV, fncExportCSV

# Vendor table ("Product names and service plan identifiers for licensing")
REFERENCE_COLUMNS = (
    "GUID",
    "String_Id",
    "Product_Display_Name",
    "Service_Plan_Id",
    "Service_Plan_Name",
    "Service_Plans_Included_Friendly_Names",
)
REFERENCE_REQUIRED = ("GUID", "Product_Display_Name", "Service_Plan_Id", "Service_Plans_Included_Friendly_Names")

SKU_COLUMNS = ("SkuId", "SkuPartNumber", "DisplayName", "Price", "Currency")
PLAN_COLUMNS = ("ServicePlanId", "ServicePlanName", "ServicePlanDisplayName")


class LookupFileError(Exception):
    """A required reference or lookup CSV is missing or malformed."""


@dataclass(frozen=True)
class SkuRecord:
    sku_id: str
    sku_part_number: str
    display_name: str
    price: str = ""
    currency: str = ""

    @property
    def monthly_price(self) -> Optional[Decimal]:
        try:
            return Decimal(self.price) if self.price else None
        except InvalidOperation:
            return None


@dataclass(frozen=True)
class ServicePlanRecord:
    service_plan_id: str
    service_plan_name: str
    display_name: str


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _require_file(path, label: str) -> pathlib.Path:
    p = pathlib.Path(path).expanduser()
    if not p.is_file():
        raise LookupFileError(f"{label} not found: {p}")
    return p


def _require_columns(rows: List[Dict[str, str]], columns: Iterable[str], label: str, path) -> None:
    if not rows:
        return
    absent = [c for c in columns if c not in rows[0]]
    if absent:
        raise LookupFileError(f"{label} {path} is missing column(s): {', '.join(absent)}")


def _first_wins(index: Dict[str, Any], key: str, value: Any, label: str, where: str, same=None) -> bool:
    """
    Insert key → value unless key is already present.
    `same(old, new)` marks a harmless repeat (debug only); anything else
    logs a skipped-duplicate warning.
    """
    if key not in index:
        index[key] = value
        return True
    old = index[key]
    if same is not None and same(old, value):
        fncPrintMessage(f"Repeated {label} {key} at {where} — already indexed.", "debug")
    else:
        fncPrintMessage(f"Skipped duplicate {label} {key} at {where} (keeping first: {old!r}).", "warn")
    return False


# ================================================================
# Function: fncReadReferenceTable
# Purpose : Load the vendor product/service-plan CSV
# Notes   : Missing file or required columns is fatal
# ================================================================
def fncReadReferenceTable(path) -> List[Dict[str, str]]:
    p = _require_file(path, "Reference CSV")
    rows = fncReadCSV(str(p))
    _require_columns(rows, REFERENCE_REQUIRED, "Reference CSV", p)
    fncPrintMessage(f"Loaded {len(rows)} reference row(s) from {p.name}", "info")
    return rows


# ================================================================
# Function: fncBuildReferenceIndex
# Purpose : Index the vendor table: GUID → product name and
#           Service_Plan_Id → friendly plan name
# Notes   : The vendor file has one row per (SKU, plan), so a GUID
#           repeating with the same name is expected and folded
#           quietly; a repeat with a different name is warned about.
# ================================================================
def fncBuildReferenceIndex(rows: Iterable[Mapping[str, str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    sku_names: Dict[str, str] = {}
    plan_names: Dict[str, str] = {}
    same_text = lambda a, b: a == b

    for n, row in enumerate(rows or [], start=2):  # row 1 is the header
        where = f"reference row {n}"
        guid = (row.get("GUID") or "").strip().lower()
        product = (row.get("Product_Display_Name") or "").strip()
        plan_id = (row.get("Service_Plan_Id") or "").strip().lower()
        plan_name = (row.get("Service_Plans_Included_Friendly_Names") or "").strip()

        if guid:
            _first_wins(sku_names, guid, product or (row.get("String_Id") or "").strip(), "SKU", where, same_text)
        else:
            fncPrintMessage(f"Blank GUID at {where} — skipped.", "warn")

        if plan_id:
            _first_wins(plan_names, plan_id, plan_name or (row.get("Service_Plan_Name") or "").strip(),
                        "service plan", where, same_text)
        else:
            fncPrintMessage(f"Blank Service_Plan_Id at {where} — skipped.", "warn")

    fncPrintMessage(f"Reference index: {len(sku_names)} SKU(s), {len(plan_names)} service plan(s)", "debug")
    return sku_names, plan_names


# ================================================================
# Function: fncBuildReferenceLookups
# Purpose : Join subscribed SKUs against the vendor table
# Notes   : Returns (sku_rows, plan_rows) keyed by SKU_COLUMNS /
#           PLAN_COLUMNS. Unresolved names fall back to the part
#           number / plan name, then the raw id.
# ================================================================
def fncBuildReferenceLookups(
    subscribed_skus: Iterable[Mapping[str, Any]],
    reference_rows: Iterable[Mapping[str, str]],
) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
    sku_names, plan_names = fncBuildReferenceIndex(reference_rows)

    sku_rows: Dict[str, Dict[str, str]] = {}
    plan_rows: Dict[str, Dict[str, str]] = {}
    same_row = lambda a, b: a == b
    unresolved = 0

    for n, sku in enumerate(subscribed_skus or [], start=1):
        sku_id = str(sku.get("skuId") or "").strip()
        part = str(sku.get("skuPartNumber") or "").strip()
        if not sku_id:
            fncPrintMessage(f"Subscribed SKU #{n} ({part or 'unnamed'}) has no skuId — skipped.", "warn")
            continue
        display = sku_names.get(sku_id.lower())
        if not display:
            unresolved += 1
            display = part or sku_id
        _first_wins(sku_rows, sku_id, {"SkuId": sku_id, "SkuPartNumber": part, "DisplayName": display},
                    "subscribed SKU", f"subscribed SKU #{n}", same_row)

        for plan in sku.get("servicePlans") or []:
            plan_id = str(plan.get("servicePlanId") or "").strip()
            plan_name = str(plan.get("servicePlanName") or "").strip()
            if not plan_id:
                fncPrintMessage(f"Service plan '{plan_name}' under {part or sku_id} has no id — skipped.", "warn")
                continue
            row = {
                "ServicePlanId": plan_id,
                "ServicePlanName": plan_name,
                "ServicePlanDisplayName": plan_names.get(plan_id.lower()) or plan_name or plan_id,
            }
            # the same plan ships inside many SKUs
            _first_wins(plan_rows, plan_id, row, "service plan", f"SKU {part or sku_id}", same_row)

    if unresolved:
        fncPrintMessage(f"{unresolved} SKU(s) not in the reference table — using part numbers.", "warn")
    return list(sku_rows.values()), list(plan_rows.values())


# ================================================================
# Function: fncWriteSkuLookup
# Purpose : Write the SKU lookup CSV (SkuId, SkuPartNumber,
#           DisplayName, Price, Currency)
# Notes   : Prices/currencies from `previous` (an earlier lookup)
#           are carried across so hand-entered prices survive
# ================================================================
def fncWriteSkuLookup(path, sku_rows: Iterable[Mapping[str, str]],
                      previous: Optional[Mapping[str, SkuRecord]] = None) -> int:
    previous = previous or {}
    out = []
    kept = 0
    for r in sku_rows:
        prior = previous.get(r["SkuId"])
        row = {c: r.get(c, "") for c in SKU_COLUMNS}
        if prior and not row["Price"]:
            row["Price"], row["Currency"] = prior.price, prior.currency
            kept += 1 if prior.price else 0
        out.append(row)
    if kept:
        fncPrintMessage(f"Carried {kept} existing price(s) into the new SKU lookup.", "info")
    fncExportCSV(str(path), out, headers=SKU_COLUMNS)
    return len(out)


# ================================================================
# Function: fncWriteServicePlanLookup
# Purpose : Write the service-plan lookup CSV
# ================================================================
def fncWriteServicePlanLookup(path, plan_rows: Iterable[Mapping[str, str]]) -> int:
    rows = [{c: r.get(c, "") for c in PLAN_COLUMNS} for r in plan_rows]
    fncExportCSV(str(path), rows, headers=PLAN_COLUMNS)
    return len(rows)


# ================================================================
# Function: fncLoadSkuLookup
# Purpose : Read the SKU lookup CSV into {skuId: SkuRecord}
# Notes   : Pricing is on iff the FIRST data row has a Price value.
#           Returns (records, pricing_enabled).
# ================================================================
def fncLoadSkuLookup(path) -> Tuple[Dict[str, SkuRecord], bool]:
    p = _require_file(path, "SKU lookup CSV")
    rows = fncReadCSV(str(p))
    _require_columns(rows, ("SkuId", "DisplayName"), "SKU lookup CSV", p)

    records: Dict[str, SkuRecord] = {}
    for n, row in enumerate(rows, start=2):
        sku_id = row.get("SkuId", "")
        if not sku_id:
            fncPrintMessage(f"Blank SkuId at {p.name} row {n} — skipped.", "warn")
            continue
        rec = SkuRecord(
            sku_id=sku_id,
            sku_part_number=row.get("SkuPartNumber", ""),
            display_name=row.get("DisplayName") or row.get("SkuPartNumber") or sku_id,
            price=row.get("Price", ""),
            currency=row.get("Currency", ""),
        )
        _first_wins(records, sku_id, rec, "SkuId", f"{p.name} row {n}")

    pricing = bool(rows and rows[0].get("Price"))
    fncPrintMessage(
        f"Loaded {len(records)} SKU(s) from {p.name} (pricing {'enabled' if pricing else 'not configured'})",
        "info",
    )
    return records, pricing


# ================================================================
# Function: fncLoadServicePlanLookup
# Purpose : Read the service-plan lookup CSV into a map
# ================================================================
def fncLoadServicePlanLookup(path) -> Dict[str, ServicePlanRecord]:
    p = _require_file(path, "Service plan lookup CSV")
    rows = fncReadCSV(str(p))
    _require_columns(rows, ("ServicePlanId", "ServicePlanDisplayName"), "Service plan lookup CSV", p)

    records: Dict[str, ServicePlanRecord] = {}
    for n, row in enumerate(rows, start=2):
        plan_id = row.get("ServicePlanId", "")
        if not plan_id:
            fncPrintMessage(f"Blank ServicePlanId at {p.name} row {n} — skipped.", "warn")
            continue
        rec = ServicePlanRecord(
            service_plan_id=plan_id,
            service_plan_name=row.get("ServicePlanName", ""),
            display_name=row.get("ServicePlanDisplayName") or row.get("ServicePlanName") or plan_id,
        )
        _first_wins(records, plan_id, rec, "ServicePlanId", f"{p.name} row {n}")

    fncPrintMessage(f"Loaded {len(records)} service plan(s) from {p.name}", "info")
    return records


# ================================================================
# Function: fncPriceMap
# Purpose : {skuId: raw monthly price} for the cost calculator
# Notes   : Raw text is passed through so unparseable prices are
#           reported by the calculator, not silently dropped here
# ================================================================
def fncPriceMap(records: Mapping[str, SkuRecord]) -> Dict[str, str]:
    return {sku_id: rec.price for sku_id, rec in records.items() if rec.price}
