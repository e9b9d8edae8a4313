# ================================================================
# File     : modules/entra/licence_report.py
# Purpose  : Per-user licence report: names, group vs direct,
#            duplicates, errors, inactivity and (optionally) cost,
#            plus department / country / SKU aggregates
# Notes    : Read-only Graph. Needs the lookup CSVs written by
#            sku_reference. Rows keep Graph's user order sorted by
#            display name; aggregates are built after every row.
# ================================================================

from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import requests

from core.config import fncDefaultConfig, fncResolvePath
from core.licensing import (
    DIRECT,
    INACTIVITY_STATUSES,
    NOT_APPLICABLE,
    LicenseAssignment,
    fncCentsToUnits,
    fncClassifyInactivity,
    fncComputeMonthlyCents,
    fncDuplicateWarning,
    fncParseAssignments,
    fncSkuName,
    fncSplitActive,
    fncUnitsCost,
    fncUnknownInactivity,
)
from core.lookups import ServicePlanRecord, SkuRecord, fncLoadServicePlanLookup, fncLoadSkuLookup, fncPriceMap
from core.utils import fncNewRunId, fncParseGraphDate, fncPrintMessage, fncToTable
from handlers.graph.client import GraphRequestError
from handlers.graph.graph_helpers import ADVANCED_QUERY_HEADERS, safe_select_get_all

RUN_ORDER = 20

REQUIRED_PERMS = [
    "User.Read.All",
    "Group.Read.All",
    "Organization.Read.All",
    "AuditLog.Read.All",   # signInActivity
]

USER_FIELDS = [
    "id", "displayName", "userPrincipalName", "accountEnabled",
    "country", "department", "jobTitle", "companyName",
    "assignedLicenses", "licenseAssignmentStates", "signInActivity",
]

REPORT_COLUMNS = (
    "DisplayName",
    "UserPrincipalName",
    "AccountEnabled",
    "Country",
    "Department",
    "JobTitle",
    "CompanyName",
    "DirectLicences",
    "GroupLicences",
    "LicenceErrors",
    "DisabledServicePlans",
    "DuplicateLicences",
    "LastInteractiveSignIn",
    "LastNonInteractiveSignIn",
    "DaysSinceLastSignIn",
    "InactivityStatus",
)
COST_COLUMNS = ("MonthlyCost", "AnnualCost", "Currency")

NONE_LABEL = "(none)"


class NoLicensedUsersError(Exception):
    """Graph returned no users with an assigned licence."""


# ----------------------- Module-local CSS/JS ---------------------

REPORT_CSS = r"""
.lreport .filters{ display:flex; flex-wrap:wrap; gap:10px; margin:6px 2px; }
.lreport .filters input, .lreport .filters select{
  padding:6px 10px; border-radius:999px; border:1px solid var(--rule);
  background:var(--panel); color:var(--ink); outline:none;
}
.lreport .filters input{ min-width:240px; }
.lreport .filters .count{ align-self:center; color:var(--quiet); font-size:.9rem; }
.lreport table thead th{ position:sticky; top:0; z-index:2; }
"""

REPORT_JS = r"""
(function(){
  const table = document.querySelector('.lreport #tbl-licensed-users');
  if (!table) return;
  const section = table.closest('.section');
  const heads = Array.from(table.querySelectorAll('thead th')).map(th => (th.textContent||'').trim());
  const statusIdx = heads.indexOf('InactivityStatus');
  const deptIdx = heads.indexOf('Department');
  const dupIdx = heads.indexOf('DuplicateLicences');
  const rows = Array.from(table.querySelectorAll('tbody tr'));

  // directory values are untrusted text: never pass them through innerHTML
  function fillOptions(select, idx){
    if (idx < 0) return;
    const vals = Array.from(new Set(rows.map(r => (r.cells[idx].textContent||'').trim()))).sort();
    for (const v of vals) {
      const opt = document.createElement('option');
      opt.value = v;
      opt.textContent = v || '(blank)';
      select.appendChild(opt);
    }
  }

  const bar = document.createElement('div');
  bar.className = 'filters';
  bar.innerHTML = `
    <input type="search" placeholder="Search users, licences, groups…" aria-label="Search">
    <select data-f="status"><option value="">All statuses</option></select>
    <select data-f="dept"><option value="">All departments</option></select>
    <select data-f="dup"><option value="">Duplicates: any</option><option value="yes">Duplicates only</option></select>
    <span class="count"></span>`;
  section.insertBefore(bar, section.querySelector('.scroll-x'));
  fillOptions(bar.querySelector('[data-f="status"]'), statusIdx);
  fillOptions(bar.querySelector('[data-f="dept"]'), deptIdx);

  const q = bar.querySelector('input');
  const fStatus = bar.querySelector('[data-f="status"]');
  const fDept = bar.querySelector('[data-f="dept"]');
  const fDup = bar.querySelector('[data-f="dup"]');
  const count = bar.querySelector('.count');

  function cell(tr, idx){ return idx < 0 ? '' : (tr.cells[idx].textContent||'').trim(); }

  function apply(){
    const text = (q.value||'').toLowerCase();
    let shown = 0;
    rows.forEach(tr => {
      const ok = (!text || tr.textContent.toLowerCase().includes(text))
        && (!fStatus.value || cell(tr, statusIdx) === fStatus.value)
        && (!fDept.value || cell(tr, deptIdx) === fDept.value)
        && (!fDup.value || (cell(tr, dupIdx) !== 'N/A' && cell(tr, dupIdx) !== ''));
      tr.style.display = ok ? '' : 'none';
      if (ok) shown++;
    });
    count.textContent = `${shown} of ${rows.length} users`;
  }
  [q, fStatus, fDept, fDup].forEach(el => el.addEventListener('input', apply));
  apply();
})();
"""

# ----------------------- Helpers -----------------------

def _parse_as_of(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    dt = fncParseGraphDate(value)
    if dt is None:
        raise ValueError(f"Invalid --as-of date: {value!r} (expected YYYY-MM-DD)")
    return dt


def _fmt_date(value: Any) -> str:
    dt = fncParseGraphDate(value)
    return dt.strftime("%Y-%m-%d %H:%M") if dt else ""


def _try_get_all(client, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Resilient client.get_all with a soft failure path."""
    try:
        return client.get_all(path, params=params)
    except GraphRequestError as ex:
        fncPrintMessage(f"get_all failed for '{path}': {ex}", "warn")
        return []


class GroupNameCache:
    """Group id → display name, one Graph call per distinct group."""

    def __init__(self, client):
        self._client = client
        self._names: Dict[str, str] = {}

    def __call__(self, group_id: str) -> str:
        if group_id not in self._names:
            try:
                data = self._client.get(f"groups/{group_id}", params={"$select": "id,displayName"})
                self._names[group_id] = (data or {}).get("displayName") or group_id
            except GraphRequestError as ex:
                fncPrintMessage(f"Could not resolve group {group_id} [{ex.status}] — showing its id.", "warn")
                self._names[group_id] = group_id
            except requests.RequestException as ex:
                fncPrintMessage(f"Could not reach Graph for group {group_id} ({ex}) — showing its id.", "warn")
                self._names[group_id] = group_id
        return self._names[group_id]


# ================================================================
# Function: fncGetLicensedUsers
# Purpose : All users with at least one licence, sorted by name
# Notes   : Returns (users, sign_in_available). signInActivity is
#           optional: tenants without AuditLog.Read.All / premium
#           licensing reject it and we retry without.
# ================================================================
def fncGetLicensedUsers(client) -> Tuple[List[Dict[str, Any]], bool]:
    users, missing = safe_select_get_all(
        client,
        "users",
        USER_FIELDS,
        params={"$filter": "assignedLicenses/$count ne 0", "$count": "true", "$top": "999"},
        headers=ADVANCED_QUERY_HEADERS,
        optional=["signInActivity"],
    )
    if not users:
        raise NoLicensedUsersError("No licensed users were returned by Microsoft Graph.")
    users.sort(key=lambda u: (u.get("displayName") or "").casefold())
    sign_in_available = "signInActivity" not in missing
    if not sign_in_available:
        fncPrintMessage("Sign-in activity unavailable — inactivity will read 'Unknown'.", "warn")
    return users, sign_in_available


def _assignments_for(user: Mapping[str, Any]) -> List[LicenseAssignment]:
    assignments = fncParseAssignments(user.get("licenseAssignmentStates"))
    if assignments:
        return assignments
    # older payloads only carry assignedLicenses; treat them as direct
    return [LicenseAssignment(sku_id=str(l.get("skuId")), method=DIRECT)
            for l in (user.get("assignedLicenses") or []) if l.get("skuId")]


def _disabled_plans(user: Mapping[str, Any], plans: Mapping[str, ServicePlanRecord]) -> List[str]:
    names = []
    for lic in user.get("assignedLicenses") or []:
        for plan_id in lic.get("disabledPlans") or []:
            rec = plans.get(plan_id)
            names.append(rec.display_name if rec else plan_id)
    return list(dict.fromkeys(names))


# ================================================================
# Function: fncBuildUserRow
# Purpose : One UserLicenseReportRow (dict) for a licensed user
# Notes   : Returns (row, facts); facts carries the numbers the
#           aggregates need (cents, error count, sku ids, …)
# ================================================================
def fncBuildUserRow(
    user: Mapping[str, Any],
    skus: Mapping[str, SkuRecord],
    plans: Mapping[str, ServicePlanRecord],
    group_name: Callable[[str], str],
    as_of: datetime,
    price_map: Optional[Mapping[str, Any]] = None,
    sign_in_available: bool = True,
    default_currency: str = "",
    missing_prices: Optional[Set[str]] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    assignments = _assignments_for(user)
    direct, group = fncSplitActive(assignments)

    direct_names = list(dict.fromkeys(fncSkuName(skus, a.sku_id) for a in direct))
    group_names = list(dict.fromkeys(
        f"{fncSkuName(skus, a.sku_id)} (via {group_name(a.group_id)})" for a in group
    ))
    errors = []
    for a in assignments:
        if not a.has_error:
            continue
        source = f" via {group_name(a.group_id)}" if a.group_id else ""
        errors.append(f"{fncSkuName(skus, a.sku_id)}{source} ({a.error or a.state})")

    if sign_in_available:
        activity = user.get("signInActivity") or {}
        interactive = activity.get("lastSignInDateTime")
        non_interactive = activity.get("lastNonInteractiveSignInDateTime")
        inactivity = fncClassifyInactivity(interactive, non_interactive, as_of)
    else:
        interactive = non_interactive = None
        inactivity = fncUnknownInactivity()

    active_ids = list(dict.fromkeys(a.sku_id for a in direct + group))

    row = {
        "DisplayName": user.get("displayName") or "",
        "UserPrincipalName": user.get("userPrincipalName") or "",
        "AccountEnabled": "No" if user.get("accountEnabled") is False else "Yes",
        "Country": user.get("country") or "",
        "Department": user.get("department") or "",
        "JobTitle": user.get("jobTitle") or "",
        "CompanyName": user.get("companyName") or "",
        "DirectLicences": direct_names,
        "GroupLicences": group_names,
        "LicenceErrors": errors,
        "DisabledServicePlans": _disabled_plans(user, plans),
        "DuplicateLicences": fncDuplicateWarning(direct, group, skus),
        "LastInteractiveSignIn": _fmt_date(interactive),
        "LastNonInteractiveSignIn": _fmt_date(non_interactive),
        "DaysSinceLastSignIn": inactivity.days,
        "InactivityStatus": inactivity.status,
    }

    cents = 0
    if price_map is not None:
        cents = fncComputeMonthlyCents(active_ids, price_map, missing_prices)
        currencies = [skus[s].currency for s in active_ids if s in skus and skus[s].currency]
        row["MonthlyCost"] = fncCentsToUnits(cents)
        row["AnnualCost"] = fncCentsToUnits(cents * 12)
        row["Currency"] = currencies[0] if currencies else default_currency

    facts = {
        "sku_ids": active_ids,
        "errors": len(errors),
        "duplicate": row["DuplicateLicences"] != NOT_APPLICABLE,
        "monthly_cents": cents,
    }
    return row, facts


# ================================================================
# Function: fncGroupSummary
# Purpose : Users / licences / annual cost grouped by a row field
# ================================================================
def fncGroupSummary(rows: Iterable[Mapping[str, Any]], facts: Iterable[Mapping[str, Any]],
                    field: str, pricing: bool) -> List[Dict[str, Any]]:
    buckets: Dict[str, Dict[str, int]] = {}
    for row, fact in zip(rows, facts):
        name = row.get(field) or NONE_LABEL
        b = buckets.setdefault(name, {"users": 0, "licences": 0, "cents": 0})
        b["users"] += 1
        b["licences"] += len(fact["sku_ids"])
        b["cents"] += fact["monthly_cents"]

    out = []
    for name, b in buckets.items():
        entry: Dict[str, Any] = {field: name, "Users": b["users"], "Licences": b["licences"]}
        if pricing:
            entry["AnnualCost"] = fncCentsToUnits(b["cents"] * 12)
        out.append(entry)
    out.sort(key=lambda e: (-(e.get("AnnualCost") or 0), -e["Users"], str(e[field]).casefold()))
    return out


# ================================================================
# Function: fncSkuUsageSummary
# Purpose : Per-SKU consumed/purchased units and annual costs
# Notes   : Independent of user rows. Totals only accumulate over
#           SKUs with a usable price. Returns (rows, totals).
# ================================================================
def fncSkuUsageSummary(subscribed: Iterable[Mapping[str, Any]], skus: Mapping[str, SkuRecord],
                       pricing: bool, holders: Optional[Mapping[str, int]] = None) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    holders = holders or {}
    rows: List[Dict[str, Any]] = []
    totals = {"assigned": Decimal("0.00"), "purchased": Decimal("0.00"), "unused": Decimal("0.00"), "priced_skus": 0}

    for s in subscribed or []:
        sku_id = str(s.get("skuId") or "")
        if not sku_id:
            continue
        rec = skus.get(sku_id)
        consumed = int(s.get("consumedUnits") or 0)
        purchased = int((s.get("prepaidUnits") or {}).get("enabled") or 0)
        row: Dict[str, Any] = {
            "SkuId": sku_id,
            "SkuPartNumber": s.get("skuPartNumber") or (rec.sku_part_number if rec else ""),
            "DisplayName": rec.display_name if rec else (s.get("skuPartNumber") or sku_id),
            "UnitsConsumed": consumed,
            "UnitsPurchased": purchased,
            "UnitsAvailable": max(0, purchased - consumed),
            "UtilisationPct": round(consumed / purchased * 100.0, 1) if purchased else 0.0,
            "UsersInReport": holders.get(sku_id, 0),
        }
        if pricing:
            price = rec.price if rec else ""
            assigned = fncUnitsCost(consumed, price)
            bought = fncUnitsCost(purchased, price)
            unused = fncUnitsCost(max(0, purchased - consumed), price)
            row.update({
                "MonthlyPrice": price,
                "AssignedAnnualCost": assigned if assigned is not None else "",
                "PurchasedAnnualCost": bought if bought is not None else "",
                "UnusedAnnualCost": unused if unused is not None else "",
            })
            if bought is not None:
                totals["assigned"] += assigned
                totals["purchased"] += bought
                totals["unused"] += unused
                totals["priced_skus"] += 1
        rows.append(row)

    rows.sort(key=lambda r: (-r["UnitsConsumed"], str(r["DisplayName"]).casefold()))
    if totals["purchased"]:
        totals["assigned_pct"] = round(float(totals["assigned"] / totals["purchased"] * 100), 1)
    else:
        totals["assigned_pct"] = NOT_APPLICABLE
    return rows, totals


def _status_counts(rows: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = Counter(r["InactivityStatus"] for r in rows)
    return {s: counts.get(s, 0) for s in INACTIVITY_STATUSES if counts.get(s)}


# ----------------------- Main -----------------------

def run(client, args):
    run_id = fncNewRunId("licreport")
    cfg = getattr(args, "cfg", None) or fncDefaultConfig()
    as_of = _parse_as_of(getattr(args, "as_of", None))
    fncPrintMessage(f"Running Licence Report (run={run_id}, as of {as_of.date().isoformat()})", "info")

    # Lookups (fatal when missing)
    skus, pricing = fncLoadSkuLookup(fncResolvePath(cfg, "sku_lookup"))
    plans = fncLoadServicePlanLookup(fncResolvePath(cfg, "service_plan_lookup"))
    price_map = fncPriceMap(skus) if pricing else None
    default_currency = cfg.get("default_currency") or ""

    # Users (fatal when none)
    users, sign_in_available = fncGetLicensedUsers(client)
    fncPrintMessage(f"Processing {len(users)} licensed user(s)…", "info")

    group_name = GroupNameCache(client)
    missing_prices: Set[str] = set()
    rows: List[Dict[str, Any]] = []
    facts: List[Dict[str, Any]] = []
    for user in users:
        row, fact = fncBuildUserRow(
            user, skus, plans, group_name, as_of,
            price_map=price_map,
            sign_in_available=sign_in_available,
            default_currency=default_currency,
            missing_prices=missing_prices,
        )
        rows.append(row)
        facts.append(fact)

    # Aggregates (only once every row exists)
    licence_errors = sum(f["errors"] for f in facts)
    duplicate_users = sum(1 for f in facts if f["duplicate"])
    holders = Counter(s for f in facts for s in f["sku_ids"])
    departments = fncGroupSummary(rows, facts, "Department", pricing)
    countries = fncGroupSummary(rows, facts, "Country", pricing)

    subscribed = _try_get_all(client, "subscribedSkus",
                              params={"$select": "skuId,skuPartNumber,consumedUnits,prepaidUnits"})
    sku_summary, totals = fncSkuUsageSummary(subscribed, skus, pricing, holders)
    status_counts = _status_counts(rows)
    user_annual = fncCentsToUnits(sum(f["monthly_cents"] for f in facts) * 12)

    if licence_errors:
        fncPrintMessage(f"{licence_errors} licence assignment error(s) found.", "warn")
    if duplicate_users:
        fncPrintMessage(f"{duplicate_users} user(s) hold the same SKU more than once.", "warn")

    # Console previews
    fncPrintMessage("Licensed users (top 10)", "info")
    print(fncToTable(rows[:10], headers=["DisplayName", "Department", "DuplicateLicences", "InactivityStatus"]
                     + (["AnnualCost"] if pricing else []), max_rows=10))
    if sku_summary:
        fncPrintMessage("SKU usage", "info")
        print(fncToTable(sku_summary, headers=["DisplayName", "UnitsConsumed", "UnitsPurchased", "UtilisationPct"],
                         max_rows=15))

    summary: Dict[str, Any] = {
        "Report Date": as_of.date().isoformat(),
        "Licensed Users": len(rows),
        "Licence Errors": licence_errors,
        "Users With Duplicate Licences": duplicate_users,
        "Disabled Accounts With Licences": sum(1 for r in rows if r["AccountEnabled"] == "No"),
        "Sign-in Data": "Available" if sign_in_available else "Unavailable",
    }
    for status, n in status_counts.items():
        summary[f"Inactivity: {status}"] = n
    if pricing:
        summary.update({
            "Annual Cost (Users)": user_annual,
            "Annual Cost (Assigned Seats)": totals["assigned"],
            "Annual Cost (Purchased Seats)": totals["purchased"],
            "Annual Cost (Unused Seats)": totals["unused"],
            "Purchased Cost Assigned %": totals["assigned_pct"],
            "SKUs Without Price": len(missing_prices),
        })

    cleanup = status_counts.get("High priority cleanup", 0) + status_counts.get("Cleanup candidate", 0)
    never = status_counts.get("Never logged in", 0)
    kpis = [
        {"label": "Licensed Users", "value": len(rows), "tone": "primary", "badge": "Users"},
        {"label": "Licence Errors", "value": licence_errors,
         "tone": "danger" if licence_errors else "success", "badge": "Errors"},
        {"label": "Duplicate Assignments", "value": duplicate_users,
         "tone": "warning" if duplicate_users else "success", "badge": "Duplicates"},
        {"label": "Cleanup Candidates (>90d)", "value": cleanup,
         "tone": "warning" if cleanup else "success", "badge": "Idle"},
        {"label": "Never Logged In", "value": never,
         "tone": "warning" if never else "success", "badge": "Never"},
    ]
    if pricing:
        currency = default_currency or next((r.get("Currency") for r in rows if r.get("Currency")), "")
        kpis += [
            {"label": "Annual Spend (Assigned)", "value": f"{totals['assigned']:,.2f} {currency}".strip(),
             "tone": "info", "badge": "Spend"},
            {"label": "Annual Spend (Unused)", "value": f"{totals['unused']:,.2f} {currency}".strip(),
             "tone": "danger" if totals["unused"] else "success", "badge": "Waste"},
            {"label": "Purchased Cost Assigned", "value":
                f"{totals['assigned_pct']}%" if totals["assigned_pct"] != NOT_APPLICABLE else NOT_APPLICABLE,
             "tone": "secondary", "badge": "Coverage"},
        ]

    standouts = {}
    if sku_summary:
        idle = max(sku_summary, key=lambda r: r["UnitsAvailable"])
        standouts["idle"] = {
            "title": "Most Idle Seats",
            "name": idle["DisplayName"],
            "score": idle["UnitsAvailable"],
            "comment": f"{idle['UnitsConsumed']} / {idle['UnitsPurchased']} assigned",
        }
    if pricing and any(r.get("AssignedAnnualCost") for r in sku_summary):
        spend = max(sku_summary, key=lambda r: r.get("AssignedAnnualCost") or Decimal(0))
        standouts["spend"] = {
            "title": "Biggest Spend",
            "name": spend["DisplayName"],
            "score": spend["AssignedAnnualCost"],
            "comment": f"{spend['UnitsConsumed']} seat(s) at {spend['MonthlyPrice']}/month",
        }
    if departments:
        top = departments[0]
        standouts["department"] = {
            "title": "Top Department",
            "name": top["Department"],
            "score": top["Users"],
            "comment": f"{top['Licences']} licence(s)" + (f", {top['AnnualCost']:.2f}/year" if pricing else ""),
        }

    charts = {
        "inactivity": {
            "type": "doughnut", "title": "Inactivity Status",
            "labels": list(status_counts.keys()), "data": list(status_counts.values()),
        },
        "utilisation": {
            "type": "bar", "title": "Licence Utilisation (%)", "label": "Utilisation %",
            "labels": [r["DisplayName"] for r in sku_summary[:10]],
            "data": [r["UtilisationPct"] for r in sku_summary[:10]],
        },
    }

    columns = REPORT_COLUMNS + (COST_COLUMNS if pricing else ())

    data = {
        "provider": "entra",
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "summary": summary,

        "users": rows,
        "sku_summary": sku_summary,
        "departments": departments,
        "countries": countries,

        "_kpis": kpis,
        "_standouts": standouts,
        "_charts": charts,
        "_csv_columns": {"users": columns},
        "_section_titles": {
            "users": "Licensed Users",
            "sku_summary": "SKU Usage",
            "departments": "By Department",
            "countries": "By Country",
        },
        "_title": "Licence Report",
        "_subtitle": "Licence assignments, duplicates, inactivity and cost across licensed users",
        "_container_class": "lreport",
        "_inline_css": REPORT_CSS,
        "_inline_js": REPORT_JS,
    }

    fncPrintMessage("Licence Report module complete.", "success")
    return data
