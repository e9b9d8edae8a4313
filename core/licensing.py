# ================================================================
# File     : core/licensing.py
# Purpose  : Licence maths: cost calculator, duplicate detector,
#            inactivity classifier, assignment parsing
# Notes    : Pure functions; no Graph calls, no file I/O. Prices are
#            passed in explicitly, never read from shared state.
# ================================================================

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from core.utils import fncPrintMessage, fncParseGraphDate

NOT_APPLICABLE = "N/A"

DIRECT = "Direct"
GROUP = "Group"
STATE_ACTIVE = "Active"
STATE_ACTIVE_WITH_ERROR = "ActiveWithError"
ACTIVE_STATES = (STATE_ACTIVE, STATE_ACTIVE_WITH_ERROR)

NEVER = "Never"
NEVER_STATUS = "Never logged in"
UNKNOWN = "Unknown"
OK_STATUS = "OK"

# Most severe first; thresholds are strict (days > limit)
INACTIVITY_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (180, "High priority cleanup"),
    (90, "Cleanup candidate"),
    (60, "Review recommended"),
    (30, "Monitor"),
)

INACTIVITY_STATUSES: Tuple[str, ...] = tuple(s for _, s in INACTIVITY_THRESHOLDS) + (OK_STATUS, NEVER_STATUS, UNKNOWN)

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class LicenseAssignment:
    sku_id: str
    method: str = DIRECT
    group_id: Optional[str] = None
    state: str = STATE_ACTIVE
    error: Optional[str] = None
    last_updated: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def has_error(self) -> bool:
        return self.state != STATE_ACTIVE or bool(self.error)


@dataclass(frozen=True)
class InactivityResult:
    days: Union[int, str]
    status: str
    last_sign_in: Optional[datetime] = None


# ================================================================
# Function: fncParseAssignments
# Purpose : Turn a user's licenseAssignmentStates into assignments
# Notes   : assignedByGroup null → Direct. Any state other than
#           "Active" (Error, ActiveWithError, Disabled…) is kept
#           verbatim so callers can annotate it.
# ================================================================
def fncParseAssignments(states: Optional[Iterable[Mapping[str, Any]]]) -> List[LicenseAssignment]:
    out: List[LicenseAssignment] = []
    for s in states or []:
        sku_id = str(s.get("skuId") or "").strip()
        if not sku_id:
            continue
        group_id = s.get("assignedByGroup") or None
        error = s.get("error")
        out.append(LicenseAssignment(
            sku_id=sku_id,
            method=GROUP if group_id else DIRECT,
            group_id=group_id,
            state=str(s.get("state") or STATE_ACTIVE),
            error=None if (not error or str(error) == "None") else str(error),
            last_updated=fncParseGraphDate(s.get("lastUpdatedDateTime")),
        ))
    return out


# ================================================================
# Function: fncSplitActive
# Purpose : Active assignments split into (direct, group) lists
# ================================================================
def fncSplitActive(assignments: Iterable[LicenseAssignment]) -> Tuple[List[LicenseAssignment], List[LicenseAssignment]]:
    direct = [a for a in assignments if a.is_active and a.method == DIRECT]
    group = [a for a in assignments if a.is_active and a.method == GROUP]
    return direct, group


# ---------------------------------------------------------------
# Cost calculator
# ---------------------------------------------------------------

def _to_cents(price: Any) -> Optional[int]:
    """Monthly price → integer cents (half-up). None when not a usable number."""
    if price is None or isinstance(price, bool):
        return None
    if isinstance(price, Decimal):
        value = price
    else:
        text = str(price).strip().lstrip("£$€").strip()
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    if not value.is_finite():
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fncCentsToUnits(cents: int) -> Decimal:
    """Integer cents → Decimal currency units with two places."""
    return (Decimal(cents) / 100).quantize(_CENT)


def _note_missing(sku_id: str, reason: str, missing: Optional[Set[str]]) -> None:
    if missing is not None:
        if sku_id in missing:
            return
        missing.add(sku_id)
    fncPrintMessage(f"No usable price for SKU {sku_id} ({reason}) — counted as zero.", "warn")


# ================================================================
# Function: fncComputeMonthlyCents
# Purpose : Sum monthly prices as integer cents
# Notes   : Absent/unparseable prices are skipped with a warning.
#           Pass `missing` to warn once per SKU and collect the ids.
# ================================================================
def fncComputeMonthlyCents(sku_ids: Iterable[str], price_map: Mapping[str, Any],
                           missing: Optional[Set[str]] = None) -> int:
    total = 0
    for sku_id in sku_ids or []:
        if sku_id not in price_map:
            _note_missing(sku_id, "not in price list", missing)
            continue
        cents = _to_cents(price_map[sku_id])
        if cents is None:
            _note_missing(sku_id, f"unparseable price {price_map[sku_id]!r}", missing)
            continue
        total += cents
    return total


# ================================================================
# Function: fncComputeMonthlyCost
# Purpose : Monthly licence cost for a list of SKU ids
# ================================================================
def fncComputeMonthlyCost(sku_ids: Iterable[str], price_map: Mapping[str, Any],
                          missing: Optional[Set[str]] = None) -> Decimal:
    return fncCentsToUnits(fncComputeMonthlyCents(sku_ids, price_map, missing))


# ================================================================
# Function: fncComputeAnnualCost
# Purpose : Annual licence cost for a list of SKU ids
# Notes   : Monthly total in cents × 12, applied once, so it always
#           equals fncComputeMonthlyCost(...) × 12 exactly
# ================================================================
def fncComputeAnnualCost(sku_ids: Iterable[str], price_map: Mapping[str, Any],
                         missing: Optional[Set[str]] = None) -> Decimal:
    return fncCentsToUnits(fncComputeMonthlyCents(sku_ids, price_map, missing) * 12)


# ================================================================
# Function: fncUnitsCost
# Purpose : Annual cost of `units` seats of one SKU
# Notes   : None when the price is unusable (caller decides)
# ================================================================
def fncUnitsCost(units: int, price: Any) -> Optional[Decimal]:
    cents = _to_cents(price)
    if cents is None:
        return None
    return fncCentsToUnits(cents * 12 * int(units or 0))


# ---------------------------------------------------------------
# Duplicate assignment detector
# ---------------------------------------------------------------

def _sku_of(item: Any) -> str:
    if isinstance(item, LicenseAssignment):
        return item.sku_id
    if isinstance(item, Mapping):
        return str(item.get("skuId") or item.get("sku") or "")
    return str(item or "")


# ================================================================
# Function: fncFindDuplicateSkus
# Purpose : SKU ids active more than once across Direct ∪ Group
# Notes   : Multiset count; first-seen order. Does not say whether
#           the overlap is direct+group or group+group.
# ================================================================
def fncFindDuplicateSkus(direct: Iterable[Any], group: Iterable[Any]) -> List[str]:
    counts = Counter(s for s in (_sku_of(a) for a in list(direct or []) + list(group or [])) if s)
    return [sku for sku, n in counts.items() if n > 1]


# ================================================================
# Function: fncSkuName
# Purpose : Display name for a SKU id from a lookup map
# Notes   : Map values may be SkuRecord-like or plain strings;
#           unresolved ids come back unchanged
# ================================================================
def fncSkuName(sku_names: Mapping[str, Any], sku_id: str) -> str:
    rec = (sku_names or {}).get(sku_id)
    if rec is None:
        return sku_id
    name = getattr(rec, "display_name", rec)
    return str(name or sku_id)


# ================================================================
# Function: fncDuplicateWarning
# Purpose : Human-readable duplicate warning, or "N/A"
# ================================================================
def fncDuplicateWarning(direct: Iterable[Any], group: Iterable[Any], sku_names: Mapping[str, Any]) -> str:
    dupes = fncFindDuplicateSkus(direct, group)
    if not dupes:
        return NOT_APPLICABLE
    return ", ".join(fncSkuName(sku_names, s) for s in dupes)


# ---------------------------------------------------------------
# Inactivity classifier
# ---------------------------------------------------------------

def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return fncParseGraphDate(value)


# ================================================================
# Function: fncClassifyInactivity
# Purpose : Bucket a user by days since their latest sign-in
# Notes   : Neither timestamp → ("Never", "Never logged in").
#           Future sign-ins (clock skew) count as 0 days.
# ================================================================
def fncClassifyInactivity(last_interactive: Any, last_non_interactive: Any, as_of: Any) -> InactivityResult:
    stamps = [d for d in (_as_datetime(last_interactive), _as_datetime(last_non_interactive)) if d]
    if not stamps:
        return InactivityResult(days=NEVER, status=NEVER_STATUS)

    now = _as_datetime(as_of) or datetime.now(timezone.utc)
    latest = max(stamps)
    days = max(0, (now - latest).days)
    for limit, label in INACTIVITY_THRESHOLDS:
        if days > limit:
            return InactivityResult(days=days, status=label, last_sign_in=latest)
    return InactivityResult(days=days, status=OK_STATUS, last_sign_in=latest)


# ================================================================
# Function: fncUnknownInactivity
# Purpose : Placeholder when the tenant returned no sign-in data
# ================================================================
def fncUnknownInactivity() -> InactivityResult:
    return InactivityResult(days=UNKNOWN, status=UNKNOWN)
