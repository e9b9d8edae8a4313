# ================================================================
# File     : handlers/graph/graph_helpers.py
# Purpose  : Safer Graph helpers (handle rejected $select fields)
# Notes    : Warn instead of fail; missing fields get a placeholder.
# ================================================================

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.utils import fncPrintMessage
from handlers.graph.client import GraphRequestError

# Graph headers needed for $count / advanced filters on directory objects
ADVANCED_QUERY_HEADERS = {"ConsistencyLevel": "eventual"}


def safe_select_get_all(
    client,
    base_endpoint: str,
    fields: List[str],
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    optional: Sequence[str] = (),
    placeholder: Any = None,
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Calls client.get_all with a $select list. Two recoveries:

    - 400 "Could not find a property named 'X'": drop X and retry.
    - 400/403 while `optional` fields are still selected (e.g. signInActivity
      without AuditLog.Read.All or a premium tenant): drop them all and retry.

    Dropped fields are set to `placeholder` on every returned row.
    Returns: (items, missing_fields)
    """
    query = dict(params or {})
    if fields:
        query["$select"] = ",".join(fields)
    try:
        items = client.get_all(base_endpoint, params=query, headers=headers)
        for it in items:
            for f in fields:
                it.setdefault(f, None)
        return items, []
    except GraphRequestError as ex:
        m = re.search(r"Could not find a property named '([^']+)'", ex.text or str(ex))
        if m and m.group(1) in fields:
            dropped = [m.group(1)]
        else:
            dropped = [f for f in optional if f in fields]
            if ex.status not in (400, 403) or not dropped:
                raise  # different error; bubble up

        fncPrintMessage(
            f"Graph rejected {', '.join(repr(d) for d in dropped)} [{ex.status}] — retrying without it.",
            "warn",
        )
        retry_fields = [f for f in fields if f not in dropped]
        items, more_missing = safe_select_get_all(
            client, base_endpoint, retry_fields, params=params, headers=headers,
            optional=[o for o in optional if o not in dropped], placeholder=placeholder,
        )
        for it in items:
            for d in dropped:
                it[d] = placeholder
        return items, dropped + more_missing
