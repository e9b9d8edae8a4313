# ================================================================
# File     : utils.py
# Purpose  : Shared helpers for LicencePoodle: console output,
#            banner, JSON/CSV files, Graph dates, retries, tables
# Notes    : British English; colorama for colour, tabulate for
#            console previews
# ================================================================

import os
import csv
import json
import time
import uuid
import random
import pathlib
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from colorama import Fore, Style, init as _colorama_init
from tabulate import tabulate

_colorama_init(autoreset=True)

DEBUG_ENABLED = False

# level -> (colour, marker)
_LEVELS = {
    "info":    (Fore.CYAN,    "[•]"),
    "warn":    (Fore.YELLOW,  "[!]"),
    "error":   (Fore.RED,     "[✗]"),
    "success": (Fore.GREEN,   "[✓]"),
    "debug":   (Fore.MAGENTA, "[∆]"),
}

_BLURBS = {
    "sku_reference": [
        "Fetching the product catalogue from the kennel…",
        "Teaching the Poodle every SKU by name…",
    ],
    "licence_report": [
        "Counting seats and sniffing out dusty licences…",
        "Following the licence trail through every mailbox…",
        "Checking who has been chewing on two copies of the same SKU…",
    ],
    "generic": [
        "Preparing the harness…",
        "Warming up the calculator paws…",
    ],
}


# ================================================================
# Function: fncSetDebug
# Purpose : Switch debug-level console output on or off
# ================================================================
def fncSetDebug(enabled: bool) -> None:
    global DEBUG_ENABLED
    DEBUG_ENABLED = bool(enabled)


# ================================================================
# Function: fncPrintMessage
# Purpose : One coloured, marked line per message
# Notes   : debug lines only appear after fncSetDebug(True)
# ================================================================
def fncPrintMessage(message: str, level: str = "info") -> None:
    if level == "debug" and not DEBUG_ENABLED:
        return
    colour, mark = _LEVELS.get(level, ("", "[ ]"))
    print(f"{colour}{mark} {message}{Style.RESET_ALL}")


# ================================================================
# Function: fncDisplayBanner
# Purpose : Print the LicencePoodle title and mascot in rainbow
# ================================================================
def fncDisplayBanner(version: str = "v1.0") -> None:
    art = [
        " _     _                        ___                 _ _      ",
        "| |   (_)__ ___ _ _  __ ___    | _ \\___  ___  __| | |___  ",
        "| |__ | / _/ -_) ' \\/ _/ -_)   |  _/ _ \\/ _ \\/ _` | / -_) ",
        "|____||_\\__\\___|_||_\\__\\___|   |_| \\___/\\___/\\__,_|_\\___| ",
        "      /)---(\\   £",
        "     (/ . . \\)  ",
        "      \\(*)/-(__ ",
        "      (___/-(____)",
    ]
    palette = (Fore.RED, Fore.YELLOW, Fore.GREEN, Fore.BLUE)

    print()
    for line in art:
        print("".join(palette[i % len(palette)] + ch for i, ch in enumerate(line)) + Style.RESET_ALL)
    print(f"{Fore.CYAN}\nLicencePoodle {version}: every seat accounted for, every penny sniffed out.{Style.RESET_ALL}\n")


# ================================================================
# Function: fncBlurb
# Purpose : A light-hearted line before each module runs
# ================================================================
def fncBlurb(action: str, flavour: Optional[str] = None) -> None:
    fncPrintMessage(flavour or random.choice(_BLURBS.get(action, _BLURBS["generic"])), "info")


# ================================================================
# Function: fncEnsureFolder
# Purpose : mkdir -p, returning the resolved path
# ================================================================
def fncEnsureFolder(path) -> pathlib.Path:
    folder = pathlib.Path(path).expanduser().resolve()
    folder.mkdir(parents=True, exist_ok=True)
    return folder


# ================================================================
# Function: fncLoadEnv
# Purpose : Environment variable with surrounding quotes removed
# ================================================================
def fncLoadEnv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().strip("\"'")


# ================================================================
# Function: fncReadJSON
# Purpose : Load a JSON file
# Notes   : safe=True turns read/parse failures into {} plus a warning
# ================================================================
def fncReadJSON(path: str, safe: bool = True) -> Dict[str, Any]:
    try:
        return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as ex:
        if not safe:
            raise
        fncPrintMessage(f"Could not read JSON '{path}': {ex}", "warn")
        return {}


# ================================================================
# Function: fncWriteJSON
# Purpose : Pretty-printed JSON; Decimals and dates become strings
# ================================================================
def fncWriteJSON(path: str, data: Dict[str, Any]) -> None:
    target = pathlib.Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    fncPrintMessage(f"Saved JSON → {target}", "success")


def _flat(val: Any) -> Any:
    """A single CSV/console cell: lists joined with '; ', dicts as JSON."""
    if val is None:
        return ""
    if isinstance(val, (list, tuple)):
        return "; ".join(str(v) for v in val)
    if isinstance(val, dict):
        return json.dumps(val, ensure_ascii=False, default=str)
    return val


# ================================================================
# Function: fncExportCSV
# Purpose : Write list[dict] rows to CSV with a header row
# Notes   : Columns are `headers` when given, otherwise every key in
#           first-seen order. No rows and no headers gives an empty file.
# ================================================================
def fncExportCSV(path: str, rows: Iterable[Dict[str, Any]], headers: Optional[Sequence[str]] = None) -> None:
    rows = list(rows)
    target = pathlib.Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    columns = list(headers) if headers is not None else list(dict.fromkeys(k for r in rows for k in r))
    with open(target, "w", newline="", encoding="utf-8") as f:
        if columns:
            writer = csv.writer(f)
            writer.writerow(columns)
            writer.writerows([_flat(r.get(c)) for c in columns] for r in rows)

    if columns:
        fncPrintMessage(f"Saved CSV → {target} ({len(rows)} row(s))", "success")
    else:
        fncPrintMessage(f"Created empty CSV → {target}", "warn")


# ================================================================
# Function: fncReadCSV
# Purpose : CSV file to list[dict] with trimmed keys and values
# Notes   : utf-8-sig drops the BOM that vendor downloads carry
# ================================================================
def fncReadCSV(path: str) -> List[Dict[str, str]]:
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        rows = [
            {(k or "").strip(): v.strip() if isinstance(v, str) else "" for k, v in raw.items()}
            for raw in csv.DictReader(f)
        ]
    fncPrintMessage(f"Read {len(rows)} row(s) from {path}", "debug")
    return rows


# ================================================================
# Function: fncParseGraphDate
# Purpose : Graph timestamp ('2024-10-01T12:34:56.1234567Z') to an
#           aware datetime
# Notes   : datetimes pass through; naive values are taken as UTC.
#           None when missing or unparseable.
# ================================================================
def fncParseGraphDate(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # pre-3.11 fromisoformat wants exactly 3 or 6 fractional digits; Graph sends 1 to 7
        if "." in text:
            whole, _, frac = text.partition(".")
            digits = len(frac) - len(frac.lstrip("0123456789"))
            zone = frac[digits:]
            text = f"{whole}.{frac[:min(digits, 6)].ljust(6, '0')}{zone}" if digits else f"{whole}{zone}"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ================================================================
# Function: fncRetry
# Purpose : Call fn until it succeeds or attempts run out
# Notes   : Only `exceptions` are retried, with exponential backoff;
#           the final failure propagates
# ================================================================
def fncRetry(fn, attempts: int = 3, backoff: float = 1.5, exceptions: Tuple = (Exception,)):
    attempt = 1
    while True:
        try:
            return fn()
        except exceptions as ex:
            if attempt >= attempts:
                fncPrintMessage(f"Giving up after {attempts} attempt(s): {ex}", "error")
                raise
            delay = backoff ** (attempt - 1)
            fncPrintMessage(f"Attempt {attempt}/{attempts} failed ({ex}); retrying in {delay:.1f}s…", "warn")
            time.sleep(delay)
            attempt += 1


# ================================================================
# Function: fncToTable
# Purpose : list[dict] as a GitHub-style console table
# Notes   : Rows beyond max_rows collapse into a single '…' line
# ================================================================
def fncToTable(rows: Iterable[Dict[str, Any]], headers: Optional[List[str]] = None,
               max_rows: Optional[int] = None) -> str:
    rows = list(rows)
    if not rows:
        return "(no data)"
    columns = headers or list(dict.fromkeys(k for r in rows for k in r))
    shown = rows[:max_rows] if max_rows else rows
    body = [[_flat(r.get(c)) for c in columns] for r in shown]
    if len(shown) < len(rows):
        body.append(["…"] * len(columns))
    return tabulate(body, headers=columns, tablefmt="github")


# ================================================================
# Function: fncNewRunId
# Purpose : Short id tying console output to one run's exports
# ================================================================
def fncNewRunId(prefix: str = "run") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"
