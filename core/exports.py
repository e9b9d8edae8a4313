# ================================================================
# File     : exports.py
# Purpose  : Handle all export logic for LicencePoodle (HTML, CSV, JSON)
# Notes    : Called by LicencePoodle.py after module(s) finish
# ================================================================

import pathlib
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from core.utils import fncPrintMessage, fncEnsureFolder, fncExportCSV, fncWriteJSON
from core.reporting import fncWriteHTMLReport, fncWriteHTMLReportMulti

SUPPORTED_FORMATS = ("csv", "html", "json")
DEFAULT_FORMATS = ("csv", "html")


# ================================================================
# Function: fncExportList
# Purpose  : Flatten --export list-of-lists from argparse
# Notes    : Unknown formats are dropped with a warning
# ================================================================
def fncExportList(args_export: Optional[Iterable[Any]]) -> Set[str]:
    if not args_export:
        return set()
    out = set()
    for chunk in args_export:
        items = chunk if isinstance(chunk, (list, tuple)) else [chunk]
        for item in items:
            if not isinstance(item, str):
                continue
            for part in item.replace(",", " ").split():
                fmt = part.strip().lower()
                if fmt in SUPPORTED_FORMATS:
                    out.add(fmt)
                elif fmt:
                    fncPrintMessage(f"Ignoring unknown export format: {fmt}", "warn")
    return out


# ================================================================
# Function: fncGetExportPath
# Purpose  : Build structured output path under the reports root
# ================================================================
def fncGetExportPath(module_name: str, root: Optional[pathlib.Path] = None) -> pathlib.Path:
    if root is None:
        root = pathlib.Path.home() / ".licencepoodle" / "reports"
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    mod_slug = module_name.replace("/", "_").replace("\\", "_")
    return fncEnsureFolder(pathlib.Path(root) / ts / mod_slug)


# ================================================================
# Function: fncPublicData
# Purpose  : Strip layout-only keys (CSS/JS/KPI tiles) before JSON
# ================================================================
def fncPublicData(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (data or {}).items() if not str(k).startswith("_")}


def _table_items(data: Dict[str, Any]):
    for key, val in (data or {}).items():
        if key == "summary" or str(key).startswith("_"):
            continue
        if isinstance(val, list) and val and isinstance(val[0], dict):
            yield key, val


def _write_csvs(module_name: str, data: Dict[str, Any], out_dir: pathlib.Path) -> List[pathlib.Path]:
    columns = data.get("_csv_columns") or {}
    written = []
    for key, rows in _table_items(data):
        path = out_dir / f"{module_name}_{key}.csv"
        fncExportCSV(str(path), rows, headers=columns.get(key))
        written.append(path)
    return written


# ================================================================
# Function: fncExportSingleModule
# Purpose  : Handle all export formats for one module
# ================================================================
def fncExportSingleModule(module_name: str, data: dict, formats: Set[str], root: pathlib.Path) -> pathlib.Path:
    out_dir = fncGetExportPath(module_name, root)

    if "json" in formats:
        fncWriteJSON(str(out_dir / f"{module_name}.json"), fncPublicData(data))

    if "csv" in formats:
        _write_csvs(module_name, data, out_dir)

    if "html" in formats:
        fncWriteHTMLReport(str(out_dir / f"{module_name}.html"), module_name, data)

    fncPrintMessage(f"Exports written → {out_dir}", "success")
    return out_dir


# ================================================================
# Function: fncExportMultiModule
# Purpose  : Handle all export formats when running multiple modules
# Notes    : Modules that failed ({"error": ...}) are left out
# ================================================================
def fncExportMultiModule(results: dict, formats: Set[str], root: pathlib.Path) -> pathlib.Path:
    out_dir = fncGetExportPath("ALL_MODULES", root)
    usable = {m: d for m, d in results.items() if isinstance(d, dict) and "error" not in d and not d.get("skipped")}

    if "json" in formats:
        fncWriteJSON(str(out_dir / "all_modules.json"), {m: fncPublicData(d) for m, d in usable.items()})

    if "csv" in formats:
        for mod, data in usable.items():
            _write_csvs(mod, data, fncEnsureFolder(out_dir / mod))

    if "html" in formats and usable:
        fncWriteHTMLReportMulti(str(out_dir / "LicencePoodle_Report.html"), usable)

    fncPrintMessage(f"Exports written → {out_dir}", "success")
    return out_dir
