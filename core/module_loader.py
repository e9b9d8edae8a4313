# ================================================================
# File     : module_loader.py
# Purpose  : Find, import and run report modules
# Notes    : A module is modules/<provider>/<name>.py exposing
#            run(client, args) and optionally RUN_ORDER. --run-all
#            goes through them one at a time in RUN_ORDER, so the
#            reference export lands before the report reads it.
# ================================================================

import importlib
import pathlib
import traceback
from types import ModuleType
from typing import Any, Dict, List, Optional

from core.utils import fncPrintMessage

MODULES_ROOT = pathlib.Path(__file__).resolve().parent.parent / "modules"
DEFAULT_RUN_ORDER = 100


# ================================================================
# Function: fncLoadModule
# Purpose : Import modules.<provider>.<name>
# Notes   : None when the module itself does not exist; a missing
#           dependency inside it still raises
# ================================================================
def fncLoadModule(provider: str, module_name: str) -> Optional[ModuleType]:
    dotted = f"modules.{provider}.{module_name}"
    try:
        loaded = importlib.import_module(dotted)
    except ModuleNotFoundError as ex:
        if ex.name and not dotted.startswith(ex.name):
            raise
        fncPrintMessage(f"No such module: {provider}/{module_name}", "error")
        return None
    fncPrintMessage(f"Imported {dotted}", "debug")
    return loaded


# ================================================================
# Function: fncRunModule
# Purpose : Load and run one module
# Notes   : Any failure comes back as {"error": message} so the
#           caller can report it and set the exit code
# ================================================================
def fncRunModule(provider: str, module_name: str, client, args) -> Any:
    loaded = fncLoadModule(provider, module_name)
    if loaded is None:
        return {"error": f"module not found: {module_name}"}
    runner = getattr(loaded, "run", None)
    if not callable(runner):
        fncPrintMessage(f"{module_name} has no run(client, args).", "warn")
        return {"error": f"module has no run(): {module_name}"}

    fncPrintMessage(f"Running {provider}/{module_name}", "info")
    try:
        result = runner(client, args)
    except Exception as ex:
        fncPrintMessage(f"{module_name} failed: {ex}", "error")
        fncPrintMessage(traceback.format_exc(), "debug")
        return {"error": str(ex)}
    fncPrintMessage(f"Finished {provider}/{module_name}", "success")
    return result


# ================================================================
# Function: fncDiscoverModules
# Purpose : Module names for a provider, in RUN_ORDER then by name
# Notes   : Files starting with '_' are private helpers
# ================================================================
def fncDiscoverModules(provider: str, root: Optional[pathlib.Path] = None) -> List[str]:
    folder = (root or MODULES_ROOT) / provider
    if not folder.is_dir():
        fncPrintMessage(f"No modules folder for '{provider}' at {folder}", "warn")
        return []

    def _rank(name: str):
        return getattr(fncLoadModule(provider, name), "RUN_ORDER", DEFAULT_RUN_ORDER), name

    found = sorted(
        (p.stem for p in folder.glob("*.py") if not p.name.startswith("_")),
        key=_rank,
    )
    fncPrintMessage(f"Modules for {provider}: {', '.join(found) or '(none)'}", "debug")
    return found


# ================================================================
# Function: fncRunAllModules
# Purpose : Run every discovered module except those skipped
# Notes   : { name: result | {"error": ...} | {"skipped": True} }
# ================================================================
def fncRunAllModules(provider: str, client, args, skip_list: Optional[List[str]] = None) -> Dict[str, Any]:
    skipped = set(skip_list or [])
    names = fncDiscoverModules(provider)
    if not names:
        fncPrintMessage(f"Nothing to run for '{provider}'.", "warn")
        return {}

    fncPrintMessage(f"Running {len(names)} module(s) for {provider}", "info")
    results: Dict[str, Any] = {}
    for name in names:
        if name in skipped:
            fncPrintMessage(f"Skipped by --skip: {name}", "debug")
            results[name] = {"skipped": True}
        else:
            results[name] = fncRunModule(provider, name, client, args)

    failed = [n for n, r in results.items() if isinstance(r, dict) and "error" in r]
    fncPrintMessage(f"All modules done ({len(failed)} failed).", "warn" if failed else "success")
    return results
