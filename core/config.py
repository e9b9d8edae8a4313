# ================================================================
# File     : config.py
# Purpose  : Configuration management for LicencePoodle
# Notes    : Handles initial creation, loading, and saving of config
# ================================================================

import pathlib
from typing import Any, Dict, Optional

from core.utils import fncPrintMessage, fncEnsureFolder, fncReadJSON, fncWriteJSON, fncLoadEnv

APP_HOME = pathlib.Path.home() / ".licencepoodle"

# Vendor "Product names and service plan identifiers for licensing" CSV
REFERENCE_URL = (
    "https://download.microsoft.com/download/e/3/e/e3e9faf2-f28b-490a-9ada-c6089a1fc5b0/"
    "Product%20names%20and%20service%20plan%20identifiers%20for%20licensing.csv"
)


# ================================================================
# Function: fncDefaultConfig
# Purpose : Return a default configuration dictionary
# Notes   : Called when config file does not exist
# ================================================================
def fncDefaultConfig() -> dict:
    data_dir = APP_HOME / "data"
    return {
        "version": "1.0",
        "licencepoodle_home": str(APP_HOME),
        "debug": False,
        "default_currency": "GBP",
        "reference_url": REFERENCE_URL,
        "paths": {
            "data_dir": str(data_dir),
            "reports_dir": str(APP_HOME / "reports"),
            "reference_csv": "Product names and service plan identifiers for licensing.csv",
            "sku_lookup": "sku_lookup.csv",
            "service_plan_lookup": "service_plan_lookup.csv",
        },
        "providers": {
            "entra": {
                "tenant_id": "",
                "client_id": "",
                "client_secret": "",
                "authority": "https://login.microsoftonline.com"
            }
        }
    }


# ================================================================
# Function: fncInitConfig
# Purpose : Create or load configuration file
# Notes   : Ensures base folder exists; returns full config dict
# ================================================================
def fncInitConfig(config_path: Optional[str] = None) -> dict:
    path = pathlib.Path(config_path or (APP_HOME / "config.json"))

    fncEnsureFolder(path.parent)

    if not path.exists():
        fncPrintMessage(f"No config found at {path}. Creating default...", "warn")
        cfg = fncDefaultConfig()
        fncWriteJSON(str(path), cfg)
        return fncApplyEnvOverrides(cfg)
    return fncLoadConfig(str(path))


# ================================================================
# Function: fncMergeDefaults
# Purpose : Fill keys missing from an older config file
# Notes   : Nested dicts merged recursively; user values win
# ================================================================
def fncMergeDefaults(cfg: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    for key, val in defaults.items():
        if key not in cfg:
            cfg[key] = val
        elif isinstance(val, dict) and isinstance(cfg[key], dict):
            fncMergeDefaults(cfg[key], val)
    return cfg


# ================================================================
# Function: fncLoadConfig
# Purpose : Load configuration file and apply environment overrides
# Notes   : Unreadable file falls back to defaults with a warning
# ================================================================
def fncLoadConfig(config_path: str) -> dict:
    cfg = fncMergeDefaults(fncReadJSON(config_path), fncDefaultConfig())
    fncPrintMessage(f"Loaded configuration from {config_path}", "debug")
    return fncApplyEnvOverrides(cfg)


# ================================================================
# Function: fncApplyEnvOverrides
# Purpose : Environment wins over file values (CI/CD, containers)
# Notes   : ENTRA_TENANT_ID, ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET,
#           LICENCEPOODLE_DATA_DIR, LICENCEPOODLE_REPORTS_DIR
# ================================================================
def fncApplyEnvOverrides(cfg: dict) -> dict:
    entra = cfg["providers"]["entra"]
    entra.update({
        "tenant_id": fncLoadEnv("ENTRA_TENANT_ID", entra.get("tenant_id")),
        "client_id": fncLoadEnv("ENTRA_CLIENT_ID", entra.get("client_id")),
        "client_secret": fncLoadEnv("ENTRA_CLIENT_SECRET", entra.get("client_secret")),
    })
    paths = cfg["paths"]
    paths["data_dir"] = fncLoadEnv("LICENCEPOODLE_DATA_DIR", paths.get("data_dir"))
    paths["reports_dir"] = fncLoadEnv("LICENCEPOODLE_REPORTS_DIR", paths.get("reports_dir"))
    return cfg


# ================================================================
# Function: fncGetProviderConfig
# Purpose : Return config block for a specific provider
# ================================================================
def fncGetProviderConfig(cfg: dict, provider: str) -> dict:
    providers = cfg.get("providers", {})
    if provider not in providers:
        fncPrintMessage(f"Provider not found in config: {provider}", "warn")
        return {}
    return providers[provider]


# ================================================================
# Function: fncResolvePath
# Purpose : Resolve a configured file name against the data dir
# Notes   : Absolute paths are returned untouched
# ================================================================
def fncResolvePath(cfg: dict, key: str) -> pathlib.Path:
    paths = cfg.get("paths", {})
    value = pathlib.Path(str(paths.get(key) or fncDefaultConfig()["paths"][key])).expanduser()
    if value.is_absolute():
        return value
    return pathlib.Path(str(paths.get("data_dir") or (APP_HOME / "data"))).expanduser() / value


# ================================================================
# Function: fncApplyCliOverrides
# Purpose : Apply command-line flags to the loaded config
# Notes   : --debug, --data-dir, --out-dir, --reference-csv
# ================================================================
def fncApplyCliOverrides(cfg: dict, args) -> dict:
    if getattr(args, "debug", None):
        cfg["debug"] = True
    if getattr(args, "data_dir", None):
        cfg["paths"]["data_dir"] = str(args.data_dir)
    if getattr(args, "out_dir", None):
        cfg["paths"]["reports_dir"] = str(args.out_dir)
    if getattr(args, "reference_csv", None):
        cfg["paths"]["reference_csv"] = str(pathlib.Path(args.reference_csv).expanduser().resolve())
    return cfg


# ================================================================
# Function: fncIsDebug
# Purpose : Return whether debug mode is enabled in config
# ================================================================
def fncIsDebug(cfg: dict) -> bool:
    return bool(cfg.get("debug", False))
