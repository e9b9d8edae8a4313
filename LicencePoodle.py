#!/usr/bin/env python3
# ================================================================
# Tool     : LicencePoodle
# Purpose  : Microsoft 365 licence reporting and cost analysis
# Notes    : "Every seat accounted for, every penny sniffed out." 🐩
# ================================================================

import sys
import argparse
import pathlib
from datetime import datetime

from core.config import fncInitConfig, fncApplyCliOverrides, fncGetProviderConfig, fncIsDebug
from core.utils import fncPrintMessage, fncSetDebug, fncDisplayBanner, fncBlurb
from core.module_loader import fncRunModule, fncRunAllModules
from core.exports import (
    DEFAULT_FORMATS,
    fncExportList,
    fncExportSingleModule,
    fncExportMultiModule,
)
from handlers.graph.client import GraphAuthError, GraphClient

PROVIDER = "entra"


def _iso_date(value: str) -> str:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")
    return value


# ================================================================
# Function: fncParseArguments
# Purpose  : Define and parse command-line arguments for LicencePoodle
# Notes    : --scan NAME or --run-all; exports default to csv + html
# ================================================================
def fncParseArguments(argv=None):
    parser = argparse.ArgumentParser(
        prog="LicencePoodle",
        description="LicencePoodle 🐩 — Microsoft 365 licence and cost sniffer"
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--scan",
        help="Name of module to execute (sku_reference, licence_report)"
    )
    group.add_argument(
        "--run-all",
        action="store_true",
        help="Run every module in order (sku_reference, then licence_report)"
    )

    parser.add_argument(
        "--skip",
        help="Comma-separated module names to skip with --run-all",
        default=""
    )

    parser.add_argument(
        "--export",
        nargs="*",
        metavar="FMT[,FMT...]",
        help="Export formats: html, csv, json. Example: --export html,csv json (default: csv html)",
        default=None
    )

    parser.add_argument(
        "--download-reference",
        action="store_true",
        help="Fetch the latest product names / service plan CSV before sku_reference runs"
    )
    parser.add_argument("--data-dir", help="Folder holding the reference and lookup CSVs")
    parser.add_argument("--reference-csv", help="Path to the product names / service plan CSV")
    parser.add_argument("--out-dir", help="Root folder for exported reports")
    parser.add_argument(
        "--as-of",
        type=_iso_date,
        metavar="YYYY-MM-DD",
        help="Measure inactivity against this date instead of today"
    )
    parser.add_argument("--config", help="Path to config.json (default: ~/.licencepoodle/config.json)")

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug output"
    )

    return parser.parse_args(argv)


# ================================================================
# Function: fncInitClient
# Purpose  : Build the Graph client from the entra config block
# Notes    : Missing credentials are prompted for by GraphClient
# ================================================================
def fncInitClient(cfg: dict):
    entra_cfg = fncGetProviderConfig(cfg, PROVIDER)
    if not all([entra_cfg.get("tenant_id"), entra_cfg.get("client_id"), entra_cfg.get("client_secret")]):
        fncPrintMessage("Missing Entra credentials — dropping into interactive mode…", "warn")

    return GraphClient(
        tenant_id=entra_cfg.get("tenant_id"),
        client_id=entra_cfg.get("client_id"),
        client_secret=entra_cfg.get("client_secret"),
        authority=entra_cfg.get("authority"),
    )


def _failed(result) -> bool:
    return isinstance(result, dict) and "error" in result


# ================================================================
# Function: main
# Purpose  : Main entry point for LicencePoodle execution
# Notes    : Returns the process exit code (1 when any module failed)
# ================================================================
def main(argv=None) -> int:
    args = fncParseArguments(argv)

    # Load or create configuration, set debug
    cfg = fncInitConfig(args.config)
    cfg = fncApplyCliOverrides(cfg, args)
    fncSetDebug(fncIsDebug(cfg))
    args.cfg = cfg

    fncDisplayBanner("v1.0")
    fncBlurb(args.scan or "generic")
    fncPrintMessage("Debug output enabled.", "debug")

    try:
        client = fncInitClient(cfg)
    except GraphAuthError as ex:
        fncPrintMessage(f"Authentication failed: {ex}", "error")
        return 1

    # CSV is always written; --export adds to it
    export_formats = (fncExportList(args.export) if args.export else set(DEFAULT_FORMATS)) | {"csv"}
    reports_root = pathlib.Path(cfg["paths"]["reports_dir"]).expanduser()

    if args.run_all:
        skip_list = [m.strip() for m in args.skip.split(",") if m.strip()]
        results = fncRunAllModules(PROVIDER, client, args, skip_list=skip_list)

        if export_formats:
            fncExportMultiModule(results, export_formats, reports_root)
        failed = [m for m, r in results.items() if _failed(r)]
    else:
        fncPrintMessage(f"Running scan module: {args.scan}", "info")
        result = fncRunModule(PROVIDER, args.scan, client, args)

        if export_formats and isinstance(result, dict) and not _failed(result):
            fncExportSingleModule(args.scan, result, export_formats, reports_root)
        failed = [args.scan] if _failed(result) else []

    if failed:
        fncPrintMessage(f"Finished with errors in: {', '.join(failed)}", "error")
        return 1

    fncPrintMessage("Scan complete. Tail wag achieved.", "success")
    return 0


if __name__ == "__main__":
    sys.exit(main())
