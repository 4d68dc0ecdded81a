#!/usr/bin/env python3
"""GigLedger invariant checks against the settlement parameter file."""

import json
import sys
from pathlib import Path
from typing import Optional


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
PARAMS_FILE = "settlement_params.json"

MAX_DURATION_DAYS = 3650


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def collect_errors(params: dict) -> list[str]:
    errors: list[str] = []

    if not params.get("version"):
        errors.append("version must be set")

    # --- Job ledger bounds ---
    ledger = params.get("job_ledger")
    if not isinstance(ledger, dict):
        errors.append("missing section: job_ledger")
    else:
        min_budget = ledger.get("min_job_budget")
        if not _positive_int(min_budget):
            errors.append(f"min_job_budget must be a positive integer, got {min_budget!r}")
        days = ledger.get("max_job_duration_days")
        if not _positive_int(days):
            errors.append(f"max_job_duration_days must be a positive integer, got {days!r}")
        elif days > MAX_DURATION_DAYS:
            errors.append(
                f"max_job_duration_days must be <= {MAX_DURATION_DAYS}, got {days}"
            )

    # --- Escrow vault bounds ---
    vault = params.get("escrow_vault")
    if not isinstance(vault, dict):
        errors.append("missing section: escrow_vault")
    else:
        min_escrow = vault.get("min_escrow_amount")
        if not _positive_int(min_escrow):
            errors.append(f"min_escrow_amount must be a positive integer, got {min_escrow!r}")

    return errors


def check(config_dir: Optional[Path] = None) -> int:
    params_path = (config_dir or CONFIG_DIR) / PARAMS_FILE
    errors = collect_errors(load_json(params_path))

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else None))
