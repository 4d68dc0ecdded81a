"""Policy resolver — loads settlement_params.json and exposes typed policy.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any


MAX_JOB_DURATION_DAYS = 3650


@dataclass(frozen=True)
class LedgerPolicy:
    """Resolved bounds for the job ledger."""
    min_job_budget: int
    max_job_duration: timedelta


@dataclass(frozen=True)
class VaultPolicy:
    """Resolved bounds for the escrow vault."""
    min_escrow_amount: int


class PolicyResolver:
    """Loads and resolves settlement policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        policy = resolver.ledger_policy()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        self._validate_version()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "settlement_params.json"))

    @property
    def version(self) -> str:
        return self._params["version"]

    def _validate_version(self) -> None:
        if "version" not in self._params:
            raise ValueError("settlement_params.json missing version")

    def ledger_policy(self) -> LedgerPolicy:
        section = self._section("job_ledger")
        min_budget = _positive_int(section["min_job_budget"], "min_job_budget")
        days = _positive_int(section["max_job_duration_days"], "max_job_duration_days")
        if days > MAX_JOB_DURATION_DAYS:
            raise ValueError(
                f"max_job_duration_days must be at most {MAX_JOB_DURATION_DAYS}, got {days}"
            )
        return LedgerPolicy(
            min_job_budget=min_budget,
            max_job_duration=timedelta(days=days),
        )

    def vault_policy(self) -> VaultPolicy:
        section = self._section("escrow_vault")
        minimum = _positive_int(section["min_escrow_amount"], "min_escrow_amount")
        return VaultPolicy(min_escrow_amount=minimum)

    def _section(self, name: str) -> dict[str, Any]:
        section = self._params.get(name)
        if section is None:
            raise ValueError(f"settlement_params.json missing section: {name}")
        return section


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value
