"""Tests for the policy resolver and the invariant checker."""

import json
import pytest
from datetime import timedelta
from pathlib import Path

from check_invariants import check, collect_errors
from gigledger.policy.resolver import LedgerPolicy, PolicyResolver, VaultPolicy


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _params(**ledger_overrides: object) -> dict:
    ledger = {"min_job_budget": 1000, "max_job_duration_days": 365}
    ledger.update(ledger_overrides)
    return {
        "version": "1.0.0",
        "job_ledger": ledger,
        "escrow_vault": {"min_escrow_amount": 1},
    }


class TestShippedConfig:
    def test_loads(self) -> None:
        resolver = PolicyResolver.from_config_dir(CONFIG_DIR)
        assert resolver.version
        assert resolver.ledger_policy() == LedgerPolicy(
            min_job_budget=1000, max_job_duration=timedelta(days=365),
        )
        assert resolver.vault_policy() == VaultPolicy(min_escrow_amount=1)

    def test_passes_invariant_check(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert check(CONFIG_DIR) == 0
        assert "passed" in capsys.readouterr().out


class TestValidation:
    def test_missing_version(self) -> None:
        params = _params()
        del params["version"]
        with pytest.raises(ValueError, match="version"):
            PolicyResolver(params)

    def test_missing_section(self) -> None:
        params = _params()
        del params["escrow_vault"]
        with pytest.raises(ValueError, match="escrow_vault"):
            PolicyResolver(params).vault_policy()

    def test_non_positive_minimum(self) -> None:
        with pytest.raises(ValueError, match="min_job_budget"):
            PolicyResolver(_params(min_job_budget=0)).ledger_policy()

    def test_fractional_duration(self) -> None:
        with pytest.raises(ValueError, match="max_job_duration_days"):
            PolicyResolver(_params(max_job_duration_days=1.5)).ledger_policy()

    def test_bool_minimum_rejected(self) -> None:
        with pytest.raises(ValueError, match="min_job_budget"):
            PolicyResolver(_params(min_job_budget=True)).ledger_policy()

    def test_duration_above_cap_rejected(self) -> None:
        with pytest.raises(ValueError, match="at most"):
            PolicyResolver(_params(max_job_duration_days=3651)).ledger_policy()

    def test_duration_at_cap_allowed(self) -> None:
        policy = PolicyResolver(_params(max_job_duration_days=3650)).ledger_policy()
        assert policy.max_job_duration == timedelta(days=3650)

    def test_resolver_agrees_with_checker(self) -> None:
        for overrides in ({"min_job_budget": True}, {"max_job_duration_days": 4000}):
            params = _params(**overrides)
            assert collect_errors(params)
            with pytest.raises(ValueError):
                PolicyResolver(params).ledger_policy()


class TestInvariantChecker:
    def test_clean(self) -> None:
        assert collect_errors(_params()) == []

    def test_duration_cap(self) -> None:
        errors = collect_errors(_params(max_job_duration_days=4000))
        assert any("3650" in e for e in errors)

    def test_bool_is_not_a_count(self) -> None:
        errors = collect_errors(_params(min_job_budget=True))
        assert any("min_job_budget" in e for e in errors)

    def test_failing_config_dir(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        (tmp_path / "settlement_params.json").write_text(
            json.dumps(_params(min_job_budget=-5)), encoding="utf-8",
        )
        assert check(tmp_path) == 1
        assert "min_job_budget" in capsys.readouterr().out
