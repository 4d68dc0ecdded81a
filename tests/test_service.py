"""Tests for SettlementService — proves the facade orchestrates correctly."""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from gigledger.access.roles import Role
from gigledger.custody.token import TokenBook
from gigledger.identity.registry import UserKind
from gigledger.persistence.event_log import EventKind, EventLog
from gigledger.persistence.state_store import StateStore
from gigledger.policy.resolver import PolicyResolver
from gigledger.service import LEDGER_ACCOUNT, VAULT_ACCOUNT, SettlementService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def service(resolver: PolicyResolver) -> SettlementService:
    svc = SettlementService(resolver, deployer="admin")
    _seed(svc)
    return svc


def _seed(service: SettlementService) -> None:
    service.register_user("alice", UserKind.CLIENT)
    service.register_user("bob", UserKind.FREELANCER)
    service.mint("admin", "alice", 50_000)
    service.approve("alice", LEDGER_ACCOUNT, 20_000)
    service.approve("alice", VAULT_ACCOUNT, 20_000)


def _hired_job(service: SettlementService, budget: int = 5_000) -> int:
    result = service.create_job(
        "alice", "ipfs://brief", budget, _now() + timedelta(days=30), now=_now(),
    )
    assert result.success, result.errors
    job_id = result.data["job_id"]
    assert service.submit_proposal("bob", job_id, now=_now()).success
    assert service.hire_freelancer("alice", job_id, "bob", now=_now()).success
    return job_id


class TestJobFlow:
    def test_full_lifecycle(self, service: SettlementService) -> None:
        job_id = _hired_job(service)
        result = service.complete_job("alice", job_id, now=_now())
        assert result.success
        assert result.data["status"] == "completed"
        assert result.data["held"] == 0
        assert service.balance_of("bob") == 5_000
        assert service.users.get("bob").completed_jobs == 1

    def test_rejection_carries_kind(self, service: SettlementService) -> None:
        result = service.create_job(
            "bob", "ipfs://x", 5_000, _now() + timedelta(days=1), now=_now(),
        )
        assert not result.success
        assert result.error_kind == "authorization"
        assert result.errors

    def test_temporal_rejection(self, service: SettlementService) -> None:
        result = service.create_job("alice", "ipfs://x", 5_000, _now(), now=_now())
        assert result.error_kind == "temporal"

    def test_naive_now_is_a_temporal_rejection(self, service: SettlementService) -> None:
        result = service.create_job(
            "alice", "ipfs://x", 5_000, _now() + timedelta(days=1),
            now=datetime(2026, 3, 1, 12, 0, 0),
        )
        assert not result.success
        assert result.error_kind == "temporal"
        assert service.ledger.job_count() == 0
        assert service.balance_of("alice") == 50_000

    def test_custody_rejection(self, service: SettlementService) -> None:
        result = service.create_job(
            "alice", "ipfs://x", 30_000, _now() + timedelta(days=1), now=_now(),
        )
        assert result.error_kind == "custody"
        assert service.ledger.job_count() == 0

    def test_dispute_resolution(self, service: SettlementService) -> None:
        job_id = _hired_job(service)
        assert service.dispute_job("bob", job_id, now=_now()).success
        result = service.resolve_job_dispute("admin", job_id, "alice", now=_now())
        assert result.success
        assert service.balance_of("alice") == 50_000

    def test_amendments(self, service: SettlementService) -> None:
        job_id = _hired_job(service)
        later = _now() + timedelta(days=90)
        assert service.extend_job_deadline("alice", job_id, later, now=_now()).success
        result = service.increase_budget("alice", job_id, 500, now=_now())
        assert result.data["budget"] == 5_500
        assert service.get_job(job_id).deadline == later

    def test_get_missing_job(self, service: SettlementService) -> None:
        assert service.get_job(99) is None


class TestEscrowFlow:
    def test_release(self, service: SettlementService) -> None:
        result = service.create_escrow("admin", 1, "alice", "bob", 100, now=_now())
        assert result.success
        assert service.add_escrow_funds("alice", 1, 50, now=_now()).success
        result = service.release_escrow("alice", 1, now=_now())
        assert result.data["is_released"] is True
        assert service.balance_of("bob") == 150

    def test_dispute_and_refund(self, service: SettlementService) -> None:
        service.create_escrow("admin", 1, "alice", "bob", 100, now=_now())
        assert service.dispute_escrow("alice", 1, now=_now()).success
        result = service.refund_escrow("admin", 1, now=_now())
        assert result.data["status"] == "refunded"

    def test_resolve(self, service: SettlementService) -> None:
        service.create_escrow("admin", 1, "alice", "bob", 100, now=_now())
        service.dispute_escrow("alice", 1, now=_now())
        result = service.resolve_escrow_dispute("admin", 1, "bob", now=_now())
        assert result.data["status"] == "released"

    def test_vault_and_ledger_are_independent(self, service: SettlementService) -> None:
        job_id = _hired_job(service)
        service.create_escrow("admin", job_id, "alice", "bob", 100, now=_now())
        service.complete_job("alice", job_id, now=_now())
        assert service.get_escrow(job_id).balance == 100
        assert service.balance_of(VAULT_ACCOUNT) == 100
        assert service.balance_of(LEDGER_ACCOUNT) == 0

    def test_naive_now_is_a_temporal_rejection(self, service: SettlementService) -> None:
        result = service.create_escrow(
            "admin", 1, "alice", "bob", 100, now=datetime(2026, 3, 1, 12, 0, 0),
        )
        assert result.error_kind == "temporal"
        assert service.get_escrow(1) is None


class TestAdministration:
    def test_mint_requires_admin(self, service: SettlementService) -> None:
        result = service.mint("alice", "alice", 1)
        assert result.error_kind == "authorization"

    def test_shared_pause(self, service: SettlementService) -> None:
        assert service.pause("admin").success
        job = service.create_job(
            "alice", "ipfs://x", 5_000, _now() + timedelta(days=1), now=_now(),
        )
        escrow = service.create_escrow("admin", 1, "alice", "bob", 100, now=_now())
        assert job.error_kind == "paused"
        assert escrow.error_kind == "paused"
        assert service.status()["paused"] is True
        assert service.unpause("admin").success
        assert service.event_log.events(EventKind.PAUSED)[0].payload == {"component": "all"}

    def test_double_pause(self, service: SettlementService) -> None:
        service.pause("admin")
        assert service.pause("admin").error_kind == "state"

    def test_role_changes_audited(self, service: SettlementService) -> None:
        result = service.grant_role("admin", Role.JOB_MANAGER, "arbiter")
        assert result.data["changed"] is True
        assert service.revoke_role("admin", Role.JOB_MANAGER, "arbiter").success
        kinds = [e.event_kind for e in service.event_log.events()]
        assert EventKind.ROLE_GRANTED in kinds
        assert EventKind.ROLE_REVOKED in kinds

    def test_status(self, service: SettlementService) -> None:
        _hired_job(service)
        service.create_job("alice", "ipfs://y", 2_000, _now() + timedelta(days=5), now=_now())
        service.create_escrow("admin", 9, "alice", "bob", 100, now=_now())
        status = service.status()
        assert status["jobs"]["total"] == 2
        assert status["jobs"]["active"] == 2
        assert status["jobs"]["by_status"]["in_progress"] == 1
        assert status["jobs"]["held"] == status["jobs"]["custody_balance"] == 7_000
        assert status["escrows"]["held"] == 100
        assert status["users"] == 2
        assert status["events"] == service.event_log.count


class TestPersistence:
    def test_state_survives_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        store_path = tmp_path / "state.json"
        log_path = tmp_path / "events.jsonl"

        first = SettlementService(
            resolver, "admin",
            event_log=EventLog(log_path), state_store=StateStore(store_path),
        )
        _seed(first)
        job_id = _hired_job(first)
        first.create_escrow("admin", 1, "alice", "bob", 100, now=_now())
        first.grant_role("admin", Role.ESCROW_MANAGER, "ops")

        second = SettlementService(
            resolver, "admin",
            event_log=EventLog(log_path), state_store=StateStore(store_path),
        )
        assert second.get_job(job_id).hired_freelancer == "bob"
        assert second.ledger.active_job_count() == 1
        assert second.get_escrow(1).balance == 100
        assert second.balance_of(LEDGER_ACCOUNT) == 5_000
        assert second.roles.has_role(Role.ESCROW_MANAGER, "ops")
        assert second.users.is_freelancer("bob")
        assert second.event_log.count == first.event_log.count

        assert second.complete_job("alice", job_id, now=_now()).success
        assert second.balance_of("bob") == 5_000

    def test_next_job_id_survives_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        store_path = tmp_path / "state.json"
        first = SettlementService(resolver, "admin", state_store=StateStore(store_path))
        _seed(first)
        first.create_job("alice", "ipfs://a", 2_000, _now() + timedelta(days=5), now=_now())

        second = SettlementService(resolver, "admin", state_store=StateStore(store_path))
        result = second.create_job(
            "alice", "ipfs://b", 2_000, _now() + timedelta(days=5), now=_now(),
        )
        assert result.data["job_id"] == 1

    def test_pause_survives_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        store_path = tmp_path / "state.json"
        first = SettlementService(resolver, "admin", state_store=StateStore(store_path))
        first.pause("admin")
        second = SettlementService(resolver, "admin", state_store=StateStore(store_path))
        assert second.status()["paused"] is True

    def test_store_failure_degrades(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")

        def _broken() -> None:
            raise OSError("read-only filesystem")

        store.flush = _broken  # type: ignore[method-assign]
        service = SettlementService(resolver, "admin", state_store=store)
        result = service.register_user("alice", UserKind.CLIENT)
        assert result.success
        assert "Persistence degraded" in result.data["warning"]
        assert service.persistence_degraded
        assert service.users.is_registered("alice")


class TestAuditFailures:
    def _service(self, resolver: PolicyResolver, tmp_path: Path) -> SettlementService:
        log_path = tmp_path / "events.jsonl"
        service = SettlementService(resolver, "admin", event_log=EventLog(log_path))
        log_path.mkdir()
        return service

    def test_pause_with_unwritable_log(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = self._service(resolver, tmp_path)
        result = service.pause("admin")
        assert result.success
        assert service.audit_degraded
        status = service.status()
        assert status["paused"] is True
        assert status["audit_degraded"] is True
        assert service.event_log.count == 0

    def test_unpause_with_unwritable_log(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = self._service(resolver, tmp_path)
        service.pause("admin")
        assert service.unpause("admin").success
        assert service.status()["paused"] is False

    def test_role_grant_with_unwritable_log(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        service = self._service(resolver, tmp_path)
        result = service.grant_role("admin", Role.JOB_MANAGER, "arbiter")
        assert result.success
        assert service.roles.has_role(Role.JOB_MANAGER, "arbiter")
        assert service.audit_degraded

    def test_healthy_log_not_degraded(self, service: SettlementService) -> None:
        service.pause("admin")
        assert not service.audit_degraded


class TestInjectedMovers:
    def _service(self, resolver: PolicyResolver) -> tuple[SettlementService, TokenBook]:
        chain = TokenBook()
        chain.mint("alice", 10_000)
        chain.approve("alice", "0xledger", 10_000)
        chain.approve("alice", "0xvault", 10_000)
        service = SettlementService(
            resolver, "admin",
            ledger_mover=chain.mover_for("0xledger"),
            vault_mover=chain.mover_for("0xvault"),
        )
        service.register_user("alice", UserKind.CLIENT)
        service.register_user("bob", UserKind.FREELANCER)
        return service, chain

    def test_job_settles_through_injected_mover(self, resolver: PolicyResolver) -> None:
        service, chain = self._service(resolver)
        job_id = service.create_job(
            "alice", "ipfs://brief", 5_000, _now() + timedelta(days=30), now=_now(),
        ).data["job_id"]
        service.submit_proposal("bob", job_id, now=_now())
        service.hire_freelancer("alice", job_id, "bob", now=_now())
        assert chain.balance_of("0xledger") == 5_000
        assert service.status()["jobs"]["custody_balance"] == 5_000

        assert service.complete_job("alice", job_id, now=_now()).success
        assert chain.balance_of("bob") == 5_000
        assert service.balance_of("bob") == 0

    def test_escrow_settles_through_injected_mover(self, resolver: PolicyResolver) -> None:
        service, chain = self._service(resolver)
        assert service.create_escrow("admin", 1, "alice", "bob", 100, now=_now()).success
        assert chain.balance_of("0xvault") == 100
        assert chain.balance_of("0xledger") == 0
        assert service.status()["escrows"]["custody_balance"] == 100

    def test_shared_custodian_rejected(self, resolver: PolicyResolver) -> None:
        chain = TokenBook()
        with pytest.raises(ValueError, match="custody"):
            SettlementService(
                resolver, "admin",
                ledger_mover=chain.mover_for("0xsame"),
                vault_mover=chain.mover_for("0xsame"),
            )
