"""Settlement service — unified facade over both custody components.

Wires a single role registry, user registry, token book, pause switch and
event log into a JobLedger and an EscrowVault, so that:
- roles and identities are shared, never duplicated
- one pause halts every state-changing entry point of both components
- both append to the same hash-chained audit trail

The two components stay independent: the service never moves funds
between them or reads one to decide on the other.

All operations return a ServiceResult. Rejections carry the error text and
its taxonomy kind (authorization, state, paused, reentrancy, temporal,
value, custody). Nothing raised by a component escapes as an exception
unless it is outside the settlement taxonomy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from gigledger.access.guards import PauseSwitch
from gigledger.access.roles import Role, RoleRegistry
from gigledger.custody.token import TokenBook, TokenMover
from gigledger.errors import AuthorizationError, SettlementError
from gigledger.escrow.vault import EscrowVault
from gigledger.identity.registry import UserKind, UserRegistry
from gigledger.ledger.job_ledger import JobLedger
from gigledger.models.escrow import EscrowRecord
from gigledger.models.job import Job, JobStatus
from gigledger.persistence.event_log import EventKind, EventLog
from gigledger.persistence.state_store import StateStore
from gigledger.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


LEDGER_ACCOUNT = "job-ledger"
VAULT_ACCOUNT = "escrow-vault"


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None


class SettlementService:
    """Facade for the job ledger and escrow vault.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = SettlementService(resolver, deployer="admin")

        service.register_user("alice", UserKind.CLIENT)
        service.mint("admin", "alice", 10_000)
        service.approve("alice", LEDGER_ACCOUNT, 5_000)
        result = service.create_job("alice", "ipfs://brief", 5_000, deadline)

    Persistence (optional):
        service = SettlementService(resolver, "admin",
                                    event_log=log, state_store=store)
        # State is persisted after each successful mutation and loaded
        # on construction.

    Custody (optional):
        ledger_mover, vault_mover = Erc20TokenMover.pair_from_env(env_path)
        service = SettlementService(resolver, "admin",
                                    ledger_mover=ledger_mover,
                                    vault_mover=vault_mover)
        # Without injected movers both components are bound to the
        # in-memory token book.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        deployer: str,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        ledger_mover: Optional[TokenMover] = None,
        vault_mover: Optional[TokenMover] = None,
    ) -> None:
        self._resolver = resolver
        self._deployer = deployer
        self._event_log = event_log if event_log is not None else EventLog()
        self._state_store = state_store

        # Set to True if a StateStore write fails after a change has been
        # committed. In-memory state remains correct (aligned with the
        # audit trail) but the store is stale.
        self._persistence_degraded = False
        # Set to True if a pause or role event could not be appended.
        self._audit_degraded = False

        self._roles = RoleRegistry()
        self._users = UserRegistry()
        self._book = TokenBook()
        self._ledger_mover = ledger_mover or self._book.mover_for(LEDGER_ACCOUNT)
        self._vault_mover = vault_mover or self._book.mover_for(VAULT_ACCOUNT)
        if self._ledger_mover.custodian == self._vault_mover.custodian:
            raise ValueError(
                f"Job ledger and escrow vault share custody account "
                f"{self._ledger_mover.custodian!r}"
            )
        paused = state_store.load_paused() if state_store is not None else False
        self._pause = PauseSwitch(self._roles, paused=paused)

        self._ledger = JobLedger(
            self._roles,
            self._users,
            self._ledger_mover,
            resolver.ledger_policy(),
            deployer,
            event_log=self._event_log,
            pause_switch=self._pause,
        )
        self._vault = EscrowVault(
            self._roles,
            self._vault_mover,
            resolver.vault_policy(),
            deployer,
            event_log=self._event_log,
            pause_switch=self._pause,
        )

        if state_store is not None:
            self._load_state(state_store)

        self._roles.subscribe(self._record_role_change)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    @property
    def vault(self) -> EscrowVault:
        return self._vault

    @property
    def token_book(self) -> TokenBook:
        return self._book

    @property
    def users(self) -> UserRegistry:
        return self._users

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    @property
    def audit_degraded(self) -> bool:
        return (
            self._audit_degraded
            or self._ledger.audit_degraded
            or self._vault.audit_degraded
        )

    # ------------------------------------------------------------------
    # Identities, tokens, roles
    # ------------------------------------------------------------------

    def register_user(self, identity: str, kind: UserKind) -> ServiceResult:
        """Register a client or freelancer."""
        return self._execute(
            lambda: self._users.register(identity, kind),
            lambda profile: {"identity": profile.identity, "kind": profile.kind.value},
        )

    def mint(self, caller: str, account: str, amount: int) -> ServiceResult:
        """Credit the in-memory token book. ADMIN only."""
        def _mint() -> int:
            self._roles.require(Role.ADMIN, caller)
            self._book.mint(account, amount)
            return self._book.balance_of(account)

        return self._execute(_mint, lambda balance: {"account": account, "balance": balance})

    def approve(self, owner: str, spender: str, amount: int) -> ServiceResult:
        """Set the allowance owner grants a custody account."""
        def _approve() -> int:
            self._book.approve(owner, spender, amount)
            return self._book.allowance(owner, spender)

        return self._execute(
            _approve,
            lambda allowance: {"owner": owner, "spender": spender, "allowance": allowance},
        )

    def balance_of(self, account: str) -> int:
        return self._book.balance_of(account)

    def grant_role(self, caller: str, role: Role, account: str) -> ServiceResult:
        return self._execute(
            lambda: self._roles.grant_role(role, account, caller),
            lambda changed: {"role": role.value, "account": account, "changed": changed},
        )

    def revoke_role(self, caller: str, role: Role, account: str) -> ServiceResult:
        return self._execute(
            lambda: self._roles.revoke_role(role, account, caller),
            lambda changed: {"role": role.value, "account": account, "changed": changed},
        )

    def pause(self, caller: str) -> ServiceResult:
        """Halt every state-changing entry point of both components."""
        def _pause() -> bool:
            self._pause.pause(caller)
            self._audit(EventKind.PAUSED, caller, {"component": "all"})
            return True

        return self._execute(_pause, lambda paused: {"paused": paused})

    def unpause(self, caller: str) -> ServiceResult:
        def _unpause() -> bool:
            self._pause.unpause(caller)
            self._audit(EventKind.UNPAUSED, caller, {"component": "all"})
            return False

        return self._execute(_unpause, lambda paused: {"paused": paused})

    # ------------------------------------------------------------------
    # Job ledger
    # ------------------------------------------------------------------

    def create_job(
        self,
        caller: str,
        ipfs_ref: str,
        budget: int,
        deadline: datetime,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.create_job(caller, ipfs_ref, budget, deadline, now=now),
            _job_data,
        )

    def submit_proposal(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _submit() -> list[str]:
            self._ledger.submit_proposal(caller, job_id, now=now)
            return self._ledger.get_job_proposals(job_id)

        return self._execute(_submit, lambda p: {"job_id": job_id, "proposals": p})

    def hire_freelancer(
        self, caller: str, job_id: int, freelancer: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.hire_freelancer(caller, job_id, freelancer, now=now),
            _job_data,
        )

    def complete_job(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.complete_job(caller, job_id, now=now),
            _job_data,
        )

    def cancel_job(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.cancel_job(caller, job_id, now=now),
            _job_data,
        )

    def dispute_job(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.initiate_dispute(caller, job_id, now=now),
            _job_data,
        )

    def resolve_job_dispute(
        self, caller: str, job_id: int, winner: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.resolve_dispute(caller, job_id, winner, now=now),
            _job_data,
        )

    def extend_job_deadline(
        self,
        caller: str,
        job_id: int,
        new_deadline: datetime,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.extend_job_deadline(caller, job_id, new_deadline, now=now),
            _job_data,
        )

    def increase_budget(
        self, caller: str, job_id: int, extra: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._ledger.increase_budget(caller, job_id, extra, now=now),
            _job_data,
        )

    def get_job(self, job_id: int) -> Optional[Job]:
        if not self._ledger.has_job(job_id):
            return None
        return self._ledger.get_job(job_id)

    # ------------------------------------------------------------------
    # Escrow vault
    # ------------------------------------------------------------------

    def create_escrow(
        self,
        caller: str,
        job_id: int,
        client: str,
        freelancer: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.create_escrow(caller, job_id, client, freelancer, amount, now=now),
            _escrow_data,
        )

    def add_escrow_funds(
        self, caller: str, job_id: int, amount: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.add_funds(caller, job_id, amount, now=now),
            _escrow_data,
        )

    def release_escrow(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.release_funds(caller, job_id, now=now),
            _escrow_data,
        )

    def refund_escrow(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.refund_client(caller, job_id, now=now),
            _escrow_data,
        )

    def dispute_escrow(
        self, caller: str, job_id: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.initiate_dispute(caller, job_id, now=now),
            _escrow_data,
        )

    def resolve_escrow_dispute(
        self, caller: str, job_id: int, winner: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._vault.resolve_dispute(caller, job_id, winner, now=now),
            _escrow_data,
        )

    def get_escrow(self, job_id: int) -> Optional[EscrowRecord]:
        if not self._vault.has_escrow(job_id):
            return None
        return self._vault.get_escrow(job_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        jobs_by_status: dict[str, int] = {s.value: 0 for s in JobStatus}
        for job in self._ledger.all_jobs():
            jobs_by_status[job.status.value] += 1
        escrows_by_status: dict[str, int] = {}
        for record in self._vault.all_escrows():
            key = record.status.value
            escrows_by_status[key] = escrows_by_status.get(key, 0) + 1
        return {
            "paused": self._pause.paused,
            "jobs": {
                "total": self._ledger.job_count(),
                "active": self._ledger.active_job_count(),
                "by_status": jobs_by_status,
                "held": self._ledger.total_held(),
                "custody_balance": self._ledger_mover.balance_of(self._ledger_mover.custodian),
            },
            "escrows": {
                "total": len(self._vault.all_escrows()),
                "by_status": escrows_by_status,
                "held": self._vault.total_held(),
                "custody_balance": self._vault_mover.balance_of(self._vault_mover.custodian),
            },
            "users": len(self._users.all_users()),
            "events": self._event_log.count,
            "audit_degraded": self.audit_degraded,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: Callable[[], Any],
        describe: Callable[[Any], dict[str, Any]],
    ) -> ServiceResult:
        """Run one operation; map taxonomy errors to a failed result."""
        try:
            outcome = operation()
        except SettlementError as e:
            logger.info("rejected (%s): %s", e.kind, e)
            return ServiceResult(success=False, errors=[str(e)], error_kind=e.kind)

        data = describe(outcome)
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _record_role_change(
        self, action: str, role: Role, account: str, caller: str,
    ) -> None:
        kind = EventKind.ROLE_GRANTED if action == "granted" else EventKind.ROLE_REVOKED
        self._audit(kind, caller, {"role": role.value, "account": account})

    def _audit(self, kind: EventKind, actor: str, payload: dict[str, Any]) -> None:
        """Append a service-level event after the change is in effect.

        A write failure marks the service audit-degraded; the change stands.
        """
        try:
            self._event_log.record(kind, actor, payload)
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("audit event %s not recorded: %s", kind.value, e)

    def _load_state(self, store: StateStore) -> None:
        self._users.restore(store.load_users())
        book = store.load_token_book()
        if book is not None:
            self._book.restore(book)
        grants = store.load_roles()
        if grants is not None:
            self._roles.restore(grants)
            if not self._roles.members(Role.ADMIN):
                raise AuthorizationError("Persisted state has no ADMIN holder")
        jobs, proposals, next_job_id = store.load_jobs()
        self._ledger.restore(jobs, proposals, next_job_id)
        self._vault.restore(store.load_escrows())

    def _persist_state(self) -> None:
        """Persist current state to the state store (if wired).

        Can raise OSError; callers use _safe_persist_post_audit().
        """
        if self._state_store is None:
            return
        store = self._state_store
        store.save_users(self._users.all_users())
        store.save_token_book(self._book.snapshot())
        store.save_roles(self._roles.snapshot())
        store.save_jobs(
            self._ledger.all_jobs(),
            self._ledger.proposals_snapshot(),
            self._ledger.next_job_id,
        )
        store.save_escrows(self._vault.all_escrows())
        store.save_paused(self._pause.paused)
        store.flush()

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after a change has been committed.

        MUST NOT roll back in-memory state: custody has already moved and
        the audit trail records it. On failure the store is stale; a
        warning is returned and _persistence_degraded is set.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("state store write failed: %s", e)
            return f"Persistence degraded: {e}; change committed but StateStore is stale"


def _job_data(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "client": job.client,
        "status": job.status.value,
        "budget": job.budget,
        "held": job.held,
        "deadline": job.deadline.isoformat(),
        "hired_freelancer": job.hired_freelancer,
        "completed_utc": job.completed_utc.isoformat() if job.completed_utc else None,
    }


def _escrow_data(record: EscrowRecord) -> dict[str, Any]:
    return {
        "job_id": record.job_id,
        "client": record.client,
        "freelancer": record.freelancer,
        "status": record.status.value,
        "balance": record.balance,
        "is_released": record.is_released,
    }
