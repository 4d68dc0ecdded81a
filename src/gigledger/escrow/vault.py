"""Escrow vault — manager-controlled custody pool keyed by job id.

The vault is structurally independent of the job ledger. It holds its own
funds under its own custody account, keys records by an externally
supplied job id, and never reads job ledger state. Any consistency
between the two is the caller's responsibility.

State machine:
    ACTIVE → RELEASED     (client releases to freelancer)
    ACTIVE → REFUNDED     (escrow manager refunds client)
    ACTIVE → DISPUTED     (client disputes)
    DISPUTED → RELEASED   (escrow manager resolves; paid to winner)
    DISPUTED → REFUNDED   (escrow manager refunds client)

A resolved dispute always ends RELEASED, whichever party wins.

Every payout zeroes the balance and sets the terminal status before the
outbound token call; a failed call restores both.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from gigledger.access.guards import (
    NonReentrantGuard,
    PauseSwitch,
    non_reentrant,
    when_not_paused,
)
from gigledger.access.roles import Role, RoleRegistry
from gigledger.custody.token import TokenMover, check_amount
from gigledger.errors import (
    AmountError,
    AuthorizationError,
    CustodyError,
    StateError,
    TemporalError,
)
from gigledger.models.escrow import (
    FUNDABLE_STATUSES,
    EscrowRecord,
    EscrowStatus,
)
from gigledger.persistence.event_log import EventKind, EventLog
from gigledger.policy.resolver import VaultPolicy

logger = logging.getLogger(__name__)


class EscrowVault:
    """Per-job escrow records with privileged creation and dispute resolution.

    Usage:
        vault = EscrowVault(roles, book.mover_for("escrow-vault"),
                            resolver.vault_policy(), deployer="admin")
        vault.create_escrow("admin", 1, "alice", "bob", 100)
        vault.initiate_dispute("alice", 1)
        vault.resolve_dispute("admin", 1, "bob")
    """

    def __init__(
        self,
        roles: RoleRegistry,
        token: TokenMover,
        policy: VaultPolicy,
        deployer: str,
        event_log: Optional[EventLog] = None,
        pause_switch: Optional[PauseSwitch] = None,
    ) -> None:
        self._roles = roles
        self._token = token
        self._policy = policy
        self._event_log = event_log
        self._pause = pause_switch if pause_switch is not None else PauseSwitch(roles)
        self._reentrancy = NonReentrantGuard()
        self._escrows: dict[int, EscrowRecord] = {}
        self._audit_degraded = False

        roles.bootstrap_grant(Role.ADMIN, deployer)
        roles.bootstrap_grant(Role.ESCROW_MANAGER, deployer)

    @property
    def custody_account(self) -> str:
        return self._token.custodian

    @property
    def paused(self) -> bool:
        return self._pause.paused

    @property
    def audit_degraded(self) -> bool:
        return self._audit_degraded

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def create_escrow(
        self,
        caller: str,
        job_id: int,
        client: str,
        freelancer: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Open an ACTIVE record and pull amount from the client."""
        now = _resolve_now(now)
        self._roles.require(Role.ESCROW_MANAGER, caller)
        if job_id in self._escrows:
            raise StateError(f"Escrow already exists for job {job_id}")
        client = (client or "").strip()
        freelancer = (freelancer or "").strip()
        if not client or not freelancer:
            raise AmountError("Escrow client and freelancer must not be blank")
        if client == freelancer:
            raise AmountError(f"Escrow client and freelancer must differ: {client!r}")
        self._check_deposit(amount)

        record = EscrowRecord(
            job_id=job_id,
            client=client,
            freelancer=freelancer,
            balance=amount,
            status=EscrowStatus.ACTIVE,
            created_utc=now,
        )
        self._escrows[job_id] = record

        def _rollback() -> None:
            self._escrows.pop(job_id, None)

        self._pull(client, amount, _rollback, f"open escrow {job_id}")

        self._emit(EventKind.FUNDS_DEPOSITED, caller, {
            "job_id": job_id,
            "client": client,
            "freelancer": freelancer,
            "amount": amount,
            "balance": amount,
        }, now)
        logger.info("escrow %d opened: %d from %s for %s", job_id, amount, client, freelancer)
        return record

    @when_not_paused
    @non_reentrant
    def add_funds(
        self,
        caller: str,
        job_id: int,
        amount: int,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Client tops up an ACTIVE or DISPUTED escrow."""
        now = _resolve_now(now)
        record = self._get(job_id)
        self._require_client(record, caller, "add funds")
        if record.status not in FUNDABLE_STATUSES:
            raise StateError(
                f"Cannot add funds to escrow {job_id} (status: {record.status.value})"
            )
        self._check_deposit(amount)

        record.balance += amount

        def _rollback() -> None:
            record.balance -= amount

        self._pull(caller, amount, _rollback, f"top up escrow {job_id}")

        self._emit(EventKind.FUNDS_DEPOSITED, caller, {
            "job_id": job_id,
            "amount": amount,
            "balance": record.balance,
        }, now)
        return record

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def release_funds(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Client releases the entire balance to the freelancer."""
        now = _resolve_now(now)
        record = self._get(job_id)
        self._require_client(record, caller, "release funds")
        if record.status != EscrowStatus.ACTIVE:
            raise StateError(
                f"Escrow {job_id} is not active (status: {record.status.value})"
            )

        amount = self._settle(record, EscrowStatus.RELEASED, record.freelancer, now)

        self._emit(EventKind.FUNDS_RELEASED, caller, {
            "job_id": job_id,
            "freelancer": record.freelancer,
            "amount": amount,
        }, now)
        logger.info("escrow %d released: %d to %s", job_id, amount, record.freelancer)
        return record

    @when_not_paused
    @non_reentrant
    def refund_client(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Escrow manager returns the entire balance to the client."""
        now = _resolve_now(now)
        self._roles.require(Role.ESCROW_MANAGER, caller)
        record = self._get(job_id)
        if not record.can_transition_to(EscrowStatus.REFUNDED):
            raise StateError(
                f"Escrow {job_id} cannot be refunded (status: {record.status.value})"
            )

        amount = self._settle(record, EscrowStatus.REFUNDED, record.client, now)

        self._emit(EventKind.ESCROW_REFUNDED, caller, {
            "job_id": job_id,
            "client": record.client,
            "amount": amount,
        }, now)
        logger.info("escrow %d refunded: %d to %s", job_id, amount, record.client)
        return record

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def initiate_dispute(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        now = _resolve_now(now)
        record = self._get(job_id)
        self._require_client(record, caller, "initiate a dispute")
        if record.status != EscrowStatus.ACTIVE:
            raise StateError(
                f"Escrow {job_id} is not active (status: {record.status.value})"
            )

        record.transition_to(EscrowStatus.DISPUTED)
        record.disputed_utc = now

        self._emit(EventKind.ESCROW_DISPUTED, caller, {"job_id": job_id}, now)
        logger.info("escrow %d disputed by %s", job_id, caller)
        return record

    @when_not_paused
    @non_reentrant
    def resolve_dispute(
        self,
        caller: str,
        job_id: int,
        winner: str,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Escrow manager pays the entire balance to the winner. → RELEASED."""
        now = _resolve_now(now)
        self._roles.require(Role.ESCROW_MANAGER, caller)
        record = self._get(job_id)
        if record.status != EscrowStatus.DISPUTED:
            raise StateError(
                f"Escrow {job_id} is not disputed (status: {record.status.value})"
            )
        if winner not in (record.client, record.freelancer):
            raise AmountError(
                f"Winner must be the client or freelancer of escrow {job_id}: {winner!r}"
            )

        amount = self._settle(record, EscrowStatus.RELEASED, winner, now)

        self._emit(EventKind.ESCROW_DISPUTE_RESOLVED, caller, {
            "job_id": job_id,
            "winner": winner,
            "amount": amount,
        }, now)
        logger.info("escrow %d dispute resolved: %d to %s", job_id, amount, winner)
        return record

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, caller: str, now: Optional[datetime] = None) -> None:
        now = _resolve_now(now)
        self._pause.pause(caller)
        self._emit(EventKind.PAUSED, caller, {"component": "escrow_vault"}, now)

    def unpause(self, caller: str, now: Optional[datetime] = None) -> None:
        now = _resolve_now(now)
        self._pause.unpause(caller)
        self._emit(EventKind.UNPAUSED, caller, {"component": "escrow_vault"}, now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_escrow(self, job_id: int) -> EscrowRecord:
        return self._get(job_id)

    def has_escrow(self, job_id: int) -> bool:
        return job_id in self._escrows

    def balance_of(self, job_id: int) -> int:
        return self._get(job_id).balance

    def total_held(self) -> int:
        return sum(r.balance for r in self._escrows.values())

    def all_escrows(self) -> list[EscrowRecord]:
        return [self._escrows[job_id] for job_id in sorted(self._escrows)]

    def restore(self, records: list[EscrowRecord]) -> None:
        self._escrows = {r.job_id: r for r in records}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, job_id: int) -> EscrowRecord:
        record = self._escrows.get(job_id)
        if record is None:
            raise StateError(f"Escrow not found for job {job_id}")
        return record

    @staticmethod
    def _require_client(record: EscrowRecord, caller: str, action: str) -> None:
        if caller != record.client:
            raise AuthorizationError(
                f"Only the client of escrow {record.job_id} can {action}: {caller!r}"
            )

    def _check_deposit(self, amount: int) -> None:
        check_amount(amount)
        if amount < self._policy.min_escrow_amount:
            raise AmountError(
                f"Amount {amount} is below the minimum deposit of "
                f"{self._policy.min_escrow_amount}"
            )

    def _settle(
        self,
        record: EscrowRecord,
        target: EscrowStatus,
        recipient: str,
        now: datetime,
    ) -> int:
        """Zero the balance, set the terminal status, then pay out."""
        amount = record.balance
        prior_status = record.status
        prior_settled = record.settled_utc

        record.transition_to(target)
        record.balance = 0
        record.settled_utc = now

        def _rollback() -> None:
            record.balance = amount
            record.settled_utc = prior_settled
            record.status = prior_status
            record.is_released = prior_status == EscrowStatus.RELEASED

        try:
            ok = self._token.transfer(recipient, amount)
        except Exception:
            _rollback()
            raise
        if not ok:
            _rollback()
            raise CustodyError(
                f"Token transfer failed: could not pay {amount} to {recipient} "
                f"from escrow {record.job_id}"
            )
        return amount

    def _pull(
        self,
        sender: str,
        amount: int,
        rollback: Callable[[], None],
        label: str,
    ) -> None:
        try:
            ok = self._token.transfer_from(sender, self._token.custodian, amount)
        except Exception:
            rollback()
            raise
        if not ok:
            rollback()
            raise CustodyError(
                f"Token transfer failed: could not {label} ({amount} from {sender})"
            )

    def _emit(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        if self._event_log is None:
            return
        try:
            self._event_log.record(kind, actor, payload, now=now)
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("audit event %s not recorded: %s", kind.value, e)


def _resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    _require_aware(now)
    return now


def _require_aware(moment: datetime) -> None:
    if moment.tzinfo is None:
        raise TemporalError(f"Timestamp must be timezone-aware: {moment.isoformat()}")
