"""Job ledger — custodian of each job's budget from posting to payout.

The ledger pulls a job's budget from the client when the job is posted
and holds it until exactly one terminal payout: to the freelancer on
completion, back to the client on cancellation, or to the winner of a
dispute. Every balance-changing transition is gated on role, ownership,
status and deadline.

Ordering rule for every fund-moving operation:
    1. all guards (no mutation yet)
    2. internal state moved to its post-operation value
    3. the external token call
    4. audit event + log line
If step 3 reports failure or raises, a rollback closure restores the
exact prior state and the operation fails. A reentrant call during step 3
is refused by the non-reentrant guard and, if it were allowed, would
observe the already-updated state.

Auxiliary indexes (proposal list per job, live active-job counter) are
maintained on each transition so no read scans every past job id.
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
from gigledger.identity.registry import IdentityRegistry
from gigledger.ledger.state_machine import JobStateMachine
from gigledger.models.job import ACTIVE_STATUSES, Job, JobStatus
from gigledger.persistence.event_log import EventKind, EventLog
from gigledger.policy.resolver import LedgerPolicy

logger = logging.getLogger(__name__)


class JobLedger:
    """Job lifecycle state machine with built-in budget custody.

    Usage:
        ledger = JobLedger(roles, users, book.mover_for("job-ledger"),
                           resolver.ledger_policy(), deployer="admin")
        job = ledger.create_job("alice", "ipfs://brief", 5_000, deadline)
        ledger.submit_proposal("bob", job.job_id)
        ledger.hire_freelancer("alice", job.job_id, "bob")
        ledger.complete_job("alice", job.job_id)
    """

    def __init__(
        self,
        roles: RoleRegistry,
        identities: IdentityRegistry,
        token: TokenMover,
        policy: LedgerPolicy,
        deployer: str,
        event_log: Optional[EventLog] = None,
        pause_switch: Optional[PauseSwitch] = None,
    ) -> None:
        self._roles = roles
        self._identities = identities
        self._token = token
        self._policy = policy
        self._event_log = event_log
        self._pause = pause_switch if pause_switch is not None else PauseSwitch(roles)
        self._reentrancy = NonReentrantGuard()

        self._jobs: dict[int, Job] = {}
        self._next_job_id = 0
        self._proposals: dict[int, list[str]] = {}
        self._proposal_flags: set[tuple[int, str]] = set()
        self._active_count = 0

        # Set if an audit event could not be written after custody moved.
        self._audit_degraded = False

        roles.bootstrap_grant(Role.ADMIN, deployer)
        roles.bootstrap_grant(Role.JOB_MANAGER, deployer)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def custody_account(self) -> str:
        """Account that holds every job budget."""
        return self._token.custodian

    @property
    def policy(self) -> LedgerPolicy:
        return self._policy

    @property
    def paused(self) -> bool:
        return self._pause.paused

    @property
    def audit_degraded(self) -> bool:
        return self._audit_degraded

    @property
    def next_job_id(self) -> int:
        return self._next_job_id

    # ------------------------------------------------------------------
    # Job creation and proposals
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def create_job(
        self,
        caller: str,
        ipfs_ref: str,
        budget: int,
        deadline: datetime,
        now: Optional[datetime] = None,
    ) -> Job:
        """Post a job and pull its budget from the caller into custody."""
        now = _resolve_now(now)
        if not self._identities.is_registered(caller) or self._identities.is_freelancer(caller):
            raise AuthorizationError(
                f"Only registered clients can create jobs: {caller!r}"
            )
        if not ipfs_ref or not ipfs_ref.strip():
            raise AmountError("Job description reference must not be blank")
        check_amount(budget, "Budget")
        if budget < self._policy.min_job_budget:
            raise AmountError(
                f"Budget {budget} is below the minimum of {self._policy.min_job_budget}"
            )
        _require_aware(deadline)
        if deadline <= now:
            raise TemporalError(f"Deadline {deadline.isoformat()} is not in the future")
        if deadline > now + self._policy.max_job_duration:
            raise TemporalError(
                f"Deadline {deadline.isoformat()} exceeds the maximum job duration "
                f"of {self._policy.max_job_duration.days} days"
            )

        job_id = self._next_job_id
        job = Job(
            job_id=job_id,
            client=caller,
            ipfs_ref=ipfs_ref.strip(),
            budget=budget,
            held=budget,
            deadline=deadline,
            status=JobStatus.POSTED,
            created_utc=now,
        )
        self._jobs[job_id] = job
        self._next_job_id += 1
        self._active_count += 1

        def _rollback() -> None:
            self._jobs.pop(job_id, None)
            self._next_job_id -= 1
            self._active_count -= 1

        self._pull(caller, budget, _rollback, f"fund job {job_id}")

        self._emit(EventKind.JOB_CREATED, caller, {
            "job_id": job_id,
            "client": caller,
            "budget": budget,
            "deadline": deadline.isoformat(),
            "ipfs_ref": job.ipfs_ref,
        }, now)
        logger.info("job %d created by %s with budget %d", job_id, caller, budget)
        return job

    @when_not_paused
    @non_reentrant
    def submit_proposal(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Flag the caller's interest in a posted job. No funds move."""
        now = _resolve_now(now)
        if not self._identities.is_freelancer(caller):
            raise AuthorizationError(
                f"Only registered freelancers can submit proposals: {caller!r}"
            )
        job = self._get(job_id)
        if job.status != JobStatus.POSTED:
            raise StateError(
                f"Job {job_id} is not accepting proposals (status: {job.status.value})"
            )
        if (job_id, caller) in self._proposal_flags:
            raise StateError(f"{caller} has already submitted a proposal for job {job_id}")
        self._require_before_deadline(job, now)

        self._proposal_flags.add((job_id, caller))
        self._proposals.setdefault(job_id, []).append(caller)

        self._emit(EventKind.PROPOSAL_SUBMITTED, caller, {
            "job_id": job_id,
            "freelancer": caller,
        }, now)

    @when_not_paused
    @non_reentrant
    def hire_freelancer(
        self,
        caller: str,
        job_id: int,
        freelancer: str,
        now: Optional[datetime] = None,
    ) -> Job:
        """Hire a freelancer who has proposed. POSTED → IN_PROGRESS."""
        now = _resolve_now(now)
        job = self._get(job_id)
        self._require_client(job, caller, "hire a freelancer")
        self._require_active(job, "hire a freelancer")
        if job.hired_freelancer is not None:
            raise StateError(
                f"Job {job_id} already has a hired freelancer: {job.hired_freelancer}"
            )
        if not self._identities.is_freelancer(freelancer):
            raise AuthorizationError(f"{freelancer!r} is not a registered freelancer")
        if (job_id, freelancer) not in self._proposal_flags:
            raise StateError(f"{freelancer} has not submitted a proposal for job {job_id}")
        self._require_before_deadline(job, now)

        job.hired_freelancer = freelancer
        self._transition(job, JobStatus.IN_PROGRESS)

        self._emit(EventKind.FREELANCER_HIRED, caller, {
            "job_id": job_id,
            "freelancer": freelancer,
        }, now)
        logger.info("job %d: %s hired", job_id, freelancer)
        return job

    # ------------------------------------------------------------------
    # Terminal payouts
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def complete_job(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> Job:
        """Pay the full held budget to the hired freelancer. → COMPLETED."""
        now = _resolve_now(now)
        job = self._get(job_id)
        self._require_client(job, caller, "complete the job")
        self._require_active(job, "complete the job")
        if job.hired_freelancer is None:
            raise StateError(f"Job {job_id} has no hired freelancer")
        self._require_before_deadline(job, now)

        freelancer = job.hired_freelancer
        amount = self._settle(job, JobStatus.COMPLETED, freelancer, now, "pay freelancer")
        self._notify_completion(freelancer, amount)

        self._emit(EventKind.JOB_COMPLETED, caller, {
            "job_id": job_id,
            "freelancer": freelancer,
            "amount": amount,
        }, now)
        logger.info("job %d completed: %d paid to %s", job_id, amount, freelancer)
        return job

    @when_not_paused
    @non_reentrant
    def cancel_job(
        self,
        caller: str,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> Job:
        """Refund the full held budget to the client before anyone is hired."""
        now = _resolve_now(now)
        job = self._get(job_id)
        self._require_client(job, caller, "cancel the job")
        self._require_active(job, "cancel the job")
        if job.hired_freelancer is not None:
            raise StateError(
                f"Job {job_id} cannot be cancelled after hiring {job.hired_freelancer}"
            )

        amount = self._settle(job, JobStatus.CANCELLED, job.client, now, "refund client")

        self._emit(EventKind.JOB_CANCELLED, caller, {
            "job_id": job_id,
            "refunded": amount,
        }, now)
        logger.info("job %d cancelled: %d refunded to %s", job_id, amount, job.client)
        return job

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
    ) -> Job:
        """Freeze an active job until a job manager resolves it."""
        now = _resolve_now(now)
        job = self._get(job_id)
        if not job.is_party(caller):
            raise AuthorizationError(
                f"Only the client or hired freelancer can dispute job {job_id}: {caller!r}"
            )
        self._require_active(job, "initiate a dispute")

        self._transition(job, JobStatus.DISPUTED)
        job.disputed_utc = now

        self._emit(EventKind.JOB_DISPUTED, caller, {"job_id": job_id}, now)
        logger.info("job %d disputed by %s", job_id, caller)
        return job

    @when_not_paused
    @non_reentrant
    def resolve_dispute(
        self,
        caller: str,
        job_id: int,
        winner: str,
        now: Optional[datetime] = None,
    ) -> Job:
        """Pay the full held budget to the winning party. DISPUTED → COMPLETED."""
        now = _resolve_now(now)
        self._roles.require(Role.JOB_MANAGER, caller)
        job = self._get(job_id)
        if job.status != JobStatus.DISPUTED:
            raise StateError(f"Job {job_id} is not disputed (status: {job.status.value})")
        if not winner or not job.is_party(winner):
            raise AmountError(
                f"Winner must be the client or the hired freelancer of job {job_id}: {winner!r}"
            )

        amount = self._settle(job, JobStatus.COMPLETED, winner, now, "pay dispute winner")
        if winner == job.hired_freelancer:
            self._notify_completion(winner, amount)

        self._emit(EventKind.JOB_DISPUTE_RESOLVED, caller, {
            "job_id": job_id,
            "winner": winner,
            "amount": amount,
        }, now)
        logger.info("job %d dispute resolved: %d paid to %s", job_id, amount, winner)
        return job

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    @when_not_paused
    @non_reentrant
    def extend_job_deadline(
        self,
        caller: str,
        job_id: int,
        new_deadline: datetime,
        now: Optional[datetime] = None,
    ) -> Job:
        now = _resolve_now(now)
        job = self._get(job_id)
        self._require_client(job, caller, "extend the deadline")
        self._require_active(job, "extend the deadline")
        _require_aware(new_deadline)
        if new_deadline <= job.deadline:
            raise TemporalError(
                f"New deadline {new_deadline.isoformat()} must be later than "
                f"the current deadline {job.deadline.isoformat()}"
            )
        if new_deadline > now + self._policy.max_job_duration:
            raise TemporalError(
                f"New deadline {new_deadline.isoformat()} exceeds the maximum job "
                f"duration of {self._policy.max_job_duration.days} days"
            )

        previous = job.deadline
        job.deadline = new_deadline

        self._emit(EventKind.DEADLINE_EXTENDED, caller, {
            "job_id": job_id,
            "previous_deadline": previous.isoformat(),
            "new_deadline": new_deadline.isoformat(),
        }, now)
        return job

    @when_not_paused
    @non_reentrant
    def increase_budget(
        self,
        caller: str,
        job_id: int,
        extra: int,
        now: Optional[datetime] = None,
    ) -> Job:
        """Top up an active job; the extra amount is pulled into custody."""
        now = _resolve_now(now)
        job = self._get(job_id)
        self._require_client(job, caller, "increase the budget")
        self._require_active(job, "increase the budget")
        check_amount(extra, "Additional budget")
        if extra == 0:
            raise AmountError("Additional budget must be greater than zero")

        job.budget += extra
        job.held += extra

        def _rollback() -> None:
            job.budget -= extra
            job.held -= extra

        self._pull(caller, extra, _rollback, f"top up job {job_id}")

        self._emit(EventKind.BUDGET_INCREASED, caller, {
            "job_id": job_id,
            "extra": extra,
            "budget": job.budget,
        }, now)
        logger.info("job %d budget increased by %d to %d", job_id, extra, job.budget)
        return job

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, caller: str, now: Optional[datetime] = None) -> None:
        now = _resolve_now(now)
        self._pause.pause(caller)
        self._emit(EventKind.PAUSED, caller, {"component": "job_ledger"}, now)

    def unpause(self, caller: str, now: Optional[datetime] = None) -> None:
        now = _resolve_now(now)
        self._pause.unpause(caller)
        self._emit(EventKind.UNPAUSED, caller, {"component": "job_ledger"}, now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: int) -> Job:
        return self._get(job_id)

    def has_job(self, job_id: int) -> bool:
        return job_id in self._jobs

    def get_job_proposals(self, job_id: int) -> list[str]:
        """Every identity that has flagged interest, in submission order."""
        self._get(job_id)
        return list(self._proposals.get(job_id, []))

    def has_proposed(self, job_id: int, candidate: str) -> bool:
        return (job_id, candidate) in self._proposal_flags

    def active_job_count(self) -> int:
        """Jobs currently POSTED or IN_PROGRESS."""
        return self._active_count

    def job_count(self) -> int:
        return len(self._jobs)

    def all_jobs(self) -> list[Job]:
        return [self._jobs[job_id] for job_id in sorted(self._jobs)]

    def total_held(self) -> int:
        """Sum of live custody across every job (audit read)."""
        return sum(job.held for job in self._jobs.values())

    def proposals_snapshot(self) -> dict[int, list[str]]:
        return {job_id: list(c) for job_id, c in self._proposals.items()}

    def restore(
        self,
        jobs: list[Job],
        proposals: dict[int, list[str]],
        next_job_id: int,
    ) -> None:
        """Replace all records with a persisted snapshot and rebuild indexes."""
        self._jobs = {job.job_id: job for job in jobs}
        if self._jobs and next_job_id <= max(self._jobs):
            raise ValueError(
                f"next_job_id {next_job_id} would reuse an existing job id"
            )
        self._next_job_id = next_job_id
        self._proposals = {job_id: list(c) for job_id, c in proposals.items()}
        self._proposal_flags = {
            (job_id, candidate)
            for job_id, candidates in self._proposals.items()
            for candidate in candidates
        }
        self._active_count = sum(
            1 for job in self._jobs.values() if job.status in ACTIVE_STATUSES
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, job_id: int) -> Job:
        """Internal lookup with clear error on missing ID."""
        job = self._jobs.get(job_id)
        if job is None:
            raise StateError(f"Job not found: {job_id}")
        return job

    @staticmethod
    def _require_client(job: Job, caller: str, action: str) -> None:
        if caller != job.client:
            raise AuthorizationError(
                f"Only the client of job {job.job_id} can {action}: {caller!r}"
            )

    @staticmethod
    def _require_active(job: Job, action: str) -> None:
        if not job.is_active:
            raise StateError(
                f"Cannot {action}: job {job.job_id} is not active "
                f"(status: {job.status.value})"
            )

    @staticmethod
    def _require_before_deadline(job: Job, now: datetime) -> None:
        if now > job.deadline:
            raise TemporalError(
                f"Deadline for job {job.job_id} passed at {job.deadline.isoformat()}"
            )

    def _transition(self, job: Job, target: JobStatus) -> None:
        errors = JobStateMachine.validate_transition(job, target)
        if errors:
            raise StateError("; ".join(errors))
        self._apply_status(job, target)

    def _apply_status(self, job: Job, status: JobStatus) -> None:
        """Set status and keep the live active-job counter in step."""
        was_active = job.status in ACTIVE_STATUSES
        job.status = status
        is_active = status in ACTIVE_STATUSES
        if was_active and not is_active:
            self._active_count -= 1
        elif is_active and not was_active:
            self._active_count += 1

    def _settle(
        self,
        job: Job,
        target: JobStatus,
        recipient: str,
        now: datetime,
        label: str,
    ) -> int:
        """Move a job to a terminal status and pay out everything it holds.

        State is final before the transfer; a failed transfer restores it.
        """
        amount = job.held
        prior_status = job.status
        prior_completed = job.completed_utc

        self._transition(job, target)
        job.held = 0
        job.completed_utc = now

        def _rollback() -> None:
            job.held = amount
            job.completed_utc = prior_completed
            self._apply_status(job, prior_status)

        self._pay(recipient, amount, _rollback, f"{label} for job {job.job_id}")
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

    def _pay(
        self,
        recipient: str,
        amount: int,
        rollback: Callable[[], None],
        label: str,
    ) -> None:
        try:
            ok = self._token.transfer(recipient, amount)
        except Exception:
            rollback()
            raise
        if not ok:
            rollback()
            raise CustodyError(
                f"Token transfer failed: could not {label} ({amount} to {recipient})"
            )

    def _notify_completion(self, freelancer: str, amount: int) -> None:
        """Best-effort reputation update. Never fails the payout."""
        try:
            self._identities.record_job_completed(freelancer, amount)
        except Exception:
            logger.warning(
                "reputation notification failed for %s (%d)", freelancer, amount,
                exc_info=True,
            )

    def _emit(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        """Append an audit event after commit.

        Custody has already moved, so a write failure marks the ledger
        audit-degraded instead of rolling back.
        """
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
