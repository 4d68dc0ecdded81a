"""Job state machine — enforces valid lifecycle transitions.

Job lifecycle:
    POSTED → IN_PROGRESS → COMPLETED
    POSTED → CANCELLED                (only before anyone is hired)
    POSTED | IN_PROGRESS → DISPUTED → COMPLETED

State semantics:
- POSTED: funded, accepting proposals.
- IN_PROGRESS: freelancer hired, budget still held.
- DISPUTED: frozen until a job manager resolves it. Never reverts to active.
- COMPLETED: terminal — budget paid to the freelancer or dispute winner.
- CANCELLED: terminal — budget refunded to the client.

Fail-closed: any transition not listed is rejected.
"""

from __future__ import annotations

from gigledger.models.job import Job, JobStatus, TERMINAL_STATUSES


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.POSTED: {
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELLED,
        JobStatus.DISPUTED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETED,
        JobStatus.DISPUTED,
    },
    JobStatus.DISPUTED: {JobStatus.COMPLETED},
    # Terminal states have no outgoing transitions
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


class JobStateMachine:
    """Validates and applies job status transitions.

    Pure computation. Guards on roles, deadlines and custody live in the
    ledger; this class only knows which edges exist.
    """

    @staticmethod
    def validate_transition(job: Job, target: JobStatus) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = job.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid job transition for job {job.job_id}: "
                f"{current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(job: Job, target: JobStatus) -> list[str]:
        """Validate and apply a transition. Mutates job.status on success."""
        errors = JobStateMachine.validate_transition(job, target)
        if errors:
            return errors
        job.status = target
        return []

    @staticmethod
    def is_terminal(status: JobStatus) -> bool:
        return status in TERMINAL_STATUSES

    @staticmethod
    def valid_transitions(status: JobStatus) -> set[JobStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(status, set()))
