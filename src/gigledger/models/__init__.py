"""Core data models for gigledger."""

from gigledger.models.escrow import (
    ESCROW_TRANSITIONS,
    EscrowRecord,
    EscrowStatus,
)
from gigledger.models.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ESCROW_TRANSITIONS",
    "EscrowRecord",
    "EscrowStatus",
    "Job",
    "JobStatus",
    "TERMINAL_STATUSES",
]
