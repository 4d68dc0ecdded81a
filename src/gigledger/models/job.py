"""Job models — the records owned and custodied by the job ledger.

All monetary values are integers in token base units. No floats in finance.

Job lifecycle:
    POSTED → IN_PROGRESS → COMPLETED
    POSTED → CANCELLED
    POSTED | IN_PROGRESS → DISPUTED → COMPLETED

budget is the total ever funded for the job and is kept after payout.
held is the live custody; it drops to zero exactly once, at the
transition into COMPLETED or CANCELLED.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class JobStatus(str, enum.Enum):
    """Lifecycle state of a job."""
    POSTED = "posted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


ACTIVE_STATUSES = frozenset({JobStatus.POSTED, JobStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


@dataclass
class Job:
    """A funded job posted by a client.

    Mutable — the ledger drives status transitions and custody changes.
    job_id, client and created_utc never change after creation.
    """
    job_id: int
    client: str
    ipfs_ref: str
    budget: int
    held: int
    deadline: datetime
    status: JobStatus = JobStatus.POSTED
    hired_freelancer: Optional[str] = None
    created_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    disputed_utc: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_party(self, identity: str) -> bool:
        """Client or hired freelancer."""
        return identity == self.client or (
            self.hired_freelancer is not None and identity == self.hired_freelancer
        )
