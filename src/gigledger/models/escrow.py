"""Escrow models — per-job custody records held by the escrow vault.

Records are keyed by an externally supplied job id that may or may not
match a job ledger id. The vault never consults the job ledger.

Invariants:
- balance is zero in RELEASED and REFUNDED, positive in ACTIVE/DISPUTED
- is_released is True iff status is RELEASED
- RELEASED and REFUNDED are terminal
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional


class EscrowStatus(str, enum.Enum):
    """Lifecycle state of an escrow record.

    State machine:
        ACTIVE → RELEASED
        ACTIVE → REFUNDED
        ACTIVE → DISPUTED → RELEASED
        ACTIVE → DISPUTED → REFUNDED
    """
    ACTIVE = "active"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Valid escrow state transitions
ESCROW_TRANSITIONS: Dict[EscrowStatus, frozenset] = {
    EscrowStatus.ACTIVE: frozenset({
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.DISPUTED,
    }),
    EscrowStatus.DISPUTED: frozenset({
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
    }),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}

FUNDABLE_STATUSES = frozenset({EscrowStatus.ACTIVE, EscrowStatus.DISPUTED})


@dataclass
class EscrowRecord:
    """Funds held in trust for one job between a client and a freelancer.

    Mutable — all status changes go through transition_to().
    """
    job_id: int
    client: str
    freelancer: str
    balance: int
    status: EscrowStatus = EscrowStatus.ACTIVE
    is_released: bool = False
    created_utc: Optional[datetime] = None
    disputed_utc: Optional[datetime] = None
    settled_utc: Optional[datetime] = None

    def can_transition_to(self, new_status: EscrowStatus) -> bool:
        return new_status in ESCROW_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, new_status: EscrowStatus) -> None:
        """Transition to a new status, validating the transition is legal.

        Raises ValueError; the vault checks can_transition_to() first and
        raises its own StateError, so this is the last line only.
        """
        if not self.can_transition_to(new_status):
            allowed = ESCROW_TRANSITIONS.get(self.status, frozenset())
            raise ValueError(
                f"Invalid escrow transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(sorted(s.value for s in allowed)) or 'none'}"
            )
        self.status = new_status
        self.is_released = new_status == EscrowStatus.RELEASED
