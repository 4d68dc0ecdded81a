"""Error taxonomy for custody and dispute operations.

Every failure is fatal to the single operation that raised it and leaves
no partial mutation behind. Callers re-issue after fixing the condition;
nothing retries automatically.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for every rejected settlement operation."""

    kind = "settlement"


class AuthorizationError(SettlementError):
    """Caller lacks the required role or identity relationship."""

    kind = "authorization"


class StateError(SettlementError):
    """Entity missing, already exists, or in the wrong status."""

    kind = "state"


class PausedError(StateError):
    """A state-changing entry point was invoked while paused."""

    kind = "paused"


class ReentrancyError(StateError):
    """A guarded entry point was re-entered before the outer call finished."""

    kind = "reentrancy"


class TemporalError(SettlementError):
    """Deadline already passed, or a new deadline is out of bounds."""

    kind = "temporal"


class AmountError(SettlementError):
    """Amount below minimum, zero top-up, invalid winner or blank input."""

    kind = "value"


class CustodyError(SettlementError):
    """The underlying token transfer reported failure."""

    kind = "custody"
