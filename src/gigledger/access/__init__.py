"""Access control — roles, pause switch, reentrancy guard."""

from gigledger.access.guards import (
    NonReentrantGuard,
    PauseSwitch,
    non_reentrant,
    when_not_paused,
)
from gigledger.access.roles import Role, RoleRegistry

__all__ = [
    "NonReentrantGuard",
    "PauseSwitch",
    "Role",
    "RoleRegistry",
    "non_reentrant",
    "when_not_paused",
]
