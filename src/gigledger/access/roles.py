"""Role registry — the shared capability store consulted by both custody components.

Roles are granted and revoked by ADMIN holders only. Components never
mutate the registry after construction; their constructor performs a single
bootstrap grant so the deploying identity can administer them.

Thread-safety: not thread-safe. Callers serialise execution.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

from gigledger.errors import AuthorizationError, AmountError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    """Privileged capabilities."""
    ADMIN = "admin"
    JOB_MANAGER = "job_manager"
    ESCROW_MANAGER = "escrow_manager"


class RoleRegistry:
    """Mapping of role -> set of identities holding it.

    Usage:
        roles = RoleRegistry()
        roles.bootstrap_grant(Role.ADMIN, "deployer")
        roles.grant_role(Role.ESCROW_MANAGER, "ops", caller="deployer")
        roles.require(Role.ESCROW_MANAGER, "ops")
    """

    def __init__(self) -> None:
        self._members: dict[Role, set[str]] = {role: set() for role in Role}
        self._listeners: list[Callable[[str, Role, str, str], None]] = []

    def has_role(self, role: Role, account: str) -> bool:
        return account in self._members[role]

    def require(self, role: Role, account: str) -> None:
        """Raise AuthorizationError unless account holds role."""
        if not self.has_role(role, account):
            raise AuthorizationError(
                f"{account!r} lacks required role {role.value}"
            )

    def members(self, role: Role) -> list[str]:
        return sorted(self._members[role])

    def bootstrap_grant(self, role: Role, account: str) -> None:
        """Construction-time grant performed by a component for its deployer."""
        account = _clean(account)
        self._members[role].add(account)

    def grant_role(self, role: Role, account: str, caller: str) -> bool:
        """Grant role to account. Returns False if already held."""
        self.require(Role.ADMIN, caller)
        account = _clean(account)
        if account in self._members[role]:
            return False
        self._members[role].add(account)
        logger.info("role %s granted to %s by %s", role.value, account, caller)
        self._notify("granted", role, account, caller)
        return True

    def revoke_role(self, role: Role, account: str, caller: str) -> bool:
        """Revoke role from account. Returns False if it was not held."""
        self.require(Role.ADMIN, caller)
        if account not in self._members[role]:
            return False
        self._members[role].discard(account)
        logger.info("role %s revoked from %s by %s", role.value, account, caller)
        self._notify("revoked", role, account, caller)
        return True

    def renounce_role(self, role: Role, account: str) -> bool:
        """An account gives up one of its own roles."""
        if account not in self._members[role]:
            return False
        self._members[role].discard(account)
        self._notify("revoked", role, account, account)
        return True

    def subscribe(self, listener: Callable[[str, Role, str, str], None]) -> None:
        """Register a callback(action, role, account, caller) for grant/revoke."""
        self._listeners.append(listener)

    def snapshot(self) -> dict[str, list[str]]:
        return {role.value: sorted(members) for role, members in self._members.items()}

    def restore(self, grants: dict[str, list[str]]) -> None:
        """Replace all grants with a persisted snapshot."""
        self._members = {role: set(grants.get(role.value, [])) for role in Role}

    def _notify(self, action: str, role: Role, account: str, caller: str) -> None:
        for listener in self._listeners:
            listener(action, role, account, caller)


def _clean(account: Optional[str]) -> str:
    canonical = (account or "").strip()
    if not canonical:
        raise AmountError("Cannot grant a role to a blank identity")
    return canonical
