"""User registry — who may act as client or freelancer, and their track record.

The custody components consume this only through the IdentityRegistry
Protocol: two capability checks plus a completion notification that
feeds the freelancer's reputation. UserRegistry is the in-memory
implementation used by the service facade and tests.

Invariants enforced:
- An identity registers once, as exactly one kind.
- Blank identities are rejected.
- Only freelancers accumulate completed-job counts and earnings.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from gigledger.errors import AmountError, StateError

logger = logging.getLogger(__name__)


@runtime_checkable
class IdentityRegistry(Protocol):
    """Narrow interface consumed by the job ledger's guards."""

    def is_registered(self, identity: str) -> bool:
        ...

    def is_freelancer(self, identity: str) -> bool:
        ...

    def record_job_completed(self, freelancer: str, amount: int) -> None:
        """Reputation notification after a successful payout."""
        ...


class UserKind(str, enum.Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"


@dataclass
class UserProfile:
    """A registered marketplace participant.

    completed_jobs and total_earned are only updated for freelancers.
    """
    identity: str
    kind: UserKind
    registered_utc: Optional[datetime] = None
    completed_jobs: int = 0
    total_earned: int = 0


class UserRegistry:
    """In-memory IdentityRegistry.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(self) -> None:
        self._users: dict[str, UserProfile] = {}

    def register(
        self,
        identity: str,
        kind: UserKind,
        now: Optional[datetime] = None,
    ) -> UserProfile:
        canonical = identity.strip()
        if not canonical:
            raise AmountError("Cannot register a blank identity")
        if canonical in self._users:
            raise StateError(f"Identity already registered: {canonical}")
        if now is None:
            now = datetime.now(timezone.utc)
        profile = UserProfile(identity=canonical, kind=kind, registered_utc=now)
        self._users[canonical] = profile
        logger.info("registered %s as %s", canonical, kind.value)
        return profile

    def register_client(self, identity: str, now: Optional[datetime] = None) -> UserProfile:
        return self.register(identity, UserKind.CLIENT, now=now)

    def register_freelancer(self, identity: str, now: Optional[datetime] = None) -> UserProfile:
        return self.register(identity, UserKind.FREELANCER, now=now)

    def get(self, identity: str) -> Optional[UserProfile]:
        return self._users.get(identity)

    def is_registered(self, identity: str) -> bool:
        return identity in self._users

    def is_freelancer(self, identity: str) -> bool:
        profile = self._users.get(identity)
        return profile is not None and profile.kind == UserKind.FREELANCER

    def record_job_completed(self, freelancer: str, amount: int) -> None:
        profile = self._users.get(freelancer)
        if profile is None or profile.kind != UserKind.FREELANCER:
            raise StateError(f"Not a registered freelancer: {freelancer}")
        profile.completed_jobs += 1
        profile.total_earned += amount

    def all_users(self) -> list[UserProfile]:
        return list(self._users.values())

    def restore(self, users: list[UserProfile]) -> None:
        self._users = {u.identity: u for u in users}
