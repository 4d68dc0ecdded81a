"""Identity — registered clients and freelancers."""

from gigledger.identity.registry import (
    IdentityRegistry,
    UserKind,
    UserProfile,
    UserRegistry,
)

__all__ = ["IdentityRegistry", "UserKind", "UserProfile", "UserRegistry"]
