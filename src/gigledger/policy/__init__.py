"""Policy — typed access to settlement configuration."""

from gigledger.policy.resolver import LedgerPolicy, PolicyResolver, VaultPolicy

__all__ = ["LedgerPolicy", "PolicyResolver", "VaultPolicy"]
