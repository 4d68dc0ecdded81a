"""Escrow — the independent, manager-controlled custody pool."""

from gigledger.escrow.vault import EscrowVault

__all__ = ["EscrowVault"]
