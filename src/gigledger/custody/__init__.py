"""Custody subsystem — token movers that hold and move value for the ledgers.

Erc20TokenMover is not imported here; it pulls in web3 lazily and is only
needed for on-chain operation.
"""

from gigledger.custody.token import BookTokenMover, TokenBook, TokenMover

__all__ = ["BookTokenMover", "TokenBook", "TokenMover"]
