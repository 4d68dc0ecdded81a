"""Token mover abstraction — the only path by which custody changes hands.

The job ledger and escrow vault never touch balances directly. They hold
a TokenMover bound to their own custody account and call transfer_from to
pull funds in and transfer to pay them out. A mover reports failure by
returning False; the calling component then aborts and rolls back.

TokenBook is the in-memory fungible ledger used for local operation and
tests: balances plus ERC-20 style allowances, with bound movers handed to
each custodian.
"""

from __future__ import annotations

import logging
from typing import Dict, Protocol, Tuple, runtime_checkable

from gigledger.errors import AmountError

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenMover(Protocol):
    """Atomic debit/credit of a fungible unit on behalf of one custodian.

    Adding a new backend = implement this Protocol. Zero changes to the
    job ledger or escrow vault.
    """

    @property
    def custodian(self) -> str:
        """The account this mover acts for (the spender / payer)."""
        ...

    def transfer_from(self, sender: str, recipient: str, amount: int) -> bool:
        """Move amount from sender to recipient using custodian's allowance."""
        ...

    def transfer(self, recipient: str, amount: int) -> bool:
        """Move amount from the custodian's own balance to recipient."""
        ...

    def balance_of(self, account: str) -> int:
        ...


def check_amount(amount: int, what: str = "Amount") -> int:
    """Validate a token amount in base units. bool is rejected explicitly."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise AmountError(f"{what} must be an integer number of base units, got {amount!r}")
    if amount < 0:
        raise AmountError(f"{what} must not be negative, got {amount}")
    return amount


class TokenBook:
    """In-memory fungible token ledger.

    Usage:
        book = TokenBook()
        book.mint("alice", 1_000)
        book.approve("alice", "job-ledger", 500)
        mover = book.mover_for("job-ledger")
        mover.transfer_from("alice", "job-ledger", 500)
    """

    def __init__(self) -> None:
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}

    def mint(self, account: str, amount: int) -> None:
        check_amount(amount)
        self._balances[account] = self._balances.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def total_supply(self) -> int:
        return sum(self._balances.values())

    def approve(self, owner: str, spender: str, amount: int) -> None:
        """Set (not add to) the allowance owner grants to spender."""
        check_amount(amount)
        self._allowances[(owner, spender)] = amount

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def move(self, sender: str, recipient: str, amount: int) -> bool:
        """Move funds between accounts. Returns False on insufficient balance."""
        check_amount(amount)
        if self.balance_of(sender) < amount:
            logger.debug(
                "transfer refused: %s holds %d, needs %d",
                sender, self.balance_of(sender), amount,
            )
            return False
        self._balances[sender] = self.balance_of(sender) - amount
        self._balances[recipient] = self.balance_of(recipient) + amount
        return True

    def spend_allowance(
        self, owner: str, spender: str, recipient: str, amount: int,
    ) -> bool:
        """Move owner's funds to recipient against spender's allowance.

        Returns False (nothing changed) if allowance or balance is short.
        """
        check_amount(amount)
        if self.allowance(owner, spender) < amount:
            logger.debug(
                "transfer_from refused: %s allows %s only %d, needs %d",
                owner, spender, self.allowance(owner, spender), amount,
            )
            return False
        if not self.move(owner, recipient, amount):
            return False
        self._allowances[(owner, spender)] -= amount
        return True

    def mover_for(self, custodian: str) -> BookTokenMover:
        """Return a TokenMover acting on behalf of custodian."""
        return BookTokenMover(self, custodian)

    def snapshot(self) -> dict:
        return {
            "balances": dict(self._balances),
            "allowances": [
                {"owner": owner, "spender": spender, "amount": amount}
                for (owner, spender), amount in sorted(self._allowances.items())
            ],
        }

    def restore(self, data: dict) -> None:
        self._balances = {k: int(v) for k, v in data.get("balances", {}).items()}
        self._allowances = {
            (a["owner"], a["spender"]): int(a["amount"])
            for a in data.get("allowances", [])
        }


class BookTokenMover:
    """TokenMover view of a TokenBook bound to one custodian account."""

    def __init__(self, book: TokenBook, custodian: str) -> None:
        self._book = book
        self._custodian = custodian

    @property
    def custodian(self) -> str:
        return self._custodian

    def transfer_from(self, sender: str, recipient: str, amount: int) -> bool:
        return self._book.spend_allowance(sender, self._custodian, recipient, amount)

    def transfer(self, recipient: str, amount: int) -> bool:
        return self._book.move(self._custodian, recipient, amount)

    def balance_of(self, account: str) -> int:
        return self._book.balance_of(account)
