"""ERC-20 token mover — custody backed by a real token contract on an EVM chain.

The custodian is the account whose private key signs every transaction.
Pulling funds in is an ERC-20 ``transferFrom`` (the sender must have
approved the custodian beforehand). Paying out is a plain ``transfer``
from the custodian's own balance.

A transaction that reverts (receipt status 0) is reported as False so the
calling component aborts and rolls back its in-memory state. RPC errors
propagate unchanged.

Configuration is read from a ``.env`` file:
    GIGLEDGER_RPC_URL, GIGLEDGER_TOKEN_ADDRESS, GIGLEDGER_PRIVATE_KEY,
    GIGLEDGER_CHAIN_ID (optional, default 11155111 = Sepolia)

The job ledger and escrow vault hold separate custody, so pair_from_env()
signs for each with its own key: GIGLEDGER_LEDGER_PRIVATE_KEY and
GIGLEDGER_VAULT_PRIVATE_KEY.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

from gigledger.custody.token import check_amount

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "transfer",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "transferFrom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class Erc20TokenMover:
    """TokenMover over an ERC-20 contract.

    Usage:
        mover = Erc20TokenMover.from_env(Path(".env"))
        ledger = JobLedger(..., token=mover, ...)
    """

    def __init__(
        self,
        w3: Any,
        token_address: str,
        private_key: str,
        chain_id: int = 11155111,  # Sepolia
        gas: int = 100_000,
        receipt_timeout: int = 300,
    ) -> None:
        from eth_account import Account
        from web3 import Web3

        self._w3 = w3
        self._account = Account.from_key(private_key)
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )
        self._chain_id = chain_id
        self._gas = gas
        self._receipt_timeout = receipt_timeout

    @classmethod
    def from_env(
        cls,
        env_path: Optional[Path] = None,
        key_var: str = "GIGLEDGER_PRIVATE_KEY",
    ) -> Erc20TokenMover:
        """Build a mover from GIGLEDGER_* variables (loaded from .env if given).

        key_var names the variable holding the custodian's private key.
        """
        from dotenv import load_dotenv
        from web3 import HTTPProvider, Web3

        if env_path is not None:
            load_dotenv(env_path)
        rpc_url = os.getenv("GIGLEDGER_RPC_URL")
        token_address = os.getenv("GIGLEDGER_TOKEN_ADDRESS")
        private_key = os.getenv(key_var)
        missing = [
            name for name, value in (
                ("GIGLEDGER_RPC_URL", rpc_url),
                ("GIGLEDGER_TOKEN_ADDRESS", token_address),
                (key_var, private_key),
            ) if not value
        ]
        if missing:
            raise ValueError(f"Missing token mover settings: {', '.join(missing)}")
        chain_id = int(os.getenv("GIGLEDGER_CHAIN_ID", "11155111"))
        return cls(
            Web3(HTTPProvider(rpc_url)),
            token_address,
            private_key,
            chain_id=chain_id,
        )

    @classmethod
    def pair_from_env(
        cls, env_path: Optional[Path] = None,
    ) -> tuple[Erc20TokenMover, Erc20TokenMover]:
        """Build (ledger mover, vault mover), each signing with its own key."""
        ledger = cls.from_env(env_path, key_var="GIGLEDGER_LEDGER_PRIVATE_KEY")
        vault = cls.from_env(env_path, key_var="GIGLEDGER_VAULT_PRIVATE_KEY")
        if ledger.custodian == vault.custodian:
            raise ValueError(
                f"Job ledger and escrow vault must use distinct custody accounts, "
                f"both resolve to {ledger.custodian}"
            )
        return ledger, vault

    @property
    def custodian(self) -> str:
        return self._account.address

    def transfer_from(self, sender: str, recipient: str, amount: int) -> bool:
        check_amount(amount)
        call = self._contract.functions.transferFrom(
            self._checksum(sender), self._checksum(recipient), amount,
        )
        return self._send(call, f"transferFrom {sender} -> {recipient} ({amount})")

    def transfer(self, recipient: str, amount: int) -> bool:
        check_amount(amount)
        call = self._contract.functions.transfer(self._checksum(recipient), amount)
        return self._send(call, f"transfer -> {recipient} ({amount})")

    def balance_of(self, account: str) -> int:
        return int(self._contract.functions.balanceOf(self._checksum(account)).call())

    def _send(self, call: Any, label: str) -> bool:
        """Sign, send and await one contract call. True iff it did not revert."""
        nonce = self._w3.eth.get_transaction_count(self._account.address)
        tx = call.build_transaction({
            "from": self._account.address,
            "nonce": nonce,
            "chainId": self._chain_id,
            "gas": self._gas,
        })
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("sent %s: %s", label, tx_hash.hex())

        receipt = self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._receipt_timeout,
        )
        if receipt.status != 1:
            logger.warning("token call reverted in block %s: %s", receipt.blockNumber, label)
            return False
        logger.info("confirmed in block %s: %s", receipt.blockNumber, label)
        return True

    @staticmethod
    def _checksum(address: str) -> str:
        from web3 import Web3

        return Web3.to_checksum_address(address)
