"""Tests for the ERC-20 token mover against a fake web3 endpoint."""

import os
import pytest
from pathlib import Path
from types import SimpleNamespace
from typing import Any

from eth_account import Account
from web3 import Web3

from gigledger.custody.erc20 import Erc20TokenMover
from gigledger.custody.token import TokenMover
from gigledger.errors import AmountError


PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
VAULT_KEY = "0x" + "11" * 32
TOKEN = "0x" + "ab" * 20
SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20


class FakeCall:
    def __init__(self, name: str, args: tuple) -> None:
        self.name = name
        self.args = args
        self.params: dict[str, Any] = {}

    def build_transaction(self, params: dict[str, Any]) -> dict[str, Any]:
        self.params = params
        return {
            "to": Web3.to_checksum_address(TOKEN),
            "value": 0,
            "gas": params["gas"],
            "gasPrice": 1_000_000_000,
            "nonce": params["nonce"],
            "chainId": params["chainId"],
            "data": "0x",
        }

    def call(self) -> int:
        return 42


class FakeFunctions:
    def __init__(self) -> None:
        self.calls: list[FakeCall] = []

    def _make(self, name: str, *args: Any) -> FakeCall:
        call = FakeCall(name, args)
        self.calls.append(call)
        return call

    def transfer(self, *args: Any) -> FakeCall:
        return self._make("transfer", *args)

    def transferFrom(self, *args: Any) -> FakeCall:
        return self._make("transferFrom", *args)

    def balanceOf(self, *args: Any) -> FakeCall:
        return self._make("balanceOf", *args)


class FakeEth:
    def __init__(self, status: int = 1) -> None:
        self.status = status
        self.functions = FakeFunctions()
        self.sent: list[bytes] = []
        self.contract_address = ""

    def contract(self, address: str, abi: list) -> Any:
        self.contract_address = address
        return SimpleNamespace(functions=self.functions)

    def get_transaction_count(self, address: str) -> int:
        return 7

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self.sent.append(raw)
        return bytes.fromhex("cd" * 32)

    def wait_for_transaction_receipt(self, tx_hash: bytes, timeout: int) -> Any:
        return SimpleNamespace(status=self.status, blockNumber=123)


def _mover(status: int = 1) -> tuple[Erc20TokenMover, FakeEth]:
    eth = FakeEth(status)
    return Erc20TokenMover(SimpleNamespace(eth=eth), TOKEN, PRIVATE_KEY, chain_id=5), eth


class TestErc20TokenMover:
    def test_custodian_is_signing_account(self) -> None:
        mover, eth = _mover()
        assert mover.custodian == Account.from_key(PRIVATE_KEY).address
        assert eth.contract_address.lower() == TOKEN
        assert isinstance(mover, TokenMover)

    def test_transfer_from_signs_and_sends(self) -> None:
        mover, eth = _mover()
        assert mover.transfer_from(SENDER, mover.custodian, 500) is True
        call = eth.functions.calls[-1]
        assert call.name == "transferFrom"
        assert call.args[0].lower() == SENDER
        assert call.args[2] == 500
        assert call.params["nonce"] == 7
        assert call.params["chainId"] == 5
        assert call.params["from"] == mover.custodian
        assert len(eth.sent) == 1

    def test_transfer(self) -> None:
        mover, eth = _mover()
        assert mover.transfer(RECIPIENT, 9) is True
        assert eth.functions.calls[-1].name == "transfer"

    def test_reverted_receipt_reports_failure(self) -> None:
        mover, _ = _mover(status=0)
        assert mover.transfer(RECIPIENT, 9) is False

    def test_negative_amount_rejected_before_sending(self) -> None:
        mover, eth = _mover()
        with pytest.raises(AmountError):
            mover.transfer(RECIPIENT, -1)
        assert eth.sent == []

    def test_balance_of(self) -> None:
        mover, _ = _mover()
        assert mover.balance_of(RECIPIENT) == 42


def _clean_environ() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if not k.startswith("GIGLEDGER_")}


class TestFromEnv:
    def test_reads_dotenv(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "environ", _clean_environ())
        env_file = tmp_path / ".env"
        env_file.write_text(
            "GIGLEDGER_RPC_URL=http://127.0.0.1:8545\n"
            f"GIGLEDGER_TOKEN_ADDRESS={TOKEN}\n"
            f"GIGLEDGER_PRIVATE_KEY={PRIVATE_KEY}\n"
            "GIGLEDGER_CHAIN_ID=31337\n",
            encoding="utf-8",
        )
        mover = Erc20TokenMover.from_env(env_file)
        assert mover.custodian == Account.from_key(PRIVATE_KEY).address
        assert mover._chain_id == 31337

    def test_missing_settings(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "environ", _clean_environ())
        env_file = tmp_path / ".env"
        env_file.write_text("GIGLEDGER_RPC_URL=http://127.0.0.1:8545\n", encoding="utf-8")
        with pytest.raises(ValueError, match="GIGLEDGER_PRIVATE_KEY"):
            Erc20TokenMover.from_env(env_file)


def _pair_env(tmp_path: Path, ledger_key: str, vault_key: str) -> Path:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "GIGLEDGER_RPC_URL=http://127.0.0.1:8545\n"
        f"GIGLEDGER_TOKEN_ADDRESS={TOKEN}\n"
        f"GIGLEDGER_LEDGER_PRIVATE_KEY={ledger_key}\n"
        f"GIGLEDGER_VAULT_PRIVATE_KEY={vault_key}\n",
        encoding="utf-8",
    )
    return env_file


class TestPairFromEnv:
    def test_separate_custodians(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "environ", _clean_environ())
        ledger, vault = Erc20TokenMover.pair_from_env(_pair_env(tmp_path, PRIVATE_KEY, VAULT_KEY))
        assert ledger.custodian == Account.from_key(PRIVATE_KEY).address
        assert vault.custodian == Account.from_key(VAULT_KEY).address

    def test_shared_key_rejected(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "environ", _clean_environ())
        with pytest.raises(ValueError, match="distinct"):
            Erc20TokenMover.pair_from_env(_pair_env(tmp_path, PRIVATE_KEY, PRIVATE_KEY))

    def test_missing_vault_key(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "environ", _clean_environ())
        env_file = tmp_path / ".env"
        env_file.write_text(
            "GIGLEDGER_RPC_URL=http://127.0.0.1:8545\n"
            f"GIGLEDGER_TOKEN_ADDRESS={TOKEN}\n"
            f"GIGLEDGER_LEDGER_PRIVATE_KEY={PRIVATE_KEY}\n",
            encoding="utf-8",
        )
        with pytest.raises(ValueError, match="GIGLEDGER_VAULT_PRIVATE_KEY"):
            Erc20TokenMover.pair_from_env(env_file)

