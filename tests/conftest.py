import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from hexbytes import HexBytes

from connection import LedgerConnectionManager
from eth_client import ContractBinding, EthereumClient
from ipfs_client import PinataClient
from models import RegistrationForm, RegistrationReceipt, SelectedFile, StorageReference
from registrar import DocumentRegistrar
from wallet import WalletProvider

CONTRACT_ADDRESS = "0x" + "c0" * 20
RECEIVER = "0xABC0000000000000000000000000000000000001"


class FakeWallet(WalletProvider):
    def __init__(self, accounts: list[str] | None = None) -> None:
        super().__init__()
        self.accounts = accounts if accounts is not None else ["0x1"]
        self.sent: list[dict] = []

    async def request_accounts(self) -> list[str]:
        self._notify(self.accounts)
        return list(self.accounts)

    def push(self, accounts: list[str]) -> None:
        self.accounts = accounts
        self._notify(accounts)

    async def send_transaction(self, w3: Any, tx: dict[str, Any]) -> HexBytes:
        self.sent.append(tx)
        return HexBytes("0x" + "ab" * 32)


def run(coro):
    return asyncio.run(coro)


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition never became true")


def make_receipt(account: str = "0x1") -> RegistrationReceipt:
    return RegistrationReceipt(tx_hash="0x" + "ab" * 32, block_number=7, gas_used=21000, from_account=account)


@pytest.fixture()
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture()
def connection(wallet: FakeWallet) -> LedgerConnectionManager:
    return LedgerConnectionManager(MagicMock(), wallet)


@pytest.fixture()
def storage() -> MagicMock:
    storage = MagicMock(spec=PinataClient)
    storage.publish.return_value = StorageReference(cid="cid-123")
    storage.fetch.return_value = (b"hello", "text/plain")
    return storage


@pytest.fixture()
def binding() -> MagicMock:
    binding = MagicMock(spec=ContractBinding)
    binding.address = CONTRACT_ADDRESS
    binding.submit_registration = AsyncMock(return_value=make_receipt())
    return binding


@pytest.fixture()
def eth_client(binding: MagicMock) -> MagicMock:
    client = MagicMock(spec=EthereumClient)
    client.bind.return_value = binding
    return client


@pytest.fixture()
def registrar(storage, eth_client, connection) -> DocumentRegistrar:
    return DocumentRegistrar(storage, eth_client, connection, contract_address=CONTRACT_ADDRESS)


@pytest.fixture()
def sample_file() -> SelectedFile:
    return SelectedFile(name="record.pdf", media_type="application/pdf", data=b"x" * 10240)


@pytest.fixture()
def complete_form() -> RegistrationForm:
    return RegistrationForm(receiver=RECEIVER, name="Vaccine Record", description="2nd dose", doc_type=2)
