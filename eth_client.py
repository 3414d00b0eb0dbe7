# eth_client.py
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from connection import LedgerConnectionManager
from exceptions import InvalidAddress, NetworkError, NoConnection, TransactionRejected, TransactionReverted
from models import LedgerDocument, RegistrationReceipt, RegistrationRecord, StorageReference
from wallet import TRANSPORT_ERRORS

logger = logging.getLogger(__name__)

_DOCUMENT_STRUCT = [
    {"internalType": "string", "name": "docName", "type": "string"},
    {"internalType": "string", "name": "ipfsAddress", "type": "string"},
    {"internalType": "uint256", "name": "creationDate", "type": "uint256"},
    {"internalType": "enum HatRepository.DocumentType", "name": "docType", "type": "uint8"},
    {"internalType": "bool", "name": "emitida", "type": "bool"},
]

DOCUMENT_REGISTRY_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "_receiverAddress", "type": "address"},
            {"internalType": "string", "name": "_docName", "type": "string"},
            {"internalType": "string", "name": "_description", "type": "string"},
            {"internalType": "string", "name": "_ipfsAddress", "type": "string"},
            {"internalType": "enum HatRepository.DocumentType", "name": "_docType", "type": "uint8"},
        ],
        "name": "registerDocument",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "receiverAddress", "type": "address"},
            {"indexed": False, "internalType": "string", "name": "docName", "type": "string"},
            {"indexed": True, "internalType": "enum HatRepository.DocumentType", "name": "docType", "type": "uint8"},
        ],
        "name": "RegisteredDocument",
        "type": "event",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "_receiverAddress", "type": "address"},
            {"internalType": "string", "name": "_docName", "type": "string"},
        ],
        "name": "getBadgePorTitulo",
        "outputs": [
            {
                "components": _DOCUMENT_STRUCT,
                "internalType": "struct HatRepository.Document",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "_receiverAddress", "type": "address"}],
        "name": "getContagemDeBadges",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "_receiverAddress", "type": "address"}],
        "name": "getTitulosDasBadgesDoUsuario",
        "outputs": [{"internalType": "string[]", "name": "", "type": "string[]"}],
        "stateMutability": "view",
        "type": "function",
    },
]

READ_ERRORS = (Web3Exception, *TRANSPORT_ERRORS)


def load_abi(abi_path: str | Path) -> list:
    """ABI 配列そのもの、または Hardhat/Truffle の artifact（"abi" キー）を読む。"""
    obj = json.loads(Path(abi_path).read_text(encoding="utf-8"))
    return obj["abi"] if isinstance(obj, dict) and "abi" in obj else obj


def _checksum(address: str) -> str:
    addr = (address or "").strip()
    if not addr or not AsyncWeb3.is_address(addr):
        raise InvalidAddress(f"not an address: {address!r}")
    return AsyncWeb3.to_checksum_address(addr)


def _hex(value: Any) -> str:
    h = value.hex() if hasattr(value, "hex") else str(value)
    return h if h.startswith("0x") else "0x" + h


class ContractBinding:
    """デプロイ済みコントラクト 1 つへのハンドル。読み取り結果はキャッシュしない。"""

    def __init__(self, connection: LedgerConnectionManager, address: str, abi: list, receipt_timeout: float):
        self._connection = connection
        self.address = address
        self._contract = connection.w3.eth.contract(address=address, abi=abi)
        self._receipt_timeout = receipt_timeout

    @property
    def contract(self):
        return self._contract

    async def submit_registration(self, record: RegistrationRecord, from_account: str) -> RegistrationReceipt:
        """
        Solidity: registerDocument(address receiver, string docName, string description,
                                   string ipfsAddress, uint8 docType)

        署名はウォレットに任せ、ブロックに取り込まれるまで待つ。
        """
        wallet = self._connection.wallet
        if wallet is None or not from_account:
            raise NoConnection("no account to sign with")

        w3 = self._connection.w3
        func = self._contract.functions.registerDocument(
            _checksum(record.receiver),
            record.name,
            record.description,
            record.reference.cid,
            int(record.doc_type),
        )

        try:
            tx = await func.build_transaction({"from": from_account})
            tx_hash = await wallet.send_transaction(w3, tx)
            logger.info("registerDocument sent: tx=%s from=%s", _hex(tx_hash), from_account)
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except (TransactionRejected, NoConnection):
            raise
        except ContractLogicError as ex:
            reason = getattr(ex, "message", None) or str(ex)
            raise TransactionReverted(reason) from ex
        except TimeExhausted as ex:
            raise NetworkError("timed out waiting for the receipt") from ex
        except (*READ_ERRORS, asyncio.TimeoutError) as ex:
            logger.warning("registerDocument failed before reaching the ledger: %s", ex)
            raise NetworkError(f"{type(ex).__name__}: {ex}") from ex

        if receipt.get("status", 1) == 0:
            raise TransactionReverted("execution reverted")

        return RegistrationReceipt(
            tx_hash=_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt.get("gasUsed", 0)),
            from_account=from_account,
        )

    async def count_documents(self, owner: str) -> int:
        try:
            count = await self._contract.functions.getContagemDeBadges(_checksum(owner)).call()
        except READ_ERRORS as ex:
            raise NetworkError(f"getContagemDeBadges failed: {type(ex).__name__}") from ex
        logger.debug("getContagemDeBadges(%s) -> %s", owner, count)
        return int(count)

    async def list_titles(self, owner: str) -> list[str]:
        try:
            titles = await self._contract.functions.getTitulosDasBadgesDoUsuario(_checksum(owner)).call()
        except READ_ERRORS as ex:
            raise NetworkError(f"getTitulosDasBadgesDoUsuario failed: {type(ex).__name__}") from ex
        logger.debug("getTitulosDasBadgesDoUsuario(%s) -> %d titles", owner, len(titles))
        return list(titles)

    async def get_document(self, owner: str, title: str) -> LedgerDocument:
        try:
            doc_name, ipfs_address, creation_date, doc_type, issued = (
                await self._contract.functions.getBadgePorTitulo(_checksum(owner), title).call()
            )
        except READ_ERRORS as ex:
            raise NetworkError(f"getBadgePorTitulo failed: {type(ex).__name__}") from ex

        return LedgerDocument(
            name=doc_name,
            reference=StorageReference(cid=ipfs_address, name=doc_name),
            created_at=datetime.fromtimestamp(int(creation_date), tz=timezone.utc),
            doc_type=int(doc_type),
            issued=bool(issued),
        )

    async def registration_history(
        self, receiver: Optional[str] = None, from_block: int = 0, to_block="latest"
    ) -> list[dict]:
        """
        RegisteredDocument イベントを走査して一覧にする（新しい順）。
        """
        filters = {"receiverAddress": _checksum(receiver)} if receiver else None
        try:
            logs = await self._contract.events.RegisteredDocument().get_logs(
                from_block=from_block, to_block=to_block, argument_filters=filters
            )
        except READ_ERRORS as ex:
            raise NetworkError(f"failed to fetch logs: {type(ex).__name__}") from ex
        logger.debug("RegisteredDocument logs from block %s: %d", from_block, len(logs))

        records = []
        for log in logs:
            args = log["args"]
            records.append(
                {
                    "receiver": args.get("receiverAddress"),
                    "docName": args.get("docName"),
                    "docType": int(args.get("docType", 0)),
                    "blockNumber": log.get("blockNumber"),
                    "txHash": _hex(log.get("transactionHash")),
                    "logIndex": log.get("logIndex", 0),
                }
            )
        records.sort(key=lambda r: (r["blockNumber"] or 0, r["logIndex"] or 0), reverse=True)
        for r in records:
            r.pop("logIndex", None)
        return records


class EthereumClient:
    """
    ウォレット接続の上にコントラクトのバインドを作るゲートウェイ。

    必要な設定:
      - ETH_RPC_URL（LedgerConnectionManager 側）
      - ETH_CONTRACT_ADDRESS / ETH_CONTRACT_ABI_PATH（任意）
    """

    def __init__(
        self,
        connection: LedgerConnectionManager,
        abi: Optional[list] = None,
        receipt_timeout: float = 120.0,
    ):
        self._connection = connection
        self._abi = abi or DOCUMENT_REGISTRY_ABI
        self._receipt_timeout = receipt_timeout

    def bind(self, contract_address: str) -> ContractBinding:
        address = _checksum(contract_address)
        if not self._connection.is_connected:
            raise NoConnection("connect a wallet before binding the contract")
        logger.info("Bound contract at %s", address)
        return ContractBinding(self._connection, address, self._abi, self._receipt_timeout)
