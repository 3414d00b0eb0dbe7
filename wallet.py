# wallet.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import aiohttp
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from exceptions import NetworkError, TransactionRejected, UserRejected, WalletUnavailable

logger = logging.getLogger(__name__)

AccountsListener = Callable[[list[str]], None]

# EIP-1193 / JSON-RPC error codes
USER_REJECTED_CODE = 4001
UNAUTHORIZED_CODE = 4100
METHOD_NOT_FOUND_CODE = -32601

TRANSPORT_ERRORS = (aiohttp.ClientError, OSError, TimeoutError)


def rpc_error_code(exc: Exception) -> Optional[int]:
    """
    web3 v7 は Web3RPCError.rpc_response に、v6 以前は args[0] に dict で
    エラーが入っているので両方見る。
    """
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict):
        error = response.get("error")
        if isinstance(error, dict):
            return error.get("code")
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("code")
    return None


class WalletProvider(ABC):
    """Account access and transaction signing, as a browser wallet would offer them."""

    def __init__(self) -> None:
        self._listeners: list[AccountsListener] = []
        self._accounts: list[str] = []

    def on_accounts_changed(self, listener: AccountsListener) -> None:
        self._listeners.append(listener)

    def _notify(self, accounts: list[str]) -> None:
        self._accounts = list(accounts)
        for listener in list(self._listeners):
            listener(list(accounts))

    async def refresh(self) -> list[str]:
        """Re-read the account list; listeners hear only a change."""
        return list(self._accounts)

    def disconnect(self) -> None:
        self._notify([])

    @abstractmethod
    async def request_accounts(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def send_transaction(self, w3: AsyncWeb3, tx: dict[str, Any]) -> HexBytes:
        raise NotImplementedError


class LocalKeyWallet(WalletProvider):
    """
    秘密鍵をプロセス内に持ち、ローカルで署名するウォレット。

    ETH_PRIVATE_KEY（.env でもOK）から作る想定。
    """

    def __init__(self, private_key: str, gas_limit_min: int = 300000) -> None:
        super().__init__()
        if not private_key:
            raise WalletUnavailable("private key is empty")
        self._acct = Account.from_key(private_key)
        self._gas_limit_min = gas_limit_min
        self._unlocked = False

    @property
    def address(self) -> str:
        return self._acct.address

    async def request_accounts(self) -> list[str]:
        self._unlocked = True
        accounts = [self._acct.address]
        self._notify(accounts)
        return accounts

    def disconnect(self) -> None:
        self._unlocked = False
        super().disconnect()

    @staticmethod
    def _looks_like_nonce_too_low(exc: Exception) -> bool:
        return "nonce too low" in str(exc).lower()

    async def send_transaction(self, w3: AsyncWeb3, tx: dict[str, Any]) -> HexBytes:
        if not self._unlocked:
            raise TransactionRejected("wallet is locked")
        if tx.get("from") and AsyncWeb3.to_checksum_address(tx["from"]) != self._acct.address:
            raise TransactionRejected(f"wallet cannot sign for {tx['from']}")

        tx = dict(tx)
        tx.setdefault("chainId", await w3.eth.chain_id)
        tx.setdefault("nonce", await w3.eth.get_transaction_count(self._acct.address, "pending"))
        if "gas" not in tx:
            estimated = await w3.eth.estimate_gas(tx)
            tx["gas"] = max(int(estimated * 1.2), self._gas_limit_min)
        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = await w3.eth.gas_price

        attempts = 0
        while True:
            attempts += 1
            signed = self._acct.sign_transaction(tx)
            try:
                return await w3.eth.send_raw_transaction(signed.raw_transaction)
            except Web3Exception as ex:
                if self._looks_like_nonce_too_low(ex) and attempts < 3:
                    tx["nonce"] = await w3.eth.get_transaction_count(self._acct.address, "pending")
                    continue
                raise


class NodeWallet(WalletProvider):
    """
    ノード側（Hardhat / Anvil / ウォレットの RPC）が管理するアカウントを使う。

    アカウントの変更はプッシュされないので refresh() で eth_accounts を見に行く。
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        super().__init__()
        self._w3 = w3

    async def _call(self, method: str) -> list[str]:
        return list(await self._w3.manager.coro_request(method, []))

    async def request_accounts(self) -> list[str]:
        try:
            try:
                accounts = await self._call("eth_requestAccounts")
            except Web3Exception as ex:
                if rpc_error_code(ex) != METHOD_NOT_FOUND_CODE:
                    raise
                # 古いノードは eth_requestAccounts を持たない
                accounts = await self._call("eth_accounts")
        except Web3Exception as ex:
            if rpc_error_code(ex) in (USER_REJECTED_CODE, UNAUTHORIZED_CODE):
                raise UserRejected("account access was denied") from ex
            raise WalletUnavailable(f"wallet did not answer: {type(ex).__name__}") from ex
        except TRANSPORT_ERRORS as ex:
            raise WalletUnavailable("wallet node is unreachable") from ex

        if not accounts:
            raise WalletUnavailable("wallet exposes no accounts")
        self._notify(accounts)
        return accounts

    async def refresh(self) -> list[str]:
        try:
            accounts = await self._call("eth_accounts")
        except (Web3Exception, *TRANSPORT_ERRORS) as ex:
            raise NetworkError("could not read accounts") from ex
        if accounts != self._accounts:
            logger.info("Wallet accounts changed outside this client: %s", accounts)
            self._notify(accounts)
        return accounts

    async def send_transaction(self, w3: AsyncWeb3, tx: dict[str, Any]) -> HexBytes:
        try:
            return await w3.eth.send_transaction(tx)
        except Web3Exception as ex:
            if rpc_error_code(ex) in (USER_REJECTED_CODE, UNAUTHORIZED_CODE):
                raise TransactionRejected("signature was declined") from ex
            raise
