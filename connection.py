# connection.py
import logging
from typing import Optional

from web3 import AsyncWeb3

from exceptions import WalletUnavailable
from observable import Broadcast
from wallet import WalletProvider

logger = logging.getLogger(__name__)


class LedgerConnectionManager:
    """
    ウォレット接続を 1 プロセスに 1 つだけ持つ。

    アカウント一覧はウォレットから通知されるたびに丸ごと置き換え、
    accounts_changed で全リスナーに順番通り流す（空リスト = 切断）。
    """

    def __init__(self, w3: AsyncWeb3, wallet: Optional[WalletProvider]):
        self._w3 = w3
        self._wallet = wallet
        self._accounts: list[str] = []
        self.accounts_changed: Broadcast[list[str]] = Broadcast()

        if wallet is not None:
            wallet.on_accounts_changed(self._handle_accounts_changed)

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    @property
    def wallet(self) -> Optional[WalletProvider]:
        return self._wallet

    @property
    def accounts(self) -> list[str]:
        return list(self._accounts)

    @property
    def active_account(self) -> Optional[str]:
        return self._accounts[0] if self._accounts else None

    @property
    def is_connected(self) -> bool:
        return bool(self._accounts)

    def _handle_accounts_changed(self, accounts: list[str]) -> None:
        self._accounts = list(accounts)
        logger.info("Accounts changed: active=%s (%d total)", self.active_account, len(self._accounts))
        self.accounts_changed.publish(list(self._accounts))

    async def request_connection(self) -> list[str]:
        if self._wallet is None:
            raise WalletUnavailable("no wallet provider configured")
        accounts = await self._wallet.request_accounts()
        # ウォレットが通知しなかった場合も、返ってきた一覧を正とする
        if accounts != self._accounts:
            self._handle_accounts_changed(accounts)
        return list(accounts)

    async def refresh(self) -> list[str]:
        """
        ウォレット側で切り替えられたアカウントを取り込む。未接続なら何もしない
        （接続の許可は request_connection でだけ取る）。
        """
        if self._wallet is None or not self._accounts:
            return self.accounts
        await self._wallet.refresh()
        return self.accounts

    def disconnect(self) -> None:
        if self._wallet is None:
            self._handle_accounts_changed([])
            return
        self._wallet.disconnect()
