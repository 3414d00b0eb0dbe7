from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from eth_account import Account
from hexbytes import HexBytes
from web3.exceptions import Web3RPCError

from conftest import run
from exceptions import NetworkError, TransactionRejected, UserRejected, WalletUnavailable
from wallet import LocalKeyWallet, NodeWallet, rpc_error_code

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = Account.from_key(TEST_KEY).address


def _rpc_error(code: int) -> Web3RPCError:
    return Web3RPCError("rpc error", rpc_response={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": "x"}})


def _mock_w3() -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_transaction_count = AsyncMock(return_value=7)
    w3.eth.estimate_gas = AsyncMock(return_value=100000)
    w3.eth.send_raw_transaction = AsyncMock(return_value=HexBytes("0x" + "cd" * 32))

    async def chain_id():
        return 31337

    async def gas_price():
        return 10**9

    type(w3.eth).chain_id = property(lambda _self: chain_id())
    type(w3.eth).gas_price = property(lambda _self: gas_price())
    return w3


class TestRpcErrorCode:
    def test_reads_v7_rpc_response(self) -> None:
        assert rpc_error_code(_rpc_error(4001)) == 4001

    def test_reads_dict_argument(self) -> None:
        assert rpc_error_code(ValueError({"code": -32601, "message": "method not found"})) == -32601

    def test_returns_none_for_plain_errors(self) -> None:
        assert rpc_error_code(RuntimeError("boom")) is None


class TestLocalKeyWallet:
    def test_request_accounts_returns_key_address_and_notifies(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY)
        seen = []
        wallet.on_accounts_changed(seen.append)

        assert run(wallet.request_accounts()) == [TEST_ADDRESS]
        assert seen == [[TEST_ADDRESS]]

    def test_disconnect_reports_empty_list_and_locks(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY)
        seen = []
        wallet.on_accounts_changed(seen.append)
        run(wallet.request_accounts())

        wallet.disconnect()

        assert seen[-1] == []
        assert run(wallet.refresh()) == []
        with pytest.raises(TransactionRejected):
            run(wallet.send_transaction(_mock_w3(), {"from": TEST_ADDRESS}))

    def test_refresh_reports_current_key_without_notifying(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY)
        seen = []
        wallet.on_accounts_changed(seen.append)
        run(wallet.request_accounts())

        assert run(wallet.refresh()) == [TEST_ADDRESS]
        assert seen == [[TEST_ADDRESS]]

    def test_empty_key_is_unavailable(self) -> None:
        with pytest.raises(WalletUnavailable):
            LocalKeyWallet("")

    def test_signs_and_sends_raw_transaction(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY, gas_limit_min=300000)
        run(wallet.request_accounts())
        w3 = _mock_w3()
        tx = {"from": TEST_ADDRESS, "to": "0x" + "11" * 20, "data": "0x", "value": 0}

        tx_hash = run(wallet.send_transaction(w3, tx))

        assert tx_hash == HexBytes("0x" + "cd" * 32)
        w3.eth.send_raw_transaction.assert_awaited_once()
        w3.eth.get_transaction_count.assert_awaited_once_with(TEST_ADDRESS, "pending")

    def test_locked_wallet_refuses_to_sign(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY)
        with pytest.raises(TransactionRejected):
            run(wallet.send_transaction(_mock_w3(), {"from": TEST_ADDRESS}))

    def test_refuses_foreign_sender(self) -> None:
        wallet = LocalKeyWallet(TEST_KEY)
        run(wallet.request_accounts())
        with pytest.raises(TransactionRejected):
            run(wallet.send_transaction(_mock_w3(), {"from": "0x" + "22" * 20}))


class TestNodeWallet:
    def _wallet(self, side_effect) -> NodeWallet:
        w3 = MagicMock()
        w3.manager.coro_request = AsyncMock(side_effect=side_effect)
        return NodeWallet(w3)

    def test_request_accounts(self) -> None:
        wallet = self._wallet([["0xA", "0xB"]])
        seen = []
        wallet.on_accounts_changed(seen.append)

        assert run(wallet.request_accounts()) == ["0xA", "0xB"]
        assert seen == [["0xA", "0xB"]]

    def test_falls_back_to_eth_accounts(self) -> None:
        wallet = self._wallet([_rpc_error(-32601), ["0xA"]])
        assert run(wallet.request_accounts()) == ["0xA"]

    def test_user_rejection(self) -> None:
        wallet = self._wallet(_rpc_error(4001))
        with pytest.raises(UserRejected):
            run(wallet.request_accounts())

    def test_unreachable_node_is_unavailable(self) -> None:
        wallet = self._wallet(aiohttp.ClientConnectionError("refused"))
        with pytest.raises(WalletUnavailable):
            run(wallet.request_accounts())

    def test_no_accounts_is_unavailable(self) -> None:
        wallet = self._wallet([[]])
        with pytest.raises(WalletUnavailable):
            run(wallet.request_accounts())

    def test_refresh_notifies_only_on_change(self) -> None:
        wallet = self._wallet([["0xA"], ["0xA"], ["0xA"], []])
        seen = []
        wallet.on_accounts_changed(seen.append)

        run(wallet.request_accounts())
        run(wallet.refresh())
        run(wallet.refresh())
        run(wallet.refresh())

        assert seen == [["0xA"], []]

    def test_refresh_failure_is_network_error(self) -> None:
        wallet = self._wallet(aiohttp.ClientConnectionError("down"))
        with pytest.raises(NetworkError):
            run(wallet.refresh())

    def test_declined_transaction(self) -> None:
        wallet = NodeWallet(MagicMock())
        w3 = MagicMock()
        w3.eth.send_transaction = AsyncMock(side_effect=_rpc_error(4001))

        with pytest.raises(TransactionRejected):
            run(wallet.send_transaction(w3, {"from": "0xA"}))
