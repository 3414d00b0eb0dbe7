# registrar.py
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from connection import LedgerConnectionManager
from eth_client import ContractBinding, EthereumClient
from exceptions import (
    AlreadyInProgress,
    InvalidAddress,
    NoConnection,
    RegistrarError,
    SubmissionNotReady,
    user_message,
)
from hasher import compute_fingerprint
from ipfs_client import PinataClient
from models import (
    Failure,
    RegistrationForm,
    RegistrationReceipt,
    RegistrationRecord,
    RetrievalState,
    RetrievedFile,
    SelectedFile,
    Stage,
    StorageReference,
    SubmissionState,
)
from observable import Observable

logger = logging.getLogger(__name__)


class _Stale(Exception):
    """The attempt was abandoned by reset() or a new selection."""


class DocumentRegistrar:
    """
    1. ファイルのハッシュを計算
    2. IPFS (Pinata) にアップロード
    3. その CID を Ethereum のコントラクトに記録

    という "ユースケース" を状態付きで表現するクラス。逆方向（CID から
    ファイルを取り出す）の取得フローも持つ。

    状態はすべて Observable で、書くのはこのクラスだけ。
    busy は終端状態 (FILE_SELECTED / PUBLISHED / CONFIRMED / FAILED) を
    通知する前に落とす。
    """

    def __init__(
        self,
        storage: PinataClient,
        eth_client: EthereumClient,
        connection: LedgerConnectionManager,
        contract_address: Optional[str] = None,
    ):
        self._storage = storage
        self._eth_client = eth_client
        self._connection = connection
        self._contract_address = contract_address
        self._binding: Optional[ContractBinding] = None
        self._generation = 0

        self.state: Observable[SubmissionState] = Observable(SubmissionState.IDLE)
        self.selected_file: Observable[Optional[SelectedFile]] = Observable(None)
        self.fingerprint: Observable[Optional[str]] = Observable(None)
        self.reference: Observable[Optional[StorageReference]] = Observable(None)
        self.failure: Observable[Optional[Failure]] = Observable(None)
        self.receipt: Observable[Optional[RegistrationReceipt]] = Observable(None)
        self.busy: Observable[bool] = Observable(False)

        self.retrieval_state: Observable[RetrievalState] = Observable(RetrievalState.IDLE)
        self.retrieval_failure: Observable[Optional[Failure]] = Observable(None)

        self.account: Observable[Optional[str]] = Observable(connection.active_account)
        connection.accounts_changed.subscribe(self._on_accounts_changed)

    # ------------------------------------------------------------------
    # guards

    @property
    def connection(self) -> LedgerConnectionManager:
        return self._connection

    @property
    def is_busy(self) -> bool:
        return self.busy.get()

    def can_submit(self, form: RegistrationForm) -> bool:
        return form.is_complete() and self.reference.get() is not None

    def _transition(self, state: SubmissionState) -> None:
        logger.info("Submission state: %s -> %s", self.state.get().value, state.value)
        self.state.set(state)

    @contextmanager
    def _attempt(self) -> Iterator[int]:
        if self.is_busy:
            raise AlreadyInProgress("an operation is already running")
        generation = self._generation
        self.busy.set(True)
        try:
            yield generation
        finally:
            self._release(generation)

    def _release(self, generation: int) -> None:
        # 破棄された試行は、新しい試行の busy を触らない
        if generation == self._generation:
            self.busy.set(False)

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Stale()

    def _settle(self, generation: int, state: SubmissionState) -> None:
        """終端状態は busy を落としてから通知する。"""
        self._release(generation)
        self._transition(state)

    def _fail(self, stage: Stage, exc: Exception, generation: int) -> None:
        logger.warning("Submission failed at %s: %s: %s", stage.value, type(exc).__name__, exc)
        self.failure.set(Failure(stage=stage, cause=exc, message=user_message(exc)))
        self._settle(generation, SubmissionState.FAILED)

    def _on_accounts_changed(self, accounts: list[str]) -> None:
        active = accounts[0] if accounts else None
        if self.is_busy and active != self.account.get():
            # 実行中の試行はそのまま最後まで走らせる（署名時に改めて読む）
            logger.info("Active account changed to %s while an operation is running", active)
        self.account.set(active)

    # ------------------------------------------------------------------
    # selection / reset

    def select_file(self, file: SelectedFile) -> None:
        """
        ローカルパスからでもアップロードされたストリームからでも、
        SelectedFile になっていればここが唯一の入口。
        """
        self._abandon_attempt()
        self.fingerprint.set(None)
        self.reference.set(None)
        self.failure.set(None)
        self.receipt.set(None)
        self.selected_file.set(file)
        logger.info("Selected %s (%s, %d bytes)", file.name, file.media_type, file.size)
        self._transition(SubmissionState.FILE_SELECTED)

    def reset(self) -> None:
        self._abandon_attempt()
        self.selected_file.set(None)
        self.fingerprint.set(None)
        self.reference.set(None)
        self.failure.set(None)
        self.receipt.set(None)
        self.retrieval_failure.set(None)
        self.retrieval_state.set(RetrievalState.IDLE)
        self._transition(SubmissionState.IDLE)

    def _abandon_attempt(self) -> None:
        self._generation += 1
        self.busy.set(False)
        # 取得中だったものは結果を捨てるので、取得側も待機に戻す
        if self.retrieval_state.get() is RetrievalState.FETCHING:
            self.retrieval_state.set(RetrievalState.IDLE)

    def bind_contract(self, contract_address: str) -> ContractBinding:
        self._binding = self._eth_client.bind(contract_address)
        self._contract_address = self._binding.address
        return self._binding

    def current_binding(self) -> ContractBinding:
        if self._binding is not None:
            return self._binding
        if not self._contract_address:
            raise InvalidAddress("no contract address configured")
        return self.bind_contract(self._contract_address)

    # ------------------------------------------------------------------
    # stages
    #
    # last=True のステージだけが終端状態に移り busy を落とす。途中のステージは
    # busy を持ったまま次のステージへ進む。

    async def _hash(self, generation: int, last: bool) -> None:
        file = self.selected_file.get()
        self._transition(SubmissionState.HASHING)
        try:
            digest = await asyncio.to_thread(compute_fingerprint, file.data)
        except RegistrarError as ex:
            self._check_current(generation)
            self._fail(Stage.HASH, ex, generation)
            raise
        self._check_current(generation)
        self.fingerprint.set(digest)
        if last:
            self._settle(generation, SubmissionState.FILE_SELECTED)

    async def _publish(self, generation: int, last: bool) -> None:
        file = self.selected_file.get()
        self._transition(SubmissionState.UPLOADING)
        try:
            ref = await self._storage.publish(file.data, file.media_type, file.name)
        except RegistrarError as ex:
            self._check_current(generation)
            self._fail(Stage.UPLOAD, ex, generation)
            raise
        self._check_current(generation)
        self.reference.set(ref)
        if last:
            self._settle(generation, SubmissionState.PUBLISHED)
        else:
            self._transition(SubmissionState.PUBLISHED)

    async def _sign(self, generation: int, form: RegistrationForm) -> RegistrationReceipt:
        self._transition(SubmissionState.AWAITING_SIGNATURE)
        try:
            # アカウントは署名の直前に読む（ウォレット側で切り替わっていれば反映される）
            await self._connection.refresh()
            self._check_current(generation)
            account = self._connection.active_account
            if account is None:
                raise NoConnection("wallet is disconnected")
            binding = self.current_binding()
            record = RegistrationRecord.from_form(form, self.reference.get())
            receipt = await binding.submit_registration(record, account)
        except RegistrarError as ex:
            self._check_current(generation)
            self._fail(Stage.LEDGER, ex, generation)
            raise
        self._check_current(generation)
        self.receipt.set(receipt)
        logger.info("Registered %s in tx %s (block %d)", record.name, receipt.tx_hash, receipt.block_number)
        self._settle(generation, SubmissionState.CONFIRMED)
        return receipt

    async def _run_stage(self, stage: Stage, generation: int, coro) -> bool:
        """
        ステージを実行して成否を返す。想定外の例外も FAILED にしてから投げ直す。
        """
        try:
            await coro
        except _Stale:
            logger.info("Discarding result of an abandoned %s stage", stage.value)
            return False
        except RegistrarError:
            return False
        except Exception as ex:
            if generation == self._generation:
                self._fail(stage, ex, generation)
            raise
        return True

    # ------------------------------------------------------------------
    # public operations

    async def begin_hash(self) -> Optional[str]:
        if self.selected_file.get() is None:
            raise SubmissionNotReady("no file selected")
        with self._attempt() as generation:
            await self._run_stage(Stage.HASH, generation, self._hash(generation, last=True))
        return self.fingerprint.get()

    async def publish(self) -> Optional[StorageReference]:
        if self.selected_file.get() is None:
            raise SubmissionNotReady("no file selected")
        with self._attempt() as generation:
            if self.fingerprint.get() is None:
                if not await self._run_stage(Stage.HASH, generation, self._hash(generation, last=False)):
                    return None
            await self._run_stage(Stage.UPLOAD, generation, self._publish(generation, last=True))
        return self.reference.get()

    async def submit(self, form: RegistrationForm) -> Optional[RegistrationReceipt]:
        """
        入力が揃っていなければ何も変えずに SubmissionNotReady。
        ハッシュ・アップロードが済んでいなければ、この中で順番に行う。
        試行の途中で FILE_SELECTED には戻らない。
        """
        if self.is_busy:
            raise AlreadyInProgress("a submission is already running")
        if not form.is_complete() or self.selected_file.get() is None:
            raise SubmissionNotReady("receiver, name, description, type and a file are required")

        with self._attempt() as generation:
            if self.fingerprint.get() is None:
                if not await self._run_stage(Stage.HASH, generation, self._hash(generation, last=False)):
                    return None
            if self.reference.get() is None:
                if not await self._run_stage(Stage.UPLOAD, generation, self._publish(generation, last=False)):
                    return None
            elif self.state.get() is not SubmissionState.PUBLISHED:
                self._transition(SubmissionState.PUBLISHED)
            if not await self._run_stage(Stage.LEDGER, generation, self._sign(generation, form)):
                return None
        return self.receipt.get()

    async def retrieve(self, reference: StorageReference | str) -> Optional[RetrievedFile]:
        """
        CID からファイルを取り出し、ダウンロードできる形にして返す。
        成功すれば IDLE に戻り、失敗すれば FAILED（どちらも busy を落としてから）。
        途中で reset() / select_file() されたら結果は捨てて None。
        """
        if isinstance(reference, str):
            reference = StorageReference(cid=reference.strip())

        with self._attempt() as generation:
            self.retrieval_failure.set(None)
            self.retrieval_state.set(RetrievalState.FETCHING)
            try:
                data, media_type = await self._storage.fetch(reference)
            except Exception as ex:
                if generation != self._generation:
                    logger.info("Discarding result of an abandoned retrieval of %s", reference.cid)
                    if isinstance(ex, RegistrarError):
                        return None
                    raise
                logger.warning("Retrieval of %s failed: %s: %s", reference.cid, type(ex).__name__, ex)
                self.retrieval_failure.set(Failure(stage=Stage.RETRIEVE, cause=ex, message=user_message(ex)))
                self._release(generation)
                self.retrieval_state.set(RetrievalState.FAILED)
                if isinstance(ex, RegistrarError):
                    return None
                raise

            if generation != self._generation:
                logger.info("Discarding result of an abandoned retrieval of %s", reference.cid)
                return None

            self.retrieval_state.set(RetrievalState.READY)
            resource = RetrievedFile(reference=reference, data=data, media_type=media_type)
            logger.info("Retrieved %s (%s, %d bytes)", reference.cid, media_type, len(data))
            self._release(generation)
            self.retrieval_state.set(RetrievalState.IDLE)
        return resource

    def snapshot(self) -> dict:
        file = self.selected_file.get()
        failure = self.failure.get()
        receipt = self.receipt.get()
        ref = self.reference.get()
        retrieval_failure = self.retrieval_failure.get()
        return {
            "state": self.state.get().value,
            "busy": self.is_busy,
            "file": (
                {"name": file.name, "mediaType": file.media_type, "size": file.size, "isImage": file.is_image}
                if file
                else None
            ),
            "fileHash": self.fingerprint.get(),
            "cid": ref.cid if ref else None,
            "failure": {"stage": failure.stage.value, "message": failure.message} if failure else None,
            "txHash": receipt.tx_hash if receipt else None,
            "activeAccount": self.account.get(),
            "contractAddress": self._contract_address,
            "retrieval": {
                "state": self.retrieval_state.get().value,
                "failure": retrieval_failure.message if retrieval_failure else None,
            },
        }
