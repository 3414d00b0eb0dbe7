# exceptions.py


class RegistrarError(Exception):
    """Base exception for everything the registration workflow can raise."""


class SourceUnavailable(RegistrarError):
    """Raised when the selected file's bytes cannot be read."""


class StorageError(RegistrarError):
    """Raised when the content-addressed storage network misbehaves."""


class UploadFailed(StorageError):
    """Raised when publishing to the storage network fails."""


class RetrievalFailed(StorageError):
    """Raised when fetching from the storage network fails for transport reasons."""


class NotFound(StorageError):
    """Raised when the storage network has no content for a reference."""


class WalletError(RegistrarError):
    """Raised when the wallet connection cannot be established."""


class WalletUnavailable(WalletError):
    """Raised when no compatible wallet provider is configured or reachable."""


class UserRejected(WalletError):
    """Raised when the user declines account authorization."""


class BindingError(RegistrarError):
    """Raised when a contract binding cannot be created."""


class InvalidAddress(BindingError):
    """Raised when a contract address is empty or malformed."""


class NoConnection(BindingError):
    """Raised when a ledger operation needs an account and none is connected."""


class LedgerError(RegistrarError):
    """Raised when a ledger call fails."""


class TransactionRejected(LedgerError):
    """Raised when the wallet declines to sign a transaction."""


class TransactionReverted(LedgerError):
    """Raised when the contract rejects a transaction."""

    def __init__(self, reason: str = "execution reverted") -> None:
        super().__init__(reason)
        self.reason = reason


class NetworkError(LedgerError):
    """Raised when a ledger call never reached or never returned from the node."""


class AlreadyInProgress(RegistrarError):
    """Raised when an operation starts while another one is in flight."""


class SubmissionNotReady(RegistrarError):
    """Raised when submit is requested before every required field is present."""


_MESSAGES: list[tuple[type[Exception], str]] = [
    (SourceUnavailable, "The selected file could not be read. Please select it again."),
    (UploadFailed, "The file could not be uploaded to IPFS."),
    (NotFound, "No file exists for this content identifier."),
    (RetrievalFailed, "The file could not be downloaded from IPFS."),
    (WalletUnavailable, "No compatible wallet was found."),
    (UserRejected, "Wallet access was refused."),
    (InvalidAddress, "The contract address is not valid."),
    (NoConnection, "Connect a wallet before registering a document."),
    (TransactionRejected, "The transaction was not signed."),
    (TransactionReverted, "The contract rejected the registration."),
    (NetworkError, "The blockchain network could not be reached."),
    (AlreadyInProgress, "Another operation is still running."),
    (SubmissionNotReady, "Fill in every field and select a file before submitting."),
]


def user_message(exc: BaseException) -> str:
    """
    画面に出す文言はエラーの種類だけから決める（生の通信エラー文は出さない）。
    """
    for kind, message in _MESSAGES:
        if isinstance(exc, kind):
            return message
    return "Document registration failed."
