# models.py
from __future__ import annotations

import io
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

from exceptions import SourceUnavailable

DEFAULT_MEDIA_TYPE = "application/octet-stream"


def guess_media_type(name: str) -> str:
    media_type, _ = mimetypes.guess_type(name)
    return media_type or DEFAULT_MEDIA_TYPE


@dataclass(frozen=True)
class SelectedFile:
    """
    ユーザーが選んだファイル。選択時点のバイト列をそのまま保持する。

    ローカルパス指定 (from_path) とアップロード/ドロップされたストリーム
    (from_stream) のどちらから作っても同じ型になる。
    """

    name: str
    media_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")

    @classmethod
    def from_path(cls, local_path: str | Path, media_type: Optional[str] = None) -> "SelectedFile":
        path = Path(local_path)
        if not path.is_file():
            raise SourceUnavailable(f"File not found: {local_path}")
        try:
            data = path.read_bytes()
        except OSError as ex:
            raise SourceUnavailable(f"Cannot read {local_path}") from ex
        return cls(name=path.name, media_type=media_type or guess_media_type(path.name), data=data)

    @classmethod
    def from_stream(cls, name: str, stream: BinaryIO, media_type: Optional[str] = None) -> "SelectedFile":
        try:
            data = stream.read()
        except (OSError, ValueError) as ex:
            raise SourceUnavailable(f"Cannot read {name}") from ex
        return cls(name=name, media_type=media_type or guess_media_type(name), data=data)


@dataclass(frozen=True)
class StorageReference:
    cid: str
    name: Optional[str] = None
    size: Optional[int] = None

    def __str__(self) -> str:
        return self.cid


@dataclass(frozen=True)
class RegistrationForm:
    """Fields the caller fills in before submitting."""

    receiver: str = ""
    name: str = ""
    description: str = ""
    doc_type: Optional[int] = None

    def is_complete(self) -> bool:
        return (
            bool(self.receiver.strip())
            and bool(self.name.strip())
            and bool(self.description.strip())
            and self.doc_type is not None
        )


@dataclass(frozen=True)
class RegistrationRecord:
    receiver: str
    name: str
    description: str
    reference: StorageReference
    doc_type: int

    @classmethod
    def from_form(cls, form: RegistrationForm, reference: StorageReference) -> "RegistrationRecord":
        return cls(
            receiver=form.receiver.strip(),
            name=form.name.strip(),
            description=form.description.strip(),
            reference=reference,
            doc_type=int(form.doc_type),
        )


class SubmissionState(Enum):
    IDLE = "idle"
    FILE_SELECTED = "file_selected"
    HASHING = "hashing"
    UPLOADING = "uploading"
    PUBLISHED = "published"
    AWAITING_SIGNATURE = "awaiting_signature"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class RetrievalState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


class Stage(Enum):
    HASH = "hash"
    UPLOAD = "upload"
    LEDGER = "ledger"
    RETRIEVE = "retrieve"


@dataclass(frozen=True)
class Failure:
    stage: Stage
    cause: Exception
    message: str


@dataclass(frozen=True)
class RegistrationReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    from_account: str


@dataclass(frozen=True)
class RetrievedFile:
    reference: StorageReference
    data: bytes = field(repr=False)
    media_type: str = DEFAULT_MEDIA_TYPE

    @property
    def filename(self) -> str:
        if self.reference.name:
            return self.reference.name
        ext = mimetypes.guess_extension(self.media_type) or ""
        return f"{self.reference.cid}{ext}"

    def as_stream(self) -> BinaryIO:
        return io.BytesIO(self.data)


@dataclass(frozen=True)
class LedgerDocument:
    name: str
    reference: StorageReference
    created_at: datetime
    doc_type: int
    issued: bool
