# hasher.py
import hashlib
from typing import BinaryIO, Union

from exceptions import SourceUnavailable

CHUNK_SIZE = 8192


def _sha256_stream(stream: BinaryIO) -> str:
    hasher = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def compute_fingerprint(source: Union[bytes, bytearray, memoryview, BinaryIO]) -> str:
    """
    ファイル内容の SHA-256 (hex, 64文字) を返す。

    bytes ならそのまま、ストリームなら 8KB ずつ読む。読めなかった場合は
    途中結果を返さず SourceUnavailable を投げる。
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        return hashlib.sha256(source).hexdigest()
    try:
        return _sha256_stream(source)
    except (OSError, ValueError) as ex:
        # 閉じられたファイルは ValueError になる
        raise SourceUnavailable("File content is no longer readable") from ex

