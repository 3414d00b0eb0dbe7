# ipfs_client.py
import logging
from typing import Optional

import httpx

from exceptions import NotFound, RetrievalFailed, UploadFailed
from models import DEFAULT_MEDIA_TYPE, StorageReference

logger = logging.getLogger(__name__)

PINATA_UPLOAD_URL = "https://uploads.pinata.cloud/v3/files"


class PinataClient:
    """
    Pinata 経由で IPFS にファイルを公開・取得するクライアント。

    呼び出しごとに httpx.AsyncClient を作り、状態は持たない。
    リトライはしない（やり直すかどうかは呼び出し側が決める）。
    """

    def __init__(
        self,
        jwt: str,
        gateway: str,
        upload_url: str = PINATA_UPLOAD_URL,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._jwt = jwt
        self._gateway = self._normalize_gateway(gateway)
        self._upload_url = upload_url
        self._timeout = timeout_seconds
        self._transport = transport

    @staticmethod
    def _normalize_gateway(gateway: str) -> str:
        g = (gateway or "").strip().rstrip("/")
        if not g.startswith(("http://", "https://")):
            g = "https://" + g
        return g

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def gateway_url(self, reference: StorageReference) -> str:
        return f"{self._gateway}/ipfs/{reference.cid}"

    async def publish(self, data: bytes, media_type: str, name: str = "upload") -> StorageReference:
        files = {"file": (name, data, media_type or DEFAULT_MEDIA_TYPE)}
        form = {"network": "public", "name": name}
        headers = {"Authorization": f"Bearer {self._jwt}"}

        try:
            async with self._client() as client:
                res = await client.post(self._upload_url, files=files, data=form, headers=headers)
                res.raise_for_status()
                body = res.json()
        except httpx.HTTPStatusError as ex:
            logger.warning("Pinata upload rejected: status=%s body=%s", ex.response.status_code, ex.response.text)
            raise UploadFailed(f"upload rejected with status {ex.response.status_code}") from ex
        except httpx.HTTPError as ex:
            logger.warning("Pinata upload transport error: %s", ex)
            raise UploadFailed(f"upload transport error: {type(ex).__name__}") from ex
        except ValueError as ex:
            raise UploadFailed("upload response is not JSON") from ex

        info = body.get("data") if isinstance(body, dict) else None
        if not isinstance(info, dict) or not info.get("cid"):
            raise UploadFailed("upload response has no cid")

        ref = StorageReference(cid=str(info["cid"]), name=info.get("name") or name, size=info.get("size"))
        logger.info("Published %s (%d bytes) as %s", name, len(data), ref.cid)
        return ref

    async def fetch(self, reference: StorageReference) -> tuple[bytes, str]:
        url = self.gateway_url(reference)
        try:
            async with self._client() as client:
                res = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as ex:
            logger.warning("Gateway transport error for %s: %s", reference.cid, ex)
            raise RetrievalFailed(f"gateway transport error: {type(ex).__name__}") from ex

        if res.status_code == 404:
            raise NotFound(f"no content for {reference.cid}")
        if not res.is_success:
            logger.warning("Gateway returned %s for %s", res.status_code, reference.cid)
            raise RetrievalFailed(f"gateway returned status {res.status_code}")

        media_type = res.headers.get("content-type", DEFAULT_MEDIA_TYPE).split(";")[0].strip()
        return res.content, media_type or DEFAULT_MEDIA_TYPE
