"""
Local encrypted blob store with signed-URL access
"""

import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

import httpx
from cryptography.fernet import InvalidToken
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from dictation_service.config import settings
from dictation_service.core.errors import BlobDownloadError, InvalidSignedURLError, StorageError
from dictation_service.core.logging import get_logger
from dictation_service.core.security import DataEncryption, SecurityManager

logger = get_logger(__name__)

RETRYABLE_EXCEPTIONS = (httpx.TimeoutException, httpx.NetworkError)


class LocalBlobStore:
    """
    Stores audio on the local filesystem, encrypted at rest with Fernet.

    Signed URLs point back at this service's ``/v1/blobs`` route and carry a
    JWT that binds the blob path and expires after the requested TTL.
    """

    def __init__(
        self,
        root_dir: str,
        public_base_url: str,
        encryption: DataEncryption,
        security: SecurityManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.root = Path(root_dir).resolve()
        self.public_base_url = public_base_url.rstrip("/")
        self.encryption = encryption
        self.security = security
        self.transport = transport

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise InvalidSignedURLError(f"Blob path escapes storage root: {path}")
        return target

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        if target.exists():
            raise StorageError(f"Blob already exists: {path}")
        try:
            encrypted = self.encryption.encrypt_data(data)
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, encrypted)
        except OSError as e:
            logger.error(f"Failed to write blob {path}: {e}", exc_info=True)
            raise StorageError(f"Failed to upload audio: {e}")
        logger.info(f"Stored blob {path}", size=len(data), content_type=content_type)

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        if not self._resolve(path).exists():
            raise StorageError(f"Cannot sign missing blob: {path}")
        token = self.security.create_blob_token(path, ttl_seconds)
        return f"{self.public_base_url}/v1/blobs/{quote(path)}?{urlencode({'token': token})}"

    async def read_signed(self, path: str, token: str) -> bytes:
        """Returns decrypted bytes for a path if the token was issued for it and is unexpired."""
        if not self.security.verify_blob_token(path, token):
            raise InvalidSignedURLError()
        target = self._resolve(path)
        try:
            encrypted = await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise InvalidSignedURLError("Blob no longer exists")
        try:
            return self.encryption.decrypt_data(encrypted)
        except InvalidToken:
            raise StorageError(f"Blob {path} could not be decrypted")

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(settings.max_retries),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(f"Retrying blob download, attempt {retry_state.attempt_number}..."),
    )
    async def _download(self, url: str, timeout: float) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            return await client.get(url)

    async def get(self, url: str, timeout: float) -> bytes:
        """Downloads a blob through its signed URL"""
        try:
            response = await self._download(url, timeout)
        except httpx.HTTPError as e:
            raise BlobDownloadError(f"{type(e).__name__}: {e}")
        if response.status_code != 200:
            raise BlobDownloadError(f"HTTP {response.status_code}")
        return response.content

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, True)
            logger.info(f"Deleted blob {path}")
        except OSError as e:
            logger.error(f"Failed to delete blob {path}: {e}")
