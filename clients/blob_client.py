"""
Blob storage for invoice attachments.

Two implementations of one small contract: upload bytes under a path and
get back a retrievable URL, or delete what is stored under a path.
The HTTP gateway client signs every request with HMAC-SHA256, the same
scheme the email gateway uses.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class BlobStorageError(Exception):
    """Raised when a blob upload or delete fails."""


class StoredBlob(BaseModel):
    """Where an uploaded blob ended up."""

    url: str
    path: str
    size: int = Field(..., ge=0)
    type: str


class BlobStorage(ABC):
    """Contract for attachment storage. No transactional tie to document writes."""

    @abstractmethod
    async def upload(self, data: bytes, path: str, content_type: str) -> StoredBlob:
        """Store data under path. Raises BlobStorageError on failure."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the blob at path. Raises BlobStorageError on failure."""


class InMemoryBlobStorage(BlobStorage):
    """
    Blob storage held in a dict. For tests and local development.

    Usage:
        blobs = InMemoryBlobStorage()
        stored = await blobs.upload(b"%PDF-1.7", "a/b.pdf", "application/pdf")
        blobs.fail_deletes_for.add("a/b.pdf")  # next delete of that path raises
    """

    def __init__(self, base_url: str = "memory://blobs"):
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_deletes_for: set[str] = set()
        self.delete_attempts: list[str] = []

    async def upload(self, data: bytes, path: str, content_type: str) -> StoredBlob:
        self.objects[path] = (bytes(data), content_type)
        return StoredBlob(url=f"{self.base_url}/{path}", path=path, size=len(data), type=content_type)

    async def delete(self, path: str) -> None:
        self.delete_attempts.append(path)
        if path in self.fail_deletes_for:
            raise BlobStorageError(f"Simulated delete failure for {path}")
        if self.objects.pop(path, None) is None:
            raise BlobStorageError(f"No blob stored at {path}")


class BlobGatewayClient(BlobStorage):
    """Store blobs via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout_seconds: float = 30):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Base URL of the blob gateway (objects live under /objects/)
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            timeout_seconds: Per-request timeout

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url.rstrip("/")
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout_seconds = timeout_seconds

    def _object_url(self, path: str) -> str:
        return f"{self.gateway_url}/objects/{quote(path.strip('/'))}"

    def _headers(self, body: bytes, content_type: str | None = None) -> dict[str, str]:
        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        headers = {
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _send(self, method: str, path: str, body: bytes = b"", content_type: str | None = None) -> dict:
        """
        Sign and send one request.

        Raises:
            BlobStorageError: On any failure
        """
        try:
            response = requests.request(
                method,
                self._object_url(path),
                data=body,
                headers=self._headers(body, content_type),
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Blob gateway connection failed: {e}")
            raise BlobStorageError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except json.JSONDecodeError:
            logger.error(f"Blob gateway returned invalid JSON: {response.text}")
            raise BlobStorageError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Blob gateway error on {method} {path}: {error_msg}")
            raise BlobStorageError(f"Gateway error: {error_msg}")

        return response_data

    async def upload(self, data: bytes, path: str, content_type: str) -> StoredBlob:
        response_data = await asyncio.to_thread(self._send, "PUT", path, bytes(data), content_type)
        url = response_data.get("url")
        if not url:
            raise BlobStorageError("Gateway response is missing the object URL")
        logger.info(f"Blob uploaded: {path} ({len(data)} bytes)")
        return StoredBlob(url=url, path=path, size=len(data), type=content_type)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._send, "DELETE", path)
        logger.info(f"Blob deleted: {path}")
