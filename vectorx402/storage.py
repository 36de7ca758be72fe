"""
VectorX402 content stores.

A content store keeps opaque payloads under content-derived addresses.
MemoryContentStore is used by tests and single-process agents;
IPFSContentStore talks to an IPFS node over its HTTP API.
"""

import base64
import hashlib
import logging
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from vectorx402 import config
from vectorx402.errors import NotFound

logger = logging.getLogger(__name__)


def content_address(data: bytes) -> str:
    """
    Address of a payload: multibase base32 ("b" prefix) of its SHA-256 digest.
    """
    digest = hashlib.sha256(data).digest()
    return "b" + base64.b32encode(digest).decode("ascii").lower().rstrip("=")


class ContentStoreInterface(ABC):
    """Abstract interface for content-addressed storage backends."""

    @abstractmethod
    async def put(self, data: bytes) -> str:
        """Store a payload and return its content id."""
        pass

    @abstractmethod
    async def get(self, content_id: str) -> bytes:
        """Fetch a payload. Raises NotFound for unknown ids."""
        pass


class MemoryContentStore(ContentStoreInterface):
    """
    In-memory content store.

    Identical payloads share one address.

    Example:
        >>> store = MemoryContentStore()
        >>> cid = await store.put(b"payload")
        >>> await store.get(cid)
        b'payload'
    """

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes) -> str:
        cid = content_address(data)
        async with self._lock:
            self._blobs.setdefault(cid, bytes(data))
        return cid

    async def get(self, content_id: str) -> bytes:
        async with self._lock:
            data = self._blobs.get(content_id)
        if data is None:
            raise NotFound(content_id)
        return data

    def __len__(self) -> int:
        return len(self._blobs)


class IPFSContentStore(ContentStoreInterface):
    """
    Content store backed by an IPFS node's HTTP RPC API (/api/v0).

    Use as an async context manager to share one connection pool, or call
    close() when done.

    Example:
        >>> async with IPFSContentStore("http://127.0.0.1:5001") as store:
        ...     cid = await store.put(payload)
    """

    def __init__(
        self,
        api_url: str = config.IPFS_API,
        http_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the IPFS store.

        Args:
            api_url: Base URL of the IPFS HTTP API.
            http_timeout: Timeout for API requests.
            client: Optional preconfigured client (e.g. with a mock transport).
        """
        self._api_url = api_url.rstrip("/")
        self._http_timeout = http_timeout
        self._http_client = client
        self._owns_client = client is None

    async def __aenter__(self):
        """Async context manager entry."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_client = True
        return self._http_client

    async def put(self, data: bytes) -> str:
        """Add a payload to IPFS and pin it."""
        response = await self._client().post(
            f"{self._api_url}/api/v0/add",
            params={"cid-version": "1", "pin": "true"},
            files={"file": ("vector.json", data)},
        )
        response.raise_for_status()
        cid = response.json()["Hash"]
        logger.debug(f"Uploaded {len(data)} bytes to IPFS: {cid}")
        return cid

    async def get(self, content_id: str) -> bytes:
        """Fetch a payload from IPFS."""
        response = await self._client().post(
            f"{self._api_url}/api/v0/cat", params={"arg": content_id}
        )
        # The RPC API reports unknown or unresolvable paths as 404/500
        if response.status_code in (404, 500):
            logger.debug(f"IPFS cat failed for {content_id}: {response.status_code}")
            raise NotFound(content_id)
        response.raise_for_status()
        return response.content
