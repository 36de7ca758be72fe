"""
VectorX402 vector catalog.

Stores vector embeddings in a content store and ranks known records by
cosine similarity. The catalog owns every VectorRecord and is the only
component that changes a record's owner.
"""

import json
import time
import uuid
import logging
import asyncio
import itertools
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from cryptography.fernet import Fernet, InvalidToken

from vectorx402 import config
from vectorx402.audit import VECTOR_REGISTERED, AuditEvent, AuditLogInterface
from vectorx402.errors import CatalogError, DimensionMismatch, NotFound, ZeroVectorError
from vectorx402.storage import ContentStoreInterface
from vectorx402.vector_math import cosine_similarity, vector_norm

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = 1


@dataclass
class VectorRecord:
    """
    Metadata of a stored vector.

    Attributes:
        content_id: Content address of the stored payload.
        dimension: Vector length.
        created_at: Unix timestamp of the upload.
        encrypted: Whether the payload was encrypted before storage.
        owner: Current owner wallet address.
        tags: Free-form search tags.
    """

    content_id: str
    dimension: int
    created_at: float
    encrypted: bool
    owner: Optional[str] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class SimilarityMatch:
    """A record and its similarity to the query."""

    record: VectorRecord
    similarity: float


def _validate_vector(vector: Sequence[float]) -> List[float]:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1 or arr.shape[0] == 0:
        raise ValueError("Vector must be a non-empty one-dimensional sequence")
    if not np.isfinite(arr).all():
        raise ValueError("Vector contains NaN or infinite values")
    return arr.tolist()


class VectorCatalog:
    """
    Content-addressed vector storage with exact similarity search.

    Every upload produces a new record; each payload carries a random salt so
    two uploads of the same vector get distinct addresses.

    Example:
        >>> catalog = VectorCatalog(MemoryContentStore())
        >>> record = await catalog.upload([0.1, 0.2, 0.3], owner="0xabc")
        >>> matches = await catalog.find_similar([0.1, 0.2, 0.3], threshold=0.9)
    """

    def __init__(
        self,
        store: ContentStoreInterface,
        encryption_key: Optional[str] = None,
        audit_log: Optional[AuditLogInterface] = None,
    ):
        """
        Initialize the catalog.

        Args:
            store: Content store collaborator.
            encryption_key: Optional Fernet key; payloads are encrypted when set.
            audit_log: Optional sink for vector registration events.
        """
        self._store = store
        self._fernet = Fernet(encryption_key) if encryption_key else None
        self._audit_log = audit_log
        self._records: Dict[str, VectorRecord] = {}
        self._vectors: Dict[str, List[float]] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def _serialize(self, vector: List[float], created_at: float) -> bytes:
        envelope = {
            "created_at": created_at,
            "salt": uuid.uuid4().hex,
            "vector": vector,
            "version": PAYLOAD_VERSION,
        }
        payload = json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")
        if self._fernet:
            payload = self._fernet.encrypt(payload)
        return payload

    def _deserialize(self, content_id: str, data: bytes) -> List[float]:
        if self._fernet:
            try:
                data = self._fernet.decrypt(data)
            except InvalidToken:
                raise CatalogError(f"Cannot decrypt content {content_id}")
        try:
            envelope = json.loads(data)
            return [float(v) for v in envelope["vector"]]
        except (ValueError, KeyError, TypeError) as e:
            raise CatalogError(f"Content {content_id} is not a vector payload: {e}")

    async def upload(
        self,
        vector: Sequence[float],
        owner: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> VectorRecord:
        """
        Store a vector and register its record.

        Raises:
            ValueError: If the vector is empty or not finite.
        """
        values = _validate_vector(vector)
        created_at = time.time()

        content_id = await self._store.put(self._serialize(values, created_at))

        record = VectorRecord(
            content_id=content_id,
            dimension=len(values),
            created_at=created_at,
            encrypted=self.encrypted,
            owner=owner,
            tags=tuple(tags or ()),
        )

        async with self._lock:
            self._records[content_id] = record
            self._vectors[content_id] = values
            self._sequence[content_id] = next(self._counter)

        logger.info(f"Stored vector {content_id} (dim={record.dimension}, owner={owner})")
        if self._audit_log:
            await self._audit_log.record(
                AuditEvent(
                    kind=VECTOR_REGISTERED,
                    subject=content_id,
                    details={"dimension": record.dimension, "owner": owner},
                )
            )
        return record

    async def retrieve(self, content_id: str) -> List[float]:
        """
        Fetch a vector from the content store.

        Raises:
            NotFound: If the store has no such address.
        """
        data = await self._store.get(content_id)
        return self._deserialize(content_id, data)

    async def find_similar(
        self,
        query: Sequence[float],
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
        where: Optional[Callable[[VectorRecord], bool]] = None,
    ) -> List[SimilarityMatch]:
        """
        Rank known records by cosine similarity to a query.

        Records scoring below threshold are dropped. Results are ordered by
        similarity (highest first), then by creation time (newest first).
        Records of a different dimension than the query are skipped.

        Args:
            query: Query vector.
            threshold: Minimum similarity (default: SIMILARITY_THRESHOLD).
            limit: Maximum results (default: SEARCH_LIMIT, capped at MAX_SEARCH_LIMIT).
            where: Optional record predicate, applied before the limit.

        Raises:
            ZeroVectorError: If the query has zero norm.
            ValueError: If threshold is outside [-1, 1] or limit < 1.
        """
        threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold
        if not -1.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [-1, 1], got {threshold}")
        limit = config.clamp_limit(config.SEARCH_LIMIT if limit is None else limit)

        query = _validate_vector(query)
        if vector_norm(query) == 0:
            raise ZeroVectorError("Cannot search with a zero query vector")

        async with self._lock:
            candidates = [
                (self._records[cid], vector, self._sequence[cid])
                for cid, vector in self._vectors.items()
            ]

        scored = []
        for record, vector, sequence in candidates:
            if where is not None and not where(record):
                continue
            try:
                similarity = cosine_similarity(query, vector)
            except DimensionMismatch:
                continue
            except ZeroVectorError:
                # Stored zero vector matches nothing
                continue
            if similarity >= threshold:
                scored.append((similarity, record, sequence))

        scored.sort(key=lambda item: (-item[0], -item[1].created_at, -item[2]))
        return [SimilarityMatch(record=r, similarity=s) for s, r, _ in scored[:limit]]

    def get_record(self, content_id: str) -> Optional[VectorRecord]:
        return self._records.get(content_id)

    def records(self) -> List[VectorRecord]:
        """All records in upload order."""
        return sorted(self._records.values(), key=lambda r: self._sequence[r.content_id])

    def transfer_ownership(self, content_id: str, new_owner: str) -> VectorRecord:
        """
        Assign a record to a new owner.

        Does not suspend, so callers can run it inside a critical section.

        Raises:
            NotFound: If the catalog has no record for content_id.
        """
        record = self._records.get(content_id)
        if record is None:
            raise NotFound(content_id)
        previous = record.owner
        record.owner = new_owner
        logger.info(f"Transferred {content_id} from {previous} to {new_owner}")
        return record

    def __len__(self) -> int:
        return len(self._records)
