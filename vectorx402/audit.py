"""
VectorX402 audit trail.

Marketplace lifecycle changes are emitted as AuditEvents to an injected
audit log instead of being printed. Logs are append-only.
"""

import time
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, asdict

logger = logging.getLogger(__name__)

LISTING_CREATED = "listing_created"
LISTING_CANCELLED = "listing_cancelled"
PURCHASE_SETTLED = "purchase_settled"
VECTOR_REGISTERED = "vector_registered"


@dataclass(frozen=True)
class AuditEvent:
    """
    A single audit entry.

    Attributes:
        kind: Event type (listing_created, purchase_settled, ...).
        subject: Identifier the event is about (listing id, content id).
        timestamp: Unix timestamp of the event.
        details: Event-specific data.
    """

    kind: str
    subject: str
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


class AuditLogInterface(ABC):
    """Abstract interface for audit sinks."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Append an event."""
        pass

    @abstractmethod
    async def events(self, kind: Optional[str] = None) -> List[AuditEvent]:
        """Return events in append order, optionally of one kind."""
        pass


class MemoryAuditLog(AuditLogInterface):
    """In-memory audit log."""

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def record(self, event: AuditEvent) -> None:
        async with self._lock:
            self._events.append(event)
        logger.debug(f"Audit {event.kind}: {event.subject}")

    async def events(self, kind: Optional[str] = None) -> List[AuditEvent]:
        async with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.kind == kind]
