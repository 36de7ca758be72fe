"""
VectorX402 Ledger capability.

The ledger is where signed payment proofs are broadcast for settlement.
The core never waits on it before granting access; whether access is given
pre- or post-settlement is a policy of the surrounding system.
"""

import time
import logging
import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional
from dataclasses import dataclass, asdict

if TYPE_CHECKING:
    from vectorx402.protocol import PaymentProof

logger = logging.getLogger(__name__)


@dataclass
class SettlementRecord:
    """
    A proof accepted by the ledger.

    Attributes:
        transaction_ref: Reference derived from the signed payment message.
        payer: Wallet address that signed the proof.
        submitted_at: Unix timestamp of submission.
        proof: The submitted proof.
    """

    transaction_ref: str
    payer: str
    submitted_at: float
    proof: "PaymentProof"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


class LedgerInterface(ABC):
    """Abstract interface for settlement backends."""

    @abstractmethod
    async def submit(self, proof: "PaymentProof", payer: str) -> SettlementRecord:
        """Submit a proof for settlement."""
        pass

    @abstractmethod
    async def get(self, transaction_ref: str) -> Optional[SettlementRecord]:
        """Look up a submitted proof."""
        pass


class MemoryLedger(LedgerInterface):
    """
    In-memory ledger for tests and local simulations.

    Submitting the same transaction reference twice returns the original
    record instead of settling again.

    Example:
        >>> ledger = MemoryLedger()
        >>> record = await ledger.submit(proof, payer="0xabc...")
    """

    def __init__(self):
        self._records: Dict[str, SettlementRecord] = {}
        self._lock = asyncio.Lock()

    async def submit(self, proof: "PaymentProof", payer: str) -> SettlementRecord:
        async with self._lock:
            existing = self._records.get(proof.transaction_ref)
            if existing:
                logger.debug(f"Duplicate submission of {proof.transaction_ref}")
                return existing

            record = SettlementRecord(
                transaction_ref=proof.transaction_ref,
                payer=payer,
                submitted_at=time.time(),
                proof=proof,
            )
            self._records[proof.transaction_ref] = record
            logger.info(f"Settled {proof.transaction_ref} from {payer}")
            return record

    async def get(self, transaction_ref: str) -> Optional[SettlementRecord]:
        async with self._lock:
            return self._records.get(transaction_ref)

    async def list_settlements(self) -> List[SettlementRecord]:
        """List all settled proofs in submission order."""
        async with self._lock:
            return list(self._records.values())
