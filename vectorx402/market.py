"""
VectorX402 marketplace.

Handles listing, searching and purchasing of memory shards (vector
embeddings). A purchase is gated by an X402 authorization token that must
pay the listing's seller the listing's price; the status flip, the purchase
record and the ownership transfer then happen as one unit, at most once per
listing.
"""

import time
import uuid
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence, Union

from vectorx402 import config
from vectorx402.audit import (
    LISTING_CANCELLED,
    LISTING_CREATED,
    PURCHASE_SETTLED,
    AuditEvent,
    AuditLogInterface,
)
from vectorx402.catalog import VectorCatalog, VectorRecord
from vectorx402.errors import (
    ListingNotFound,
    ListingUnavailable,
    NotListingSeller,
    PaymentMismatch,
    VectorX402Error,
)
from vectorx402.metrics import MarketMetrics
from vectorx402.protocol import PaymentChallenge, PaymentVerifier, parse_price

logger = logging.getLogger(__name__)


class ListingStatus(str, Enum):
    """Listing lifecycle. ACTIVE moves to SOLD or CANCELLED, never back."""

    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"


@dataclass
class Listing:
    """
    A memory shard offered for sale.

    Attributes:
        id: Listing identifier.
        vector_record: Catalog record of the listed vector.
        price: Price in the smallest token unit.
        seller: Seller wallet address.
        listed_at: Unix timestamp of listing.
        status: Lifecycle status.
        description: Optional description.
        category: Optional category.
    """

    id: str
    vector_record: VectorRecord
    price: int
    seller: str
    listed_at: float
    status: ListingStatus = ListingStatus.ACTIVE
    description: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        data["price"] = str(self.price)
        return data


@dataclass(frozen=True)
class PurchaseRecord:
    """Append-only ledger entry for a settled purchase."""

    listing_id: str
    buyer: str
    seller: str
    price: int
    settled_at: float
    transaction_ref: str


@dataclass
class ListingFilters:
    """
    Search filters.

    Attributes:
        min_similarity: Similarity threshold (default: SEARCH_MIN_SIMILARITY).
        max_price: Highest acceptable price, compared as an integer.
        category: Exact category match.
        seller: Exact seller match.
        limit: Maximum results (default: SEARCH_LIMIT, capped at MAX_SEARCH_LIMIT).
    """

    min_similarity: Optional[float] = None
    max_price: Optional[Union[int, str]] = None
    category: Optional[str] = None
    seller: Optional[str] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class SearchResult:
    listing: Listing
    similarity: float


class MarketplaceEngine:
    """
    Marketplace for AI memory shards.

    Example:
        >>> engine = MarketplaceEngine(VectorCatalog(MemoryContentStore()))
        >>> listing_id = await engine.list(vector, price=1000, seller=seller_address)
        >>> challenge = engine.issue_challenge(listing_id)
        >>> # buyer pays the challenge through PaymentProtocol ...
        >>> vector = await engine.purchase(listing_id, buyer_address, token, challenge)
    """

    def __init__(
        self,
        catalog: VectorCatalog,
        verifier: Optional[PaymentVerifier] = None,
        audit_log: Optional[AuditLogInterface] = None,
        metrics: Optional[MarketMetrics] = None,
        challenge_ttl: int = config.CHALLENGE_TTL_SECONDS,
    ):
        """
        Initialize the engine.

        Args:
            catalog: Vector catalog holding listed vectors.
            verifier: Payment verifier (default: one requiring registered wallets).
            audit_log: Optional sink for lifecycle events.
            metrics: Optional metrics collector.
            challenge_ttl: Lifetime of challenges from issue_challenge().
        """
        self._catalog = catalog
        self._verifier = verifier or PaymentVerifier()
        self._audit_log = audit_log
        self._metrics = metrics
        self._challenge_ttl = challenge_ttl

        self._listings: Dict[str, Listing] = {}
        self._by_content: Dict[str, str] = {}  # content_id -> listing_id
        self._locks: Dict[str, asyncio.Lock] = {}
        self._purchases: List[PurchaseRecord] = []

    def register_wallet(self, address: str, public_key_jwk: str) -> None:
        """Register the public key a buyer signs payments with."""
        self._verifier.add_trusted_key(address, public_key_jwk)

    @staticmethod
    def resource_url(listing_id: str) -> str:
        """URL buyers bind into their payment for a listing."""
        return config.get_listing_url(listing_id)

    async def _emit(self, kind: str, subject: str, **details) -> None:
        if self._audit_log:
            await self._audit_log.record(AuditEvent(kind=kind, subject=subject, details=details))

    def _require(self, listing_id: str) -> Listing:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        return listing

    async def list(
        self,
        vector: Sequence[float],
        price: Union[int, str],
        seller: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Lists a memory shard for sale.

        Args:
            vector: The vector embedding to list.
            price: Price in the smallest token unit.
            seller: Seller wallet address.
            description: Optional description.
            category: Optional category.
            tags: Optional search tags stored on the vector record.

        Returns:
            The new listing id.

        Raises:
            ValueError: If the price or vector is invalid.
        """
        amount = parse_price(price)
        if not seller:
            raise ValueError("Listing requires a seller address")

        record = await self._catalog.upload(vector, owner=seller, tags=tags)

        listing_id = uuid.uuid4().hex
        listing = Listing(
            id=listing_id,
            vector_record=record,
            price=amount,
            seller=seller,
            listed_at=time.time(),
            description=description,
            category=category,
        )
        self._listings[listing_id] = listing
        self._by_content[record.content_id] = listing_id
        self._locks[listing_id] = asyncio.Lock()

        logger.info(f"Listed {listing_id} ({record.content_id}) by {seller} for {amount}")
        if self._metrics:
            self._metrics.record_listing()
        await self._emit(
            LISTING_CREATED, listing_id, seller=seller, price=str(amount), content_id=record.content_id
        )
        return listing_id

    async def search(
        self, query: Sequence[float], filters: Optional[ListingFilters] = None
    ) -> List[SearchResult]:
        """
        Searches active listings similar to a query vector.

        Results keep the catalog's similarity ranking.
        """
        filters = filters or ListingFilters()
        threshold = (
            config.SEARCH_MIN_SIMILARITY if filters.min_similarity is None else filters.min_similarity
        )
        max_price = parse_price(filters.max_price) if filters.max_price is not None else None
        limit = config.clamp_limit(config.SEARCH_LIMIT if filters.limit is None else filters.limit)

        def listed(record: VectorRecord) -> bool:
            listing_id = self._by_content.get(record.content_id)
            if listing_id is None:
                return False
            listing = self._listings[listing_id]

            if listing.status is not ListingStatus.ACTIVE:
                return False
            if max_price is not None and listing.price > max_price:
                return False
            if filters.category and listing.category != filters.category:
                return False
            if filters.seller and listing.seller != filters.seller:
                return False
            return True

        # Filters run inside the scan, before the limit
        if self._metrics:
            with self._metrics.search_timer():
                matches = await self._catalog.find_similar(query, threshold, limit, where=listed)
        else:
            matches = await self._catalog.find_similar(query, threshold, limit, where=listed)

        return [
            SearchResult(
                listing=self._listings[self._by_content[m.record.content_id]], similarity=m.similarity
            )
            for m in matches
        ]

    def issue_challenge(self, listing_id: str, ttl: Optional[int] = None) -> PaymentChallenge:
        """
        Build the 402 challenge for buying a listing.

        Raises:
            ListingNotFound: If the listing does not exist.
            ListingUnavailable: If the listing is not active.
        """
        listing = self._require(listing_id)
        if listing.status is not ListingStatus.ACTIVE:
            raise ListingUnavailable(listing_id, listing.status.value)

        ttl = self._challenge_ttl if ttl is None else ttl
        return PaymentChallenge(
            price=listing.price,
            pay_to=listing.seller,
            nonce=uuid.uuid4().hex,
            expiry=int(time.time()) + ttl,
        )

    async def purchase(
        self, listing_id: str, buyer: str, authorization: str, challenge: PaymentChallenge
    ) -> List[float]:
        """
        Purchases a memory shard.

        Args:
            listing_id: The listing to buy.
            buyer: Buyer wallet address (the payer of the token).
            authorization: X402 authorization header value.
            challenge: The challenge the token pays.

        Returns:
            The purchased vector.

        Raises:
            ListingNotFound: If the listing does not exist.
            ListingUnavailable: If the listing is sold or cancelled.
            PaymentMismatch: If the payment does not cover this listing.
            ExpiredChallenge: If the challenge expired.
            InvalidAuthorization: If the token cannot be decoded.
        """
        try:
            vector, record = await self._purchase(listing_id, buyer, authorization, challenge)
        except VectorX402Error as e:
            if self._metrics:
                self._metrics.record_purchase(success=False, outcome=type(e).__name__)
            raise

        if self._metrics:
            self._metrics.record_purchase(success=True)
        await self._emit(
            PURCHASE_SETTLED,
            listing_id,
            buyer=record.buyer,
            seller=record.seller,
            price=str(record.price),
            transaction_ref=record.transaction_ref,
        )
        return vector

    async def _purchase(self, listing_id, buyer, authorization, challenge):
        listing = self._require(listing_id)
        if listing.status is not ListingStatus.ACTIVE:
            raise ListingUnavailable(listing_id, listing.status.value)

        if challenge.pay_to != listing.seller:
            raise PaymentMismatch(f"Payment recipient {challenge.pay_to} is not the seller")
        if challenge.price != listing.price:
            raise PaymentMismatch(
                f"Payment of {challenge.price} does not match listing price {listing.price}"
            )

        proof = self._verifier.verify(authorization, challenge, self.resource_url(listing_id), buyer)

        # Fetch before taking the lock; nothing is committed if this fails
        content_id = listing.vector_record.content_id
        vector = await self._catalog.retrieve(content_id)

        async with self._locks[listing_id]:
            if listing.status is not ListingStatus.ACTIVE:
                raise ListingUnavailable(listing_id, listing.status.value)

            record = PurchaseRecord(
                listing_id=listing_id,
                buyer=buyer,
                seller=listing.seller,
                price=listing.price,
                settled_at=time.time(),
                transaction_ref=proof.transaction_ref,
            )
            # The only step that can fail goes first
            self._catalog.transfer_ownership(content_id, buyer)
            listing.status = ListingStatus.SOLD
            self._purchases.append(record)

        logger.info(f"Sold {listing_id} to {buyer} for {listing.price} ({proof.transaction_ref})")
        return vector, record

    async def cancel(self, listing_id: str, seller: str) -> Listing:
        """
        Withdraw an active listing.

        Raises:
            ListingNotFound: If the listing does not exist.
            NotListingSeller: If seller is not the listing's seller.
            ListingUnavailable: If the listing is already sold or cancelled.
        """
        listing = self._require(listing_id)
        if listing.seller != seller:
            raise NotListingSeller(f"{seller} is not the seller of listing {listing_id}")

        async with self._locks[listing_id]:
            if listing.status is not ListingStatus.ACTIVE:
                raise ListingUnavailable(listing_id, listing.status.value)
            listing.status = ListingStatus.CANCELLED

        logger.info(f"Cancelled listing {listing_id}")
        await self._emit(LISTING_CANCELLED, listing_id, seller=seller)
        return listing

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        """Gets a listing by id."""
        return self._listings.get(listing_id)

    def list_all(self, status: Optional[ListingStatus] = None) -> List[Listing]:
        """Gets all listings, optionally only those with a given status."""
        listings = list(self._listings.values())
        if status is not None:
            listings = [entry for entry in listings if entry.status is status]
        return listings

    def purchases(self) -> List[PurchaseRecord]:
        """Settled purchases in settlement order."""
        return list(self._purchases)
