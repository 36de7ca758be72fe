"""
Shared pytest fixtures for VectorX402 tests.
"""

import httpx
import pytest

from vectorx402 import Ed25519Signer, KeyPair, generate_identity
from vectorx402.audit import MemoryAuditLog
from vectorx402.catalog import VectorCatalog
from vectorx402.market import MarketplaceEngine
from vectorx402.metrics import MarketMetrics
from vectorx402.nonce import MemoryNonceTracker
from vectorx402.protocol import PaymentProtocol, encode_challenge_headers
from vectorx402.storage import MemoryContentStore


@pytest.fixture
def seller_identity() -> KeyPair:
    """Wallet of the listing agent."""
    return generate_identity()


@pytest.fixture
def buyer_identity() -> KeyPair:
    """Wallet of the purchasing agent."""
    return generate_identity()


@pytest.fixture
def buyer_signer(buyer_identity: KeyPair) -> Ed25519Signer:
    return Ed25519Signer(private_key=buyer_identity.private_key_jwk)


@pytest.fixture
def nonce_tracker() -> MemoryNonceTracker:
    """Create a nonce tracker for testing."""
    return MemoryNonceTracker(max_size=1000)


@pytest.fixture
def protocol(buyer_signer: Ed25519Signer, nonce_tracker: MemoryNonceTracker) -> PaymentProtocol:
    return PaymentProtocol(signer=buyer_signer, nonce_tracker=nonce_tracker)


@pytest.fixture
def content_store() -> MemoryContentStore:
    return MemoryContentStore()


@pytest.fixture
def audit_log() -> MemoryAuditLog:
    return MemoryAuditLog()


@pytest.fixture
def metrics() -> MarketMetrics:
    return MarketMetrics()


@pytest.fixture
def catalog(content_store: MemoryContentStore) -> VectorCatalog:
    return VectorCatalog(content_store)


@pytest.fixture
def engine(catalog, audit_log, metrics, buyer_identity: KeyPair) -> MarketplaceEngine:
    """Marketplace that already knows the buyer's wallet key."""
    engine = MarketplaceEngine(catalog, audit_log=audit_log, metrics=metrics)
    engine.register_wallet(buyer_identity.address, buyer_identity.public_key_jwk)
    return engine


@pytest.fixture
def sample_vector() -> list:
    return [0.12, -0.48, 0.33, 0.91, 0.05]


@pytest.fixture
def pay():
    """
    Pay for a listing the way a buying agent does: receive the 402
    challenge, run the protocol flow, return the token and challenge.
    """

    async def _pay(engine, listing_id, signer, challenge=None, url=None):
        challenge = challenge or engine.issue_challenge(listing_id)
        response = httpx.Response(402, headers=encode_challenge_headers(challenge))
        token = await PaymentProtocol(signer=signer).process_payment_flow(
            response, url or engine.resource_url(listing_id)
        )
        return token, challenge

    return _pay
