"""
VectorX402 - A payment-gated marketplace for AI memory shards.

Autonomous agents list vector embeddings for sale, search them by cosine
similarity, and pay for access with the X402 (HTTP 402 Payment Required)
challenge-response protocol.
"""

__version__ = "0.3.0"

# Errors
from .errors import (
    VectorX402Error,
    DimensionMismatch,
    ZeroVectorError,
    MalformedChallenge,
    UnsupportedStatus,
    MissingChallenge,
    MissingSigner,
    ExpiredChallenge,
    ReplayedNonce,
    PaymentMismatch,
    InvalidAuthorization,
    NotFound,
    ListingNotFound,
    ListingUnavailable,
    NotListingSeller,
)

# Vector math
from .vector_math import (
    dot_product,
    vector_norm,
    normalize_vector,
    cosine_similarity,
    euclidean_distance,
)

# Wallets
from .keys import generate_identity, KeyPair
from .signer import SignerInterface, Ed25519Signer

# Payment protocol
from .protocol import (
    PaymentChallenge,
    PaymentProof,
    PaymentProtocol,
    PaymentState,
    PaymentVerifier,
    parse_challenge,
    encode_challenge_headers,
    create_authorization_token,
    decode_authorization_token,
)

# Storage, catalog, marketplace
from .storage import ContentStoreInterface, MemoryContentStore
from .catalog import VectorCatalog, VectorRecord, SimilarityMatch
from .market import (
    MarketplaceEngine,
    Listing,
    ListingStatus,
    ListingFilters,
    PurchaseRecord,
    SearchResult,
)
from .client import VectorX402


# Secondary backends, resolved on first access
def __getattr__(name):
    """Resolve secondary backends from their submodules."""
    if name in ("MemoryNonceTracker", "RedisNonceTracker", "NonceTrackerInterface"):
        from . import nonce

        return getattr(nonce, name)
    elif name == "IPFSContentStore":
        from .storage import IPFSContentStore

        return IPFSContentStore
    elif name in ("LedgerInterface", "MemoryLedger", "SettlementRecord"):
        from . import ledger

        return getattr(ledger, name)
    elif name in ("AuditEvent", "AuditLogInterface", "MemoryAuditLog"):
        from . import audit

        return getattr(audit, name)
    elif name in ("MarketMetrics", "get_metrics"):
        from . import metrics

        return getattr(metrics, name)
    raise AttributeError(f"module 'vectorx402' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Errors
    "VectorX402Error",
    "DimensionMismatch",
    "ZeroVectorError",
    "MalformedChallenge",
    "UnsupportedStatus",
    "MissingChallenge",
    "MissingSigner",
    "ExpiredChallenge",
    "ReplayedNonce",
    "PaymentMismatch",
    "InvalidAuthorization",
    "NotFound",
    "ListingNotFound",
    "ListingUnavailable",
    "NotListingSeller",
    # Vector math
    "dot_product",
    "vector_norm",
    "normalize_vector",
    "cosine_similarity",
    "euclidean_distance",
    # Wallets
    "generate_identity",
    "KeyPair",
    "SignerInterface",
    "Ed25519Signer",
    # Protocol
    "PaymentChallenge",
    "PaymentProof",
    "PaymentProtocol",
    "PaymentState",
    "PaymentVerifier",
    "parse_challenge",
    "encode_challenge_headers",
    "create_authorization_token",
    "decode_authorization_token",
    # Storage / catalog / market
    "ContentStoreInterface",
    "MemoryContentStore",
    "IPFSContentStore",
    "VectorCatalog",
    "VectorRecord",
    "SimilarityMatch",
    "MarketplaceEngine",
    "Listing",
    "ListingStatus",
    "ListingFilters",
    "PurchaseRecord",
    "SearchResult",
    "VectorX402",
    # Optional backends
    "MemoryNonceTracker",
    "RedisNonceTracker",
    "NonceTrackerInterface",
    "LedgerInterface",
    "MemoryLedger",
    "SettlementRecord",
    "AuditEvent",
    "AuditLogInterface",
    "MemoryAuditLog",
    "MarketMetrics",
    "get_metrics",
]
