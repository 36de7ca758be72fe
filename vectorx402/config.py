# vectorx402/config.py
"""
Centralized configuration for VectorX402.

All configurable values are read from environment variables with sensible defaults.
This allows different deployments (tests, local agents, hosted markets) to use
different settings without code changes.

Usage:
    from vectorx402.config import SCHEME, MAX_SEARCH_LIMIT

Environment Variables:
    VECTORX402_SCHEME: Authentication scheme name (default: X402)
    VECTORX402_HEADER_PREFIX: Prefix of the flat challenge headers (default: X-402-)
    VECTORX402_SIMILARITY_THRESHOLD: Catalog default threshold (default: 0.8)
    VECTORX402_SEARCH_MIN_SIMILARITY: Marketplace search default (default: 0.7)
    VECTORX402_SEARCH_LIMIT: Default result count (default: 10)
    VECTORX402_MAX_SEARCH_LIMIT: Ceiling on any result count (default: 100)
    VECTORX402_NONCE_RETENTION: Seconds a consumed nonce is remembered (default: 3600)
    VECTORX402_CHALLENGE_TTL: Lifetime of issued challenges (default: 300)
    VECTORX402_CLOCK_SKEW: Tolerated drift when checking expiry (default: 30)
    VECTORX402_MARKET_URL: Base URL listings are served under
    VECTORX402_IPFS_API: IPFS HTTP API endpoint (default: http://127.0.0.1:5001)
"""

import os
from typing import Final

# =============================================================================
# Protocol Configuration
# =============================================================================

# Scheme name used in WWW-Authenticate and Authorization headers
SCHEME: Final[str] = os.getenv("VECTORX402_SCHEME", "X402")

# Flat header fallback: X-402-Price, X-402-Wallet, ...
HEADER_PREFIX: Final[str] = os.getenv("VECTORX402_HEADER_PREFIX", "X-402-")

# Consumed nonces are kept at least this long (longer if the challenge expiry is later)
NONCE_RETENTION_SECONDS: Final[int] = int(os.getenv("VECTORX402_NONCE_RETENTION", "3600"))

CHALLENGE_TTL_SECONDS: Final[int] = int(os.getenv("VECTORX402_CHALLENGE_TTL", "300"))

CLOCK_SKEW_SECONDS: Final[int] = int(os.getenv("VECTORX402_CLOCK_SKEW", "30"))

# =============================================================================
# Search Configuration
# =============================================================================

SIMILARITY_THRESHOLD: Final[float] = float(
    os.getenv("VECTORX402_SIMILARITY_THRESHOLD", "0.8")
)

SEARCH_MIN_SIMILARITY: Final[float] = float(
    os.getenv("VECTORX402_SEARCH_MIN_SIMILARITY", "0.7")
)

SEARCH_LIMIT: Final[int] = int(os.getenv("VECTORX402_SEARCH_LIMIT", "10"))

MAX_SEARCH_LIMIT: Final[int] = int(os.getenv("VECTORX402_MAX_SEARCH_LIMIT", "100"))

# =============================================================================
# Endpoints
# =============================================================================

MARKET_URL: Final[str] = os.getenv("VECTORX402_MARKET_URL", "https://market.vectorx402.local")

IPFS_API: Final[str] = os.getenv("VECTORX402_IPFS_API", "http://127.0.0.1:5001")

# =============================================================================
# Helper Functions
# =============================================================================


def get_listing_url(listing_id: str) -> str:
    """
    Canonical resource URL for a listing.

    This is the URL buyers bind into their signed payment message, so the
    marketplace must rebuild it identically when verifying.
    """
    return f"{MARKET_URL.rstrip('/')}/listings/{listing_id}"


def clamp_limit(limit: int) -> int:
    """Cap a requested result count at MAX_SEARCH_LIMIT."""
    if limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit}")
    return min(limit, MAX_SEARCH_LIMIT)


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================


def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    print("VectorX402 Configuration:")
    print(f"  SCHEME:                 {SCHEME}")
    print(f"  HEADER_PREFIX:          {HEADER_PREFIX}")
    print(f"  NONCE_RETENTION:        {NONCE_RETENTION_SECONDS}")
    print(f"  CHALLENGE_TTL:          {CHALLENGE_TTL_SECONDS}")
    print(f"  CLOCK_SKEW:             {CLOCK_SKEW_SECONDS}")
    print(f"  SIMILARITY_THRESHOLD:   {SIMILARITY_THRESHOLD}")
    print(f"  SEARCH_MIN_SIMILARITY:  {SEARCH_MIN_SIMILARITY}")
    print(f"  SEARCH_LIMIT:           {SEARCH_LIMIT}")
    print(f"  MAX_SEARCH_LIMIT:       {MAX_SEARCH_LIMIT}")
    print(f"  MARKET_URL:             {MARKET_URL}")
    print(f"  IPFS_API:               {IPFS_API}")


if __name__ == "__main__":
    print_config()
