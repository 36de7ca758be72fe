"""
VectorX402 error taxonomy.

Every failure raised by the package derives from VectorX402Error so callers
can catch the whole family, or a single kind when they need to give precise
feedback (e.g. "already sold" vs "insufficient payment").
"""


class VectorX402Error(Exception):
    """Base class for all VectorX402 errors."""


# =============================================================================
# Vector math
# =============================================================================


class VectorMathError(VectorX402Error):
    """Invalid numeric input."""


class DimensionMismatch(VectorMathError):
    """Two vectors of different length were combined."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimension mismatch: {left} vs {right}")
        self.left = left
        self.right = right


class ZeroVectorError(VectorMathError):
    """An operation needed a non-zero norm."""


# =============================================================================
# Payment protocol
# =============================================================================


class PaymentError(VectorX402Error):
    """Base class for payment flow failures."""


class MalformedChallenge(PaymentError):
    """A challenge was present but missing or garbling required fields."""


class UnsupportedStatus(PaymentError):
    """The triggering response was not a 402 Payment Required."""

    def __init__(self, status_code: int):
        super().__init__(f"Expected 402 status, got {status_code}")
        self.status_code = status_code


class MissingChallenge(PaymentError):
    """A 402 response carried no recognisable payment challenge."""


class MissingSigner(PaymentError):
    """Signing was requested without a configured signer."""


class ExpiredChallenge(PaymentError):
    """The challenge expiry has passed."""


class ReplayedNonce(PaymentError):
    """The challenge nonce was already consumed by this signer."""


class PaymentMismatch(PaymentError):
    """The payment does not match the listing (amount, recipient or binding)."""


class InvalidAuthorization(PaymentError):
    """An authorization token could not be decoded."""


# =============================================================================
# Catalog / marketplace
# =============================================================================


class CatalogError(VectorX402Error):
    """Base class for content catalog failures."""


class NotFound(CatalogError):
    """No content exists at the requested address."""

    def __init__(self, content_id: str):
        super().__init__(f"Content not found: {content_id}")
        self.content_id = content_id


class MarketplaceError(VectorX402Error):
    """Base class for listing lifecycle failures."""


class ListingNotFound(MarketplaceError):
    def __init__(self, listing_id: str):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class ListingUnavailable(MarketplaceError):
    def __init__(self, listing_id: str, status: str):
        super().__init__(f"Listing {listing_id} is not available (status: {status})")
        self.listing_id = listing_id
        self.status = status


class NotListingSeller(MarketplaceError):
    """Only the seller may cancel a listing."""
