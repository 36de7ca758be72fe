"""
VectorX402 SDK client.

Bundles the payment protocol, vector catalog and marketplace into one
object, and offers fetch() for calling X402-protected HTTP resources.
"""

import logging
from typing import Optional

import httpx

from vectorx402.audit import AuditLogInterface
from vectorx402.catalog import VectorCatalog
from vectorx402.ledger import LedgerInterface
from vectorx402.market import MarketplaceEngine
from vectorx402.metrics import MarketMetrics
from vectorx402.nonce import NonceTrackerInterface
from vectorx402.protocol import PAYMENT_REQUIRED, PaymentProtocol, PaymentVerifier
from vectorx402.signer import SignerInterface
from vectorx402.storage import ContentStoreInterface, MemoryContentStore

logger = logging.getLogger(__name__)


class VectorX402:
    """
    Main VectorX402 client.

    Example:
        >>> sdk = VectorX402(signer=Ed25519Signer(private_key=key))
        >>> listing_id = await sdk.marketplace.list(vector, price=1000, seller=address)
        >>>
        >>> async with httpx.AsyncClient() as http:
        ...     response = await sdk.fetch(http, "https://shards.example.com/v/42")
    """

    def __init__(
        self,
        signer: Optional[SignerInterface] = None,
        store: Optional[ContentStoreInterface] = None,
        encryption_key: Optional[str] = None,
        nonce_tracker: Optional[NonceTrackerInterface] = None,
        ledger: Optional[LedgerInterface] = None,
        verifier: Optional[PaymentVerifier] = None,
        audit_log: Optional[AuditLogInterface] = None,
        metrics: Optional[MarketMetrics] = None,
    ):
        self.x402 = PaymentProtocol(
            signer=signer, nonce_tracker=nonce_tracker, ledger=ledger, metrics=metrics
        )
        self.vault = VectorCatalog(
            store or MemoryContentStore(), encryption_key=encryption_key, audit_log=audit_log
        )
        self.marketplace = MarketplaceEngine(
            self.vault, verifier=verifier, audit_log=audit_log, metrics=metrics
        )

    def set_signer(self, signer: SignerInterface) -> None:
        """Sets the wallet signer for payments."""
        self.x402.set_signer(signer)

    async def fetch(self, http: httpx.AsyncClient, url: str, method: str = "GET", **kwargs) -> httpx.Response:
        """
        Request a resource, paying once if the server answers 402.

        The retry carries the Authorization token; a second 402 is returned
        to the caller as-is rather than paid again.
        """
        response = await http.request(method, url, **kwargs)
        if response.status_code != PAYMENT_REQUIRED:
            return response

        token = await self.x402.process_payment_flow(response, url)
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = token

        logger.debug(f"Retrying {method} {url} with X402 authorization")
        return await http.request(method, url, headers=headers, **kwargs)
