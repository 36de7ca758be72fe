"""
X402 payment protocol.

Implements the HTTP 402 Payment Required flow for micropayments:

1. Client sends request -> server answers 402 with a price/wallet challenge
2. Client signs a payment message bound to the challenge and request URL
3. Client retries the request with ``Authorization: X402 <proof>``

The client half (parse, sign, encode) lives in PaymentProtocol; the server
half (encode challenges, verify tokens) in encode_challenge_headers and
PaymentVerifier.
"""

import re
import hmac
import json
import time
import base64
import hashlib
import logging
import binascii
from enum import Enum
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from vectorx402 import config
from vectorx402.errors import (
    ExpiredChallenge,
    InvalidAuthorization,
    MalformedChallenge,
    MissingChallenge,
    MissingSigner,
    PaymentMismatch,
    ReplayedNonce,
    UnsupportedStatus,
)
from vectorx402.ledger import LedgerInterface, SettlementRecord
from vectorx402.nonce import MemoryNonceTracker, NonceTrackerInterface
from vectorx402.signer import SignerInterface, verify_signature

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED = 402

# Version tag of the canonical signed message; bump on any layout change
MESSAGE_VERSION = "x402-payment/1"

NATIVE_TOKEN = "native"

_STRUCTURED_FIELD = re.compile(r'([A-Za-z_]+)\s*=\s*"([^"]*)"')

_FIELDS = ("price", "wallet", "token", "nonce", "expiry")


class PaymentState(Enum):
    """Progress of a single payment flow. Transitions only move forward."""

    IDLE = "idle"
    CHALLENGE_RECEIVED = "challenge_received"
    SIGNED = "signed"
    AUTHORIZED = "authorized"


@dataclass(frozen=True)
class PaymentChallenge:
    """
    A payment requirement issued by a resource server.

    Attributes:
        price: Amount in the smallest token unit (arbitrary precision).
        pay_to: Recipient wallet address.
        token_address: Token contract; None means the native token.
        nonce: Single-use value for replay protection.
        expiry: Unix timestamp after which the challenge is void.
    """

    price: int
    pay_to: str
    token_address: Optional[str] = None
    nonce: Optional[str] = None
    expiry: Optional[int] = None

    def is_expired(self, now: Optional[float] = None, skew: int = 0) -> bool:
        if self.expiry is None:
            return False
        now = time.time() if now is None else now
        return now > self.expiry + skew


@dataclass(frozen=True)
class PaymentProof:
    """Signed evidence of payment for one challenge."""

    transaction_ref: str
    signature: str
    timestamp: int

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


def parse_price(value: Union[str, int]) -> int:
    """
    Parse a price into an integer amount.

    Prices are whole numbers of the smallest token unit, so decimal strings
    of arbitrary length are accepted but fractions and negatives are not.

    Raises:
        ValueError: If the value is not a non-negative integer.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid price: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValueError(f"Invalid price: {value!r}")
    if amount < 0:
        raise ValueError(f"Price must be non-negative: {value!r}")
    return amount


# =============================================================================
# Challenge encoding
# =============================================================================


def _structured_fields(headers: httpx.Headers) -> Optional[Dict[str, str]]:
    # A response may offer several challenges, one per header line
    for value in headers.get_list("www-authenticate"):
        parts = value.strip().split(None, 1)
        if not parts or parts[0].lower() != config.SCHEME.lower():
            continue

        params = parts[1] if len(parts) > 1 else ""
        return {name.lower(): field for name, field in _STRUCTURED_FIELD.findall(params)}
    return None


def _flat_fields(headers: httpx.Headers) -> Optional[Dict[str, str]]:
    fields = {}
    for name in _FIELDS:
        value = headers.get(f"{config.HEADER_PREFIX}{name}")
        if value:
            fields[name] = value
    return fields or None


def parse_challenge(headers: Mapping[str, str]) -> Optional[PaymentChallenge]:
    """
    Parse X402 payment details from response headers.

    Reads the structured ``WWW-Authenticate: X402 price="...", wallet="..."``
    form, falling back to flat ``X-402-Price`` / ``X-402-Wallet`` headers.
    Where both are present the structured value wins field by field.

    Returns:
        The challenge, or None if no X402 challenge is present.

    Raises:
        MalformedChallenge: If price or wallet is missing or a number is invalid.
    """
    headers = httpx.Headers(headers)
    structured = _structured_fields(headers)
    flat = _flat_fields(headers)

    if structured is None and flat is None:
        return None

    fields = {**(flat or {}), **(structured or {})}

    if not fields.get("price") or not fields.get("wallet"):
        raise MalformedChallenge("Invalid X402 challenge: price and wallet are required")

    try:
        price = parse_price(fields["price"])
    except ValueError as e:
        raise MalformedChallenge(str(e))

    expiry = None
    if fields.get("expiry"):
        try:
            expiry = int(fields["expiry"])
        except ValueError:
            raise MalformedChallenge(f"Invalid expiry: {fields['expiry']!r}")

    return PaymentChallenge(
        price=price,
        pay_to=fields["wallet"],
        token_address=fields.get("token") or None,
        nonce=fields.get("nonce") or None,
        expiry=expiry,
    )


def encode_challenge_headers(challenge: PaymentChallenge, structured: bool = True) -> Dict[str, str]:
    """
    Encode a challenge the way a resource server sends it.

    Args:
        challenge: The challenge to encode.
        structured: Emit a WWW-Authenticate header; otherwise flat X-402-* headers.
    """
    fields = {"price": str(challenge.price), "wallet": challenge.pay_to}
    if challenge.token_address:
        fields["token"] = challenge.token_address
    if challenge.nonce:
        fields["nonce"] = challenge.nonce
    if challenge.expiry is not None:
        fields["expiry"] = str(challenge.expiry)

    if structured:
        params = ", ".join(f'{name}="{value}"' for name, value in fields.items())
        return {"WWW-Authenticate": f"{config.SCHEME} {params}"}

    return {f"{config.HEADER_PREFIX}{name.capitalize()}": value for name, value in fields.items()}


def validate_status(response: httpx.Response) -> None:
    """
    Require the triggering response to be a 402 Payment Required.

    Raises:
        UnsupportedStatus: For any other status.
    """
    if response.status_code != PAYMENT_REQUIRED:
        raise UnsupportedStatus(response.status_code)


# =============================================================================
# Signed message and tokens
# =============================================================================


def canonical_message(challenge: PaymentChallenge, request_url: str, timestamp: int) -> bytes:
    """
    Build the byte-exact message a payer signs.

    Compact JSON with sorted keys. The price is a decimal string so that
    amounts beyond float precision survive, and a missing nonce is replaced
    by the timestamp.
    """
    message = {
        "nonce": challenge.nonce or str(timestamp),
        "price": str(challenge.price),
        "recipient": challenge.pay_to,
        "timestamp": timestamp,
        "token": challenge.token_address or NATIVE_TOKEN,
        "url": request_url,
        "version": MESSAGE_VERSION,
    }
    return json.dumps(message, sort_keys=True, separators=(",", ":")).encode("utf-8")


def derive_transaction_ref(message: bytes, signature: str) -> str:
    """Deterministic reference for a signed message. Nothing is broadcast."""
    return "0x" + hashlib.sha256(message + signature.encode("utf-8")).hexdigest()


def create_authorization_token(proof: PaymentProof) -> str:
    """
    Creates the Authorization header value for a proof.

    Format: ``X402 <base64(JSON{tx, sig, ts})>``
    """
    body = json.dumps(
        {"tx": proof.transaction_ref, "sig": proof.signature, "ts": proof.timestamp},
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"{config.SCHEME} {base64.b64encode(body.encode('utf-8')).decode('ascii')}"


def decode_authorization_token(token: str) -> PaymentProof:
    """
    Decode an Authorization header value back into a PaymentProof.

    Raises:
        InvalidAuthorization: If the scheme, encoding or fields are wrong.
    """
    if not token:
        raise InvalidAuthorization("Empty authorization token")

    parts = token.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != config.SCHEME.lower():
        raise InvalidAuthorization(f"Expected '{config.SCHEME} <proof>' authorization")

    try:
        data: Dict[str, Any] = json.loads(base64.b64decode(parts[1], validate=True))
    except (binascii.Error, ValueError) as e:
        raise InvalidAuthorization(f"Undecodable authorization token: {e}")

    if not isinstance(data, dict):
        raise InvalidAuthorization("Authorization payload must be an object")

    tx, sig, ts = data.get("tx"), data.get("sig"), data.get("ts")
    if not isinstance(tx, str) or not isinstance(sig, str) or not isinstance(ts, int):
        raise InvalidAuthorization("Authorization payload needs tx, sig and ts")

    return PaymentProof(transaction_ref=tx, signature=sig, timestamp=ts)


# =============================================================================
# Client side
# =============================================================================


class PaymentProtocol:
    """
    Client half of the X402 flow: challenge in, authorization token out.

    Tracks the nonces its signer has consumed so a challenge can be paid
    only once.

    Example:
        >>> protocol = PaymentProtocol(signer=Ed25519Signer(private_key=key))
        >>> response = await client.get(url)
        >>> if response.status_code == 402:
        ...     token = await protocol.process_payment_flow(response, url)
        ...     response = await client.get(url, headers={"Authorization": token})
    """

    def __init__(
        self,
        signer: Optional[SignerInterface] = None,
        nonce_tracker: Optional[NonceTrackerInterface] = None,
        ledger: Optional[LedgerInterface] = None,
        retention_seconds: int = config.NONCE_RETENTION_SECONDS,
        metrics=None,
    ):
        """
        Initialize the protocol client.

        Args:
            signer: Wallet capability; required before signing.
            nonce_tracker: Store for consumed nonces (default: in-memory).
            ledger: Optional settlement backend used by settle().
            retention_seconds: Minimum time a consumed nonce is remembered.
            metrics: Optional MarketMetrics collector.
        """
        self._signer = signer
        self._nonce_tracker = nonce_tracker or MemoryNonceTracker()
        self._ledger = ledger
        self._retention = retention_seconds
        self._metrics = metrics
        self._state = PaymentState.IDLE

    def set_signer(self, signer: SignerInterface) -> None:
        """Sets the wallet signer for payment transactions."""
        self._signer = signer

    @property
    def state(self) -> PaymentState:
        """State reached by the most recent flow."""
        return self._state

    def parse_challenge(self, headers: Mapping[str, str]) -> Optional[PaymentChallenge]:
        challenge = parse_challenge(headers)
        if challenge is not None:
            self._state = PaymentState.CHALLENGE_RECEIVED
        return challenge

    def validate_status(self, response: httpx.Response) -> None:
        validate_status(response)

    async def sign_payment(self, challenge: PaymentChallenge, request_url: str) -> PaymentProof:
        """
        Sign a payment for a challenge.

        Args:
            challenge: Payment details from the 402 response.
            request_url: Original request URL, bound into the signed message.

        Returns:
            PaymentProof with transaction reference, signature and timestamp.

        Raises:
            MissingSigner: If no signer is configured.
            ExpiredChallenge: If the challenge has expired.
            ReplayedNonce: If this signer already paid the challenge nonce.
        """
        if self._signer is None:
            raise MissingSigner("No signer configured. Call set_signer() first.")

        timestamp = int(time.time())
        if challenge.is_expired(timestamp):
            raise ExpiredChallenge(f"Challenge expired at {challenge.expiry}")

        address = await self._signer.address()

        if challenge.nonce and await self._nonce_tracker.is_used(address, challenge.nonce):
            self._replay_blocked(address, challenge.nonce)

        message = canonical_message(challenge, request_url, timestamp)
        signature = await self._signer.sign_message(message)

        if challenge.nonce:
            # Derived nonces (no challenge nonce) are timestamps and are not tracked
            retain_until = max(challenge.expiry or 0, timestamp + self._retention)
            if not await self._nonce_tracker.consume(address, challenge.nonce, retain_until):
                self._replay_blocked(address, challenge.nonce)

        proof = PaymentProof(
            transaction_ref=derive_transaction_ref(message, signature),
            signature=signature,
            timestamp=timestamp,
        )
        self._state = PaymentState.SIGNED
        if self._metrics:
            self._metrics.record_payment_signed()
        logger.debug(f"Signed payment {proof.transaction_ref} for {request_url}")
        return proof

    def _replay_blocked(self, address: str, nonce: str) -> None:
        logger.warning(f"Replay blocked: nonce {nonce} already used by {address}")
        if self._metrics:
            self._metrics.record_replay_blocked()
        raise ReplayedNonce(f"Nonce {nonce} already consumed")

    def create_authorization_token(self, proof: PaymentProof) -> str:
        token = create_authorization_token(proof)
        self._state = PaymentState.AUTHORIZED
        return token

    async def process_payment_flow(self, response: httpx.Response, request_url: str) -> str:
        """
        Complete X402 flow: check 402, parse challenge, sign, return auth header.

        Any failure aborts the flow with the originating error. Retrying the
        original request with the token is up to the caller.

        Raises:
            UnsupportedStatus: If the response is not a 402.
            MissingChallenge: If the 402 carries no challenge.
        """
        self._state = PaymentState.IDLE
        self.validate_status(response)

        challenge = self.parse_challenge(response.headers)
        if challenge is None:
            raise MissingChallenge("Missing X402 payment details in response headers")

        proof = await self.sign_payment(challenge, request_url)
        return self.create_authorization_token(proof)

    async def settle(self, proof: PaymentProof) -> Optional[SettlementRecord]:
        """
        Hand a proof to the configured ledger.

        Returns:
            The settlement record, or None when no ledger is configured.
        """
        if self._ledger is None:
            return None
        if self._signer is None:
            raise MissingSigner("No signer configured. Call set_signer() first.")
        return await self._ledger.submit(proof, await self._signer.address())


# =============================================================================
# Server side
# =============================================================================


class PaymentVerifier:
    """
    Checks that an authorization token pays a specific challenge.

    The verifier rebuilds the canonical message from the challenge, the
    request URL and the token timestamp, then requires the token's
    transaction reference and signature to match it.

    Example:
        >>> verifier = PaymentVerifier(trusted_keys={address: public_jwk})
        >>> proof = verifier.verify(token, challenge, url, payer=address)
    """

    def __init__(
        self,
        trusted_keys: Optional[Dict[str, str]] = None,
        clock_skew_seconds: int = config.CLOCK_SKEW_SECONDS,
        require_known_payer: bool = True,
    ):
        """
        Initialize the verifier.

        Args:
            trusted_keys: Dict mapping wallet addresses to public JWK strings.
            clock_skew_seconds: Allowed clock drift for timestamp checks.
            require_known_payer: Reject payers without a registered key.
                When False, only the transaction binding is checked.
        """
        self._trusted_keys: Dict[str, str] = dict(trusted_keys or {})
        self._clock_skew = clock_skew_seconds
        self._require_known_payer = require_known_payer

    def add_trusted_key(self, address: str, public_key_jwk: str) -> None:
        """Register the public key a wallet signs with."""
        self._trusted_keys[address] = public_key_jwk

    def verify(
        self, token: str, challenge: PaymentChallenge, request_url: str, payer: str
    ) -> PaymentProof:
        """
        Verify a token against the challenge it claims to pay.

        Returns:
            The decoded PaymentProof.

        Raises:
            InvalidAuthorization: If the token cannot be decoded.
            ExpiredChallenge: If the challenge has expired.
            PaymentMismatch: If the token does not pay this challenge at this
                URL, or the signature is not the payer's.
        """
        proof = decode_authorization_token(token)
        now = time.time()

        if challenge.is_expired(now, self._clock_skew):
            raise ExpiredChallenge(f"Challenge expired at {challenge.expiry}")
        if proof.timestamp > now + self._clock_skew:
            raise PaymentMismatch("Payment timestamp is in the future")

        message = canonical_message(challenge, request_url, proof.timestamp)
        expected = derive_transaction_ref(message, proof.signature)
        if not hmac.compare_digest(expected, proof.transaction_ref):
            logger.warning(f"Payment {proof.transaction_ref} does not match challenge for {request_url}")
            raise PaymentMismatch("Payment does not match the challenge amount, recipient or URL")

        public_key = self._trusted_keys.get(payer)
        if public_key is None:
            if self._require_known_payer:
                raise PaymentMismatch(f"No public key registered for payer {payer}")
            logger.debug(f"Skipping signature check for unregistered payer {payer}")
        elif not verify_signature(public_key, message, proof.signature):
            logger.warning(f"Bad payment signature from {payer}")
            raise PaymentMismatch(f"Signature does not belong to payer {payer}")

        return proof
