"""
Unit tests for the X402 payment protocol.
"""

import asyncio
import base64
import hashlib
import json
import time
import dataclasses

import httpx
import pytest

from vectorx402 import Ed25519Signer, generate_identity
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
from vectorx402.ledger import MemoryLedger
from vectorx402.protocol import (
    PaymentChallenge,
    PaymentProof,
    PaymentProtocol,
    PaymentState,
    PaymentVerifier,
    canonical_message,
    create_authorization_token,
    decode_authorization_token,
    derive_transaction_ref,
    encode_challenge_headers,
    parse_challenge,
    parse_price,
    validate_status,
)

WALLET = "0x9f1c4b2a7d3e5f60718293a4b5c6d7e8f9012345"
URL = "https://shards.example.com/v/42"


def future(seconds: int = 300) -> int:
    return int(time.time()) + seconds


class TestParseChallenge:
    """Tests for parse_challenge()."""

    def test_structured_header(self):
        """All fields are read from WWW-Authenticate."""
        headers = {
            "WWW-Authenticate": (
                f'X402 price="1000000000000000000000", wallet="{WALLET}", '
                'token="0xtoken", nonce="n-1", expiry="1900000000"'
            )
        }
        challenge = parse_challenge(headers)

        assert challenge == PaymentChallenge(
            price=10**21,
            pay_to=WALLET,
            token_address="0xtoken",
            nonce="n-1",
            expiry=1900000000,
        )

    def test_flat_headers_only(self):
        """Flat X-402-* headers with price and wallet parse successfully."""
        challenge = parse_challenge({"X-402-Price": "500", "X-402-Wallet": WALLET})

        assert challenge.price == 500
        assert challenge.pay_to == WALLET
        assert challenge.token_address is None
        assert challenge.nonce is None
        assert challenge.expiry is None

    def test_header_names_case_insensitive(self):
        challenge = parse_challenge({"x-402-price": "7", "x-402-wallet": WALLET, "x-402-nonce": "abc"})
        assert challenge.nonce == "abc"

    def test_structured_takes_precedence(self):
        """Structured fields win over flat ones."""
        headers = {
            "WWW-Authenticate": f'X402 price="100", wallet="{WALLET}"',
            "X-402-Price": "999",
            "X-402-Wallet": "0xother",
        }
        challenge = parse_challenge(headers)
        assert challenge.price == 100
        assert challenge.pay_to == WALLET

    def test_missing_wallet_structured(self):
        with pytest.raises(MalformedChallenge):
            parse_challenge({"WWW-Authenticate": 'X402 price="100"'})

    def test_missing_wallet_flat(self):
        with pytest.raises(MalformedChallenge):
            parse_challenge({"X-402-Price": "100"})

    def test_missing_price(self):
        with pytest.raises(MalformedChallenge):
            parse_challenge({"WWW-Authenticate": f'X402 wallet="{WALLET}"'})

    def test_invalid_price(self):
        with pytest.raises(MalformedChallenge):
            parse_challenge({"X-402-Price": "1.5", "X-402-Wallet": WALLET})

    def test_invalid_expiry(self):
        with pytest.raises(MalformedChallenge):
            parse_challenge({"X-402-Price": "1", "X-402-Wallet": WALLET, "X-402-Expiry": "soon"})

    def test_no_challenge(self):
        """Responses without X402 headers yield None."""
        assert parse_challenge({"Content-Type": "application/json"}) is None

    def test_other_scheme_ignored(self):
        assert parse_challenge({"WWW-Authenticate": 'Bearer realm="api"'}) is None

    @pytest.mark.parametrize("value", ["", "   ", "\t"])
    def test_blank_www_authenticate(self, value):
        """A blank WWW-Authenticate header is no challenge."""
        assert parse_challenge({"WWW-Authenticate": value}) is None

    def test_blank_www_authenticate_with_flat_headers(self):
        challenge = parse_challenge({"WWW-Authenticate": "  ", "X-402-Price": "3", "X-402-Wallet": WALLET})
        assert challenge.price == 3

    def test_x402_among_several_challenges(self):
        """The X402 entry is picked out of repeated WWW-Authenticate headers."""
        headers = httpx.Headers(
            [
                ("WWW-Authenticate", 'Bearer realm="api"'),
                ("WWW-Authenticate", f'X402 price="5", wallet="{WALLET}"'),
            ]
        )
        challenge = parse_challenge(headers)

        assert challenge.price == 5
        assert challenge.pay_to == WALLET

    def test_several_challenges_from_response(self):
        response = httpx.Response(
            402,
            headers=[
                ("WWW-Authenticate", f'X402 price="8", wallet="{WALLET}", nonce="n-9"'),
                ("WWW-Authenticate", 'Basic realm="shards"'),
            ],
        )
        challenge = parse_challenge(response.headers)

        assert challenge.price == 8
        assert challenge.nonce == "n-9"


class TestEncodeChallenge:
    """Tests for encode_challenge_headers()."""

    def test_both_encodings_parse_back(self):
        challenge = PaymentChallenge(
            price=12345678901234567890, pay_to=WALLET, nonce="n", expiry=1900000000
        )
        assert parse_challenge(encode_challenge_headers(challenge)) == challenge
        assert parse_challenge(encode_challenge_headers(challenge, structured=False)) == challenge

    def test_structured_format(self):
        headers = encode_challenge_headers(PaymentChallenge(price=5, pay_to=WALLET))
        assert headers == {"WWW-Authenticate": f'X402 price="5", wallet="{WALLET}"'}

    def test_flat_format(self):
        headers = encode_challenge_headers(PaymentChallenge(price=5, pay_to=WALLET), structured=False)
        assert headers == {"X-402-Price": "5", "X-402-Wallet": WALLET}


class TestParsePrice:
    def test_big_integers(self):
        assert parse_price("340282366920938463463374607431768211456") == 2**128

    @pytest.mark.parametrize("value", ["", "-1", "1e18", "0x10", -5, 1.5, True])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            parse_price(value)


class TestValidateStatus:
    def test_402_passes(self):
        validate_status(httpx.Response(402))

    def test_other_status(self):
        with pytest.raises(UnsupportedStatus, match="got 200"):
            validate_status(httpx.Response(200))


class TestCanonicalMessage:
    """The signed preimage is byte-exact."""

    def test_exact_bytes(self):
        challenge = PaymentChallenge(price=1000, pay_to="0xseller", nonce="n1")
        message = canonical_message(challenge, "https://m/x", 1700000000)
        assert message == (
            b'{"nonce":"n1","price":"1000","recipient":"0xseller","timestamp":1700000000,'
            b'"token":"native","url":"https://m/x","version":"x402-payment/1"}'
        )

    def test_nonce_derived_from_timestamp(self):
        challenge = PaymentChallenge(price=1, pay_to="0xseller", token_address="0xtok")
        message = json.loads(canonical_message(challenge, URL, 1700000123))
        assert message["nonce"] == "1700000123"
        assert message["token"] == "0xtok"

    def test_transaction_ref(self):
        ref = derive_transaction_ref(b"msg", "0xsig")
        assert ref == "0x" + hashlib.sha256(b"msg0xsig").hexdigest()


class TestAuthorizationToken:
    """create/decode_authorization_token()."""

    def test_format(self):
        proof = PaymentProof(transaction_ref="0xabc", signature="0xdef", timestamp=1700000000)
        token = create_authorization_token(proof)

        scheme, body = token.split(" ", 1)
        assert scheme == "X402"
        assert json.loads(base64.b64decode(body)) == {"tx": "0xabc", "sig": "0xdef", "ts": 1700000000}
        assert decode_authorization_token(token) == proof

    def test_wrong_scheme(self):
        with pytest.raises(InvalidAuthorization):
            decode_authorization_token("Bearer abc")

    def test_not_base64(self):
        with pytest.raises(InvalidAuthorization):
            decode_authorization_token("X402 !!!not-base64!!!")

    def test_not_json(self):
        body = base64.b64encode(b"not json").decode()
        with pytest.raises(InvalidAuthorization):
            decode_authorization_token(f"X402 {body}")

    def test_missing_field(self):
        body = base64.b64encode(json.dumps({"tx": "0x1", "sig": "0x2"}).encode()).decode()
        with pytest.raises(InvalidAuthorization):
            decode_authorization_token(f"X402 {body}")

    def test_empty(self):
        with pytest.raises(InvalidAuthorization):
            decode_authorization_token("")


class TestSignPayment:
    """Tests for PaymentProtocol.sign_payment()."""

    @pytest.mark.asyncio
    async def test_missing_signer(self):
        protocol = PaymentProtocol()
        with pytest.raises(MissingSigner):
            await protocol.sign_payment(PaymentChallenge(price=1, pay_to=WALLET), URL)

    @pytest.mark.asyncio
    async def test_proof_binds_message(self, protocol, buyer_signer):
        """transaction_ref is derived from the canonical message and signature."""
        challenge = PaymentChallenge(price=1000, pay_to=WALLET, nonce="n-bind", expiry=future())
        proof = await protocol.sign_payment(challenge, URL)

        message = canonical_message(challenge, URL, proof.timestamp)
        assert proof.transaction_ref == derive_transaction_ref(message, proof.signature)
        assert proof.signature.startswith("0x")
        assert protocol.state is PaymentState.SIGNED

    @pytest.mark.asyncio
    async def test_expired_challenge(self, protocol, nonce_tracker, buyer_identity):
        """Expired challenges fail before signing and consume nothing."""
        challenge = PaymentChallenge(price=1, pay_to=WALLET, nonce="n-old", expiry=int(time.time()) - 10)

        with pytest.raises(ExpiredChallenge):
            await protocol.sign_payment(challenge, URL)

        assert await nonce_tracker.is_used(buyer_identity.address, "n-old") is False

    @pytest.mark.asyncio
    async def test_replayed_nonce(self, protocol):
        """The same nonce can be paid only once."""
        challenge = PaymentChallenge(price=1, pay_to=WALLET, nonce="n-once", expiry=future())

        await protocol.sign_payment(challenge, URL)
        with pytest.raises(ReplayedNonce):
            await protocol.sign_payment(challenge, URL)

    @pytest.mark.asyncio
    async def test_nonce_scoped_per_signer(self, protocol, nonce_tracker):
        """A different wallet may pay a challenge with the same nonce."""
        other = Ed25519Signer(private_key=generate_identity().private_key_jwk)
        other_protocol = PaymentProtocol(signer=other, nonce_tracker=nonce_tracker)
        challenge = PaymentChallenge(price=1, pay_to=WALLET, nonce="shared", expiry=future())

        await protocol.sign_payment(challenge, URL)
        await other_protocol.sign_payment(challenge, URL)

    @pytest.mark.asyncio
    async def test_nonceless_challenges_repeatable(self, protocol):
        challenge = PaymentChallenge(price=1, pay_to=WALLET)
        await protocol.sign_payment(challenge, URL)
        await protocol.sign_payment(challenge, URL)

    @pytest.mark.asyncio
    async def test_concurrent_same_nonce(self, protocol):
        """Racing signatures over one nonce: exactly one wins."""
        challenge = PaymentChallenge(price=1, pay_to=WALLET, nonce="n-race", expiry=future())
        results = await asyncio.gather(
            *[protocol.sign_payment(challenge, URL) for _ in range(5)], return_exceptions=True
        )

        assert sum(isinstance(r, PaymentProof) for r in results) == 1
        assert sum(isinstance(r, ReplayedNonce) for r in results) == 4


class TestPaymentFlow:
    """Tests for process_payment_flow()."""

    @pytest.mark.asyncio
    async def test_full_flow(self, protocol):
        challenge = PaymentChallenge(price=250, pay_to=WALLET, nonce="n-flow", expiry=future())
        response = httpx.Response(402, headers=encode_challenge_headers(challenge))

        token = await protocol.process_payment_flow(response, URL)

        assert token.startswith("X402 ")
        assert decode_authorization_token(token).transaction_ref.startswith("0x")
        assert protocol.state is PaymentState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_wrong_status(self, protocol):
        with pytest.raises(UnsupportedStatus):
            await protocol.process_payment_flow(httpx.Response(403), URL)
        assert protocol.state is PaymentState.IDLE

    @pytest.mark.asyncio
    async def test_missing_challenge(self, protocol):
        with pytest.raises(MissingChallenge):
            await protocol.process_payment_flow(httpx.Response(402), URL)

    @pytest.mark.asyncio
    async def test_malformed_challenge(self, protocol):
        response = httpx.Response(402, headers={"X-402-Price": "10"})
        with pytest.raises(MalformedChallenge):
            await protocol.process_payment_flow(response, URL)
        assert protocol.state is PaymentState.IDLE


class TestSettle:
    @pytest.mark.asyncio
    async def test_settle_with_ledger(self, buyer_signer, buyer_identity):
        ledger = MemoryLedger()
        protocol = PaymentProtocol(signer=buyer_signer, ledger=ledger)
        proof = await protocol.sign_payment(PaymentChallenge(price=1, pay_to=WALLET), URL)

        record = await protocol.settle(proof)

        assert record.payer == buyer_identity.address
        assert await ledger.get(proof.transaction_ref) == record

    @pytest.mark.asyncio
    async def test_settle_without_ledger(self, protocol):
        proof = await protocol.sign_payment(PaymentChallenge(price=1, pay_to=WALLET), URL)
        assert await protocol.settle(proof) is None


class TestPaymentVerifier:
    """Tests for the server-side PaymentVerifier."""

    @pytest.fixture
    def verifier(self, buyer_identity):
        return PaymentVerifier(trusted_keys={buyer_identity.address: buyer_identity.public_key_jwk})

    @pytest.fixture
    def challenge(self):
        return PaymentChallenge(price=1000, pay_to=WALLET, nonce="n-verify", expiry=future())

    async def _token(self, protocol, challenge, url=URL):
        proof = await protocol.sign_payment(challenge, url)
        return create_authorization_token(proof)

    @pytest.mark.asyncio
    async def test_valid_token(self, protocol, verifier, challenge, buyer_identity):
        token = await self._token(protocol, challenge)
        proof = verifier.verify(token, challenge, URL, buyer_identity.address)
        assert proof == decode_authorization_token(token)

    @pytest.mark.asyncio
    async def test_wrong_url(self, protocol, verifier, challenge, buyer_identity):
        token = await self._token(protocol, challenge)
        with pytest.raises(PaymentMismatch):
            verifier.verify(token, challenge, URL + "/other", buyer_identity.address)

    @pytest.mark.asyncio
    async def test_wrong_price(self, protocol, verifier, challenge, buyer_identity):
        token = await self._token(protocol, challenge)
        cheaper = dataclasses.replace(challenge, price=999)
        with pytest.raises(PaymentMismatch):
            verifier.verify(token, cheaper, URL, buyer_identity.address)

    @pytest.mark.asyncio
    async def test_unknown_payer(self, protocol, verifier, challenge):
        token = await self._token(protocol, challenge)
        with pytest.raises(PaymentMismatch, match="No public key"):
            verifier.verify(token, challenge, URL, "0xstranger")

    @pytest.mark.asyncio
    async def test_unknown_payer_allowed(self, protocol, challenge):
        token = await self._token(protocol, challenge)
        lenient = PaymentVerifier(require_known_payer=False)
        assert lenient.verify(token, challenge, URL, "0xstranger").timestamp > 0

    @pytest.mark.asyncio
    async def test_signature_from_other_key(self, verifier, challenge, buyer_identity):
        """A token signed by a different key under the buyer's address fails."""
        impostor = Ed25519Signer(
            private_key=generate_identity().private_key_jwk, address=buyer_identity.address
        )
        token = await self._token(PaymentProtocol(signer=impostor), challenge)

        with pytest.raises(PaymentMismatch, match="Signature"):
            verifier.verify(token, challenge, URL, buyer_identity.address)

    @pytest.mark.asyncio
    async def test_expired_challenge(self, protocol, verifier, challenge, buyer_identity):
        token = await self._token(protocol, challenge)
        expired = dataclasses.replace(challenge, expiry=int(time.time()) - 3600)
        with pytest.raises(ExpiredChallenge):
            verifier.verify(token, expired, URL, buyer_identity.address)

    def test_future_timestamp(self, verifier, challenge, buyer_identity):
        proof = PaymentProof(transaction_ref="0x0", signature="0x0", timestamp=future(3600))
        with pytest.raises(PaymentMismatch, match="future"):
            verifier.verify(
                create_authorization_token(proof), challenge, URL, buyer_identity.address
            )
