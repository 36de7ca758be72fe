"""
VectorX402 Signer - the wallet capability used to sign payment messages.

The protocol only needs two things from a wallet: its address and a
signature over raw bytes. SignerInterface captures that; Ed25519Signer is
the bundled implementation built on a JWK private key.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.exceptions import InvalidSignature
from jwcrypto import jwk
from jwcrypto.common import JWException

from vectorx402.keys import address_from_public_jwk

logger = logging.getLogger(__name__)


class SignerInterface(ABC):
    """Abstract wallet capability. No assumption about key storage."""

    @abstractmethod
    async def address(self) -> str:
        """Return the wallet identity that signs payments."""
        pass

    @abstractmethod
    async def sign_message(self, message: bytes) -> str:
        """Sign raw message bytes and return the encoded signature."""
        pass


class Ed25519Signer(SignerInterface):
    """
    Signs payment messages with an Ed25519 key held as a JWK.

    Signatures are hex encoded with a "0x" prefix.

    Example:
        >>> identity = generate_identity()
        >>> signer = Ed25519Signer(private_key=identity.private_key_jwk)
        >>> await signer.address()
        '0x...'
    """

    def __init__(self, private_key: str, address: Optional[str] = None):
        """
        Initialize the signer with credentials.

        Args:
            private_key: JWK JSON string containing the Ed25519 private key.
            address: Optional wallet address override. Derived from the
                public key when omitted.

        Raises:
            ValueError: If private_key is missing or not an Ed25519 private key.
        """
        if not private_key:
            raise ValueError("Ed25519Signer requires 'private_key' (JWK JSON string)")

        try:
            self._key = jwk.JWK.from_json(private_key)
        except Exception as e:
            raise ValueError(f"Invalid JWK private key: {e}")

        if self._key["kty"] != "OKP" or self._key.get("crv") != "Ed25519":
            raise ValueError("Key must be an Ed25519 key (OKP with crv=Ed25519)")
        if not self._key.has_private:
            raise ValueError("Key must contain private material")

        self._address = address or address_from_public_jwk(self._key.export_public())

    async def address(self) -> str:
        return self._address

    async def sign_message(self, message: bytes) -> str:
        signature = self._key.get_op_key("sign").sign(message)
        return "0x" + signature.hex()

    def get_public_key_jwk(self) -> str:
        """
        Returns the public key in JWK format for verification.

        Returns:
            JSON string of the public JWK.
        """
        return self._key.export_public()


def verify_signature(public_key_jwk: str, message: bytes, signature: str) -> bool:
    """
    Check an Ed25519Signer signature against a public JWK.

    Returns False for malformed signatures as well as wrong ones.
    """
    try:
        key = jwk.JWK.from_json(public_key_jwk)
        raw = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
        key.get_op_key("verify").verify(raw, message)
        return True
    except InvalidSignature:
        return False
    except (ValueError, JWException) as e:
        logger.debug(f"Malformed signature: {e}")
        return False
