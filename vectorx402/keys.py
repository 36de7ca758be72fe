"""
Wallet identity generation.

Agents pay with an Ed25519 key; the wallet address is derived from the
public key so anyone holding the public JWK can recompute it.
"""

import hashlib
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from jwcrypto import jwk


@dataclass
class KeyPair:
    """A freshly generated agent identity."""

    private_key_jwk: str
    public_key_jwk: str
    address: str


def address_from_public_jwk(public_key_jwk: str) -> str:
    """
    Derive a wallet address from an Ed25519 public JWK.

    The address is "0x" followed by the last 20 bytes of SHA-256 over the raw
    32-byte public key.
    """
    key = jwk.JWK.from_json(public_key_jwk)
    raw = key.get_op_key("verify").public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return "0x" + hashlib.sha256(raw).hexdigest()[-40:]


def generate_identity() -> KeyPair:
    """
    Generates a fresh Ed25519 keypair for a new agent wallet.
    """
    key = jwk.JWK.generate(kty="OKP", crv="Ed25519")

    private_key = key.export_private()
    public_key = key.export_public()

    return KeyPair(
        private_key_jwk=private_key,
        public_key_jwk=public_key,
        address=address_from_public_jwk(public_key),
    )
