# src/press3/crypto/signer.py
from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from press3.errors import ValidationError

# Signature scheme flag prepended to the pubkey before hashing into an address.
ED25519_FLAG = b"\x00"


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except Exception as e:
        raise ValueError("not hex or base64") from e


def address_from_pubkey(pubkey: bytes) -> str:
    digest = hashlib.blake2b(ED25519_FLAG + bytes(pubkey), digest_size=32).hexdigest()
    return f"0x{digest}"


class Ed25519Signer:
    """Local keypair signer.

    Signs raw transaction bytes and returns a base64 signature. Wallet-backed
    signers that wait on a human approval implement the same surface.
    """

    def __init__(self, key: Ed25519PrivateKey) -> None:
        self._key = key
        self._pubkey = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self._address = address_from_pubkey(self._pubkey)

    @property
    def address(self) -> str:
        return self._address

    @property
    def public_key(self) -> bytes:
        return self._pubkey

    def sign(self, payload: bytes) -> str:
        return base64.b64encode(self._key.sign(bytes(payload))).decode("ascii")

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519Signer":
        if len(seed) == 64:
            # 64-byte expanded keys carry the seed in the first half.
            seed = seed[:32]
        if len(seed) != 32:
            raise ValidationError(reason="bad_key_length", details=len(seed))
        return cls(Ed25519PrivateKey.from_private_bytes(seed))


def load_publisher_signer(secret: Optional[str]) -> Ed25519Signer:
    """Build a signer from a publisher secret.

    Accepted forms: "ed25519:<key>", "0x<hex>", plain hex, or base64 of a
    32-byte seed / 64-byte expanded key.
    """
    trimmed = (secret or "").strip()
    if not trimmed:
        raise ValidationError(reason="publisher_key_empty")

    if trimmed.startswith("suiprivkey"):
        raise ValidationError(reason="unsupported_key_encoding", details="suiprivkey")

    if trimmed.startswith("ed25519:"):
        trimmed = trimmed[len("ed25519:"):]

    if trimmed.startswith("0x"):
        try:
            return Ed25519Signer.from_seed(bytes.fromhex(trimmed[2:]))
        except ValueError as e:
            raise ValidationError(reason="bad_hex_key", details=str(e)) from e

    try:
        raw = _decode_bytes(trimmed)
    except ValueError as e:
        raise ValidationError(reason="unparseable_publisher_key", details=str(e)) from e
    return Ed25519Signer.from_seed(raw)
