"""The marketplace's secp256k1 signing key."""

from __future__ import annotations

import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

_ENV_VAR = "MARKETPLACE_SECRET_KEY"
_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class KeyError_(ValueError):
    """Raised for malformed or invalid keys."""


def _compressed(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def parse_public_key(text: str) -> bytes:
    """Parse a hex secp256k1 public key and return its 33-byte compressed form."""
    if len(text) not in (66, 130):
        raise KeyError_(f"invalid public key {text!r}: wrong length")
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise KeyError_(f"invalid public key {text!r}: {exc}") from exc
    try:
        key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    except ValueError as exc:
        raise KeyError_(f"invalid public key {text!r}: {exc}") from exc
    return _compressed(key)


class MarketplaceKeypair:
    """A secp256k1 key pair used to co-sign protected sales."""

    def __init__(self, secret_key: bytes) -> None:
        secret_key = bytes(secret_key)
        if len(secret_key) != 32:
            raise KeyError_(f"invalid secret key: expected 32 bytes, got {len(secret_key)}")
        scalar = int.from_bytes(secret_key, "big")
        if not 0 < scalar < _CURVE_ORDER:
            raise KeyError_("invalid secret key: out of range for secp256k1")
        self._private_key = ec.derive_private_key(scalar, ec.SECP256K1())
        self._public_key = _compressed(self._private_key.public_key())

    @classmethod
    def from_env(cls) -> "MarketplaceKeypair":
        """Load the key from MARKETPLACE_SECRET_KEY (64 hex characters)."""
        value = os.environ.get(_ENV_VAR)
        if value is None:
            raise KeyError_(f"{_ENV_VAR} env var not set")
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise KeyError_(f"{_ENV_VAR} is not valid hex: {exc}") from exc
        if len(raw) != 32:
            raise KeyError_(
                f"{_ENV_VAR} must be 64 hex chars (32 bytes), got {len(raw)} bytes"
            )
        return cls(raw)

    def pubkey_hex(self) -> str:
        """The compressed public key as 66 hex characters."""
        return self._public_key.hex()

    def public_key(self) -> bytes:
        """The compressed 33-byte public key."""
        return self._public_key

    def sign_sighash(self, sighash: bytes) -> bytes:
        """Sign a 32-byte sighash; returns a low-S DER-encoded ECDSA signature."""
        digest = bytes(sighash)
        if len(digest) != 32:
            raise KeyError_(f"sighash must be 32 bytes, got {len(digest)}")
        der = self._private_key.sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        r, s = utils.decode_dss_signature(der)
        if s > _CURVE_ORDER // 2:
            s = _CURVE_ORDER - s
        return utils.encode_dss_signature(r, s)

    def __repr__(self) -> str:
        return f"MarketplaceKeypair(pubkey={self.pubkey_hex()})"