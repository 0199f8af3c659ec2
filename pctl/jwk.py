"""Reconstruction of private signing keys from JSON Web Key descriptions."""

from __future__ import annotations

import binascii
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from jwt.utils import base64url_decode

from pctl.exceptions import KeyMaterialError

logger = logging.getLogger(__name__)

# Fixed regardless of the key description's "e" ("AQAB").
RSA_PUBLIC_EXPONENT = 65537

_BASE64URL = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class RSAKeyDescription:
    """RSA private key material as carried by a JWK.

    Only n, d, p and q are used to rebuild the key. The remaining members are
    kept for reference and never influence signing.
    """

    kty: ClassVar[str] = "RSA"

    n: str = field(default="", repr=False)
    d: str = field(default="", repr=False)
    p: str = field(default="", repr=False)
    q: str = field(default="", repr=False)
    e: str = field(default="AQAB", repr=False)
    kid: str | None = None
    use: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RSAKeyDescription:
        """Create from a parsed JWK object."""
        return cls(
            n=data.get("n") or "",
            d=data.get("d") or "",
            p=data.get("p") or "",
            q=data.get("q") or "",
            e=data.get("e") or "AQAB",
            kid=data.get("kid"),
            use=data.get("use"),
        )


# Key types this decoder knows how to rebuild, keyed by JWK "kty".
KEY_TYPES: dict[str, type[RSAKeyDescription]] = {
    RSAKeyDescription.kty: RSAKeyDescription,
}


class SigningKey:
    """An RS256 private key usable only for signing.

    The numeric key material is never exposed; callers can sign bytes or a
    claim set and obtain the matching public key for verification.
    """

    algorithm = "RS256"

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str | None = None) -> None:
        self._key = private_key
        self.kid = kid

    @property
    def key_size(self) -> int:
        return self._key.key_size

    def sign(self, data: bytes) -> bytes:
        """Sign raw bytes with RSASSA-PKCS1-v1_5 over SHA-256."""
        return self._key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def sign_claims(self, claims: dict[str, Any]) -> str:
        """Sign a claim set and return the compact JWT."""
        return jwt.encode(claims, self._key, algorithm=self.algorithm)

    def public_key(self) -> rsa.RSAPublicKey:
        return self._key.public_key()

    def __repr__(self) -> str:
        return f"SigningKey(algorithm={self.algorithm!r}, key_size={self.key_size})"


def parse_jwk(source: str | Mapping[str, Any]) -> RSAKeyDescription:
    """Parse a JWK given as a JSON string or an already-decoded mapping.

    Raises:
        KeyMaterialError: If the JWK is not valid JSON or its key type is
            not supported.
    """
    if isinstance(source, str):
        try:
            data = json.loads(source)
        except json.JSONDecodeError as e:
            raise KeyMaterialError(f"Failed to parse JWK: {e.msg}", field="jwk_json") from None
    else:
        data = source

    if not isinstance(data, Mapping):
        raise KeyMaterialError("JWK must be a JSON object", field="jwk_json")

    kty = data.get("kty")
    description_type = KEY_TYPES.get(kty) if isinstance(kty, str) else None
    if description_type is None:
        raise KeyMaterialError(f"Unsupported key type: {kty!r}", field="kty")
    return description_type.from_dict(data)


def _decode_int(value: Any, name: str) -> int:
    if not isinstance(value, str) or not value:
        raise KeyMaterialError(f"Key description is missing '{name}'", field=name)
    if not _BASE64URL.fullmatch(value):
        raise KeyMaterialError(
            f"Key field '{name}' is not unpadded base64url (length {len(value)})",
            field=name,
        )
    try:
        raw = base64url_decode(value)
    except (binascii.Error, ValueError):
        raise KeyMaterialError(
            f"Key field '{name}' is not unpadded base64url (length {len(value)})",
            field=name,
        ) from None
    return int.from_bytes(raw, "big")


def decode(description: RSAKeyDescription | str | Mapping[str, Any]) -> SigningKey:
    """Rebuild an RSA signing key from a key description.

    The CRT parameters are derived here so the returned key is ready to sign.

    Args:
        description: A parsed key description, or a JWK as JSON/mapping.

    Returns:
        SigningKey wrapping the reconstructed private key.

    Raises:
        KeyMaterialError: If a field is missing, is not base64url, or the
            values do not form a consistent RSA key.
    """
    if not isinstance(description, RSAKeyDescription):
        description = parse_jwk(description)

    n = _decode_int(description.n, "n")
    d = _decode_int(description.d, "d")
    p = _decode_int(description.p, "p")
    q = _decode_int(description.q, "q")

    try:
        numbers = rsa.RSAPrivateNumbers(
            p=p,
            q=q,
            d=d,
            dmp1=rsa.rsa_crt_dmp1(d, p),
            dmq1=rsa.rsa_crt_dmq1(d, q),
            iqmp=rsa.rsa_crt_iqmp(p, q),
            public_numbers=rsa.RSAPublicNumbers(RSA_PUBLIC_EXPONENT, n),
        )
        private_key = numbers.private_key()
    except (ValueError, ZeroDivisionError):
        # The underlying message can quote key values; keep it out of the error.
        raise KeyMaterialError("Key description does not form a valid RSA private key") from None

    logger.debug("Decoded RSA signing key (%d bits)", private_key.key_size)
    return SigningKey(private_key, kid=description.kid)
