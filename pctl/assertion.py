"""Self-issued JWT-Bearer authentication assertions."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from jwt.utils import base64url_encode

from pctl.config import DEFAULT_LIFETIME_SECONDS
from pctl.exceptions import AssertionError
from pctl.jwk import SigningKey

logger = logging.getLogger(__name__)

JTI_BYTES = 16


def new_jti() -> str:
    """Return a fresh base64url assertion ID from 16 random bytes.

    Raises:
        AssertionError: If the system entropy source fails.
    """
    try:
        raw = secrets.token_bytes(JTI_BYTES)
    except (OSError, NotImplementedError) as e:
        raise AssertionError(f"Failed to generate assertion ID: {e}") from e
    return base64url_encode(raw).decode("ascii")


@dataclass(frozen=True)
class AssertionClaims:
    """Claims of a service-account authentication assertion."""

    iss: str  # Service account ID
    sub: str  # Service account ID
    aud: str  # Token endpoint URL
    exp: int  # Expiration (Unix timestamp)
    jti: str  # Assertion ID for replay protection

    def to_dict(self) -> dict:
        """Convert to dictionary for JWT encoding."""
        return {
            "iss": self.iss,
            "sub": self.sub,
            "aud": self.aud,
            "exp": self.exp,
            "jti": self.jti,
        }

    def is_expired(self) -> bool:
        return time.time() > self.exp


@dataclass(frozen=True)
class SignedAssertion:
    """A signed assertion, good for exactly one token exchange."""

    token: str
    claims: AssertionClaims

    def __str__(self) -> str:
        return self.token

    def __repr__(self) -> str:
        return f"SignedAssertion(jti={self.claims.jti!r}, aud={self.claims.aud!r}, length={len(self.token)})"


class AssertionBuilder:
    """Builder for signed assertions with a fluent interface.

    Example:
        >>> assertion = (AssertionBuilder()
        ...     .for_service_account("8b6e3a4c-...")
        ...     .audience("https://tenant.example.com/am/oauth2/access_token")
        ...     .lifetime(899)
        ...     .sign(key))
    """

    def __init__(self) -> None:
        self._service_account_id: str | None = None
        self._audience: str | None = None
        self._lifetime: int = DEFAULT_LIFETIME_SECONDS

    def for_service_account(self, service_account_id: str) -> AssertionBuilder:
        """Set the issuer and subject.

        Args:
            service_account_id: ID of the platform service account.
        """
        self._service_account_id = service_account_id
        return self

    def audience(self, token_endpoint_url: str) -> AssertionBuilder:
        """Set the audience (the token endpoint the assertion is sent to)."""
        self._audience = token_endpoint_url
        return self

    def lifetime(self, seconds: int) -> AssertionBuilder:
        """Set the assertion lifetime (default: 899 seconds)."""
        self._lifetime = seconds
        return self

    def claims(self, now: int | None = None) -> AssertionClaims:
        """Assemble the claim set with a fresh assertion ID.

        Raises:
            AssertionError: If required fields are missing.
        """
        if not self._service_account_id:
            raise AssertionError("Service account ID is required")
        if not self._audience:
            raise AssertionError("Audience is required")
        if self._lifetime <= 0:
            raise AssertionError(f"Lifetime must be positive, got {self._lifetime}")

        now = int(time.time()) if now is None else now
        return AssertionClaims(
            iss=self._service_account_id,
            sub=self._service_account_id,
            aud=self._audience,
            exp=now + self._lifetime,
            jti=new_jti(),
        )

    def sign(self, key: SigningKey, now: int | None = None) -> SignedAssertion:
        """Build the claims and sign them with RS256.

        Args:
            key: Signing key for the service account.
            now: Issue time as a Unix timestamp (default: the current time).

        Raises:
            AssertionError: If the claims cannot be built, are already
                expired, or cannot be signed.
        """
        claims = self.claims(now=now)
        if claims.is_expired():
            raise AssertionError(f"Assertion expired at {claims.exp} before it was signed")
        try:
            token = key.sign_claims(claims.to_dict())
        except (jwt.PyJWTError, UnsupportedAlgorithm, TypeError, ValueError) as e:
            raise AssertionError(f"Failed to sign assertion: {type(e).__name__}") from e

        logger.debug("Assertion created for audience: %s", claims.aud)
        logger.debug(
            "Assertion expiration: %s",
            datetime.fromtimestamp(claims.exp, tz=timezone.utc).isoformat(),
        )
        return SignedAssertion(token=token, claims=claims)


def build(
    service_account_id: str,
    token_endpoint_url: str,
    lifetime_seconds: int,
    key: SigningKey,
) -> SignedAssertion:
    """Build and sign a single-use assertion for the token endpoint."""
    return (
        AssertionBuilder()
        .for_service_account(service_account_id)
        .audience(token_endpoint_url)
        .lifetime(lifetime_seconds)
        .sign(key)
    )
