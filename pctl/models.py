"""pctl Models - Data classes for token requests and results.

This module provides structured data types for:
- The token endpoint's JSON response
- The token result handed to callers and renderers
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pctl.exceptions import ResponseParseError

# Ten years; a larger expires_in from the token endpoint is treated as absent.
MAX_EXPIRES_IN = 10 * 365 * 24 * 3600


class TokenType(str, Enum):
    """Kind of token a configuration asks for."""

    SERVICE_ACCOUNT = "service-account"
    USER = "user"
    CUSTOM = "custom"


class OutputFormat(str, Enum):
    """How a token result is rendered."""

    TEXT = "text"
    JSON = "json"
    YAML = "yaml"


def _as_seconds(value: Any) -> int:
    """Read expires_in leniently.

    Anything non-numeric, non-finite, negative or above MAX_EXPIRES_IN
    counts as 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return 0
    if not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if not 0 <= value <= MAX_EXPIRES_IN:
        return 0
    return int(value)


@dataclass(frozen=True)
class TokenResponse:
    """Successful response body from the OAuth2 token endpoint."""

    access_token: str
    token_type: str
    expires_in: int = 0
    scope: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> TokenResponse:
        """Create from a decoded JSON response body.

        Raises:
            ResponseParseError: If the body is not an object or lacks
                access_token/token_type.
        """
        if not isinstance(data, dict):
            raise ResponseParseError("Token response is not a JSON object")
        for name in ("access_token", "token_type"):
            if not isinstance(data.get(name), str) or not data[name]:
                raise ResponseParseError(f"Token response is missing '{name}'")

        return cls(
            access_token=data["access_token"],
            token_type=data["token_type"],
            expires_in=_as_seconds(data.get("expires_in")),
            scope=data.get("scope") or "",
        )


@dataclass(frozen=True)
class TokenResult:
    """An access token obtained from a successful exchange."""

    access_token: str
    token_type: str
    expires_in: int
    expires_at: datetime
    scope: str = ""
    refresh_token: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(
        cls,
        response: TokenResponse,
        issued_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenResult:
        """Build a result, deriving expires_at from issued_at + expires_in.

        Raises:
            ResponseParseError: If expires_at falls outside the datetime range.
        """
        issued_at = issued_at or datetime.now(timezone.utc)
        try:
            expires_at = issued_at + timedelta(seconds=response.expires_in)
        except OverflowError:
            raise ResponseParseError(f"Token expiry out of range: expires_in={response.expires_in}") from None
        return cls(
            access_token=response.access_token,
            token_type=response.token_type,
            expires_in=response.expires_in,
            expires_at=expires_at,
            scope=response.scope,
            metadata=dict(metadata or {}),
        )

    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        return datetime.now(timezone.utc) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for rendering."""
        result: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at.isoformat(),
        }
        if self.scope:
            result["scope"] = self.scope
        if self.refresh_token:
            result["refresh_token"] = self.refresh_token
        if self.metadata:
            result["metadata"] = self.metadata
        return result
