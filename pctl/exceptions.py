"""pctl exceptions.

Each stage of a token request raises its own error type so callers can tell a
bad configuration from a bad key, a rejected request or a flaky network.
"""

from __future__ import annotations


class PctlError(Exception):
    """Base exception for all pctl errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(PctlError):
    """Raised when the request configuration is missing or invalid."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class KeyMaterialError(PctlError):
    """Raised when a key description is malformed or incomplete."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class AssertionError(PctlError):  # noqa: A001
    """Raised when the authentication assertion cannot be signed."""


class TransportError(PctlError):
    """Raised when the token endpoint cannot be reached."""

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint


class ResponseParseError(PctlError):
    """Raised when a successful token response cannot be parsed."""

    def __init__(self, message: str, endpoint: str | None = None, body: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.body = body


class ExchangeError(PctlError):
    """Raised when the token endpoint rejects the assertion."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str,
        endpoint: str | None = None,
    ):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint
