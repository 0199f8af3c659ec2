"""pctl - service-account access tokens for the identity platform.

This package provides a simple interface for:
- Rebuilding RSA signing keys from JSON Web Keys
- Signing single-use JWT-Bearer assertions
- Exchanging assertions for access tokens
"""

from pctl.assertion import AssertionBuilder, AssertionClaims, SignedAssertion
from pctl.client import ServiceAccountTokenGenerator, TokenClient, TokenExchangeClient
from pctl.config import RequestConfig, TokenConfig, load_config, normalize
from pctl.exceptions import (
    AssertionError,
    ConfigError,
    ExchangeError,
    KeyMaterialError,
    PctlError,
    ResponseParseError,
    TransportError,
)
from pctl.jwk import RSAKeyDescription, SigningKey
from pctl.models import OutputFormat, TokenResponse, TokenResult, TokenType

__version__ = "0.1.0"
__all__ = [
    "TokenClient",
    "ServiceAccountTokenGenerator",
    "TokenExchangeClient",
    "AssertionBuilder",
    "AssertionClaims",
    "SignedAssertion",
    "RSAKeyDescription",
    "SigningKey",
    "TokenConfig",
    "RequestConfig",
    "load_config",
    "normalize",
    "PctlError",
    "ConfigError",
    "KeyMaterialError",
    "AssertionError",
    "TransportError",
    "ResponseParseError",
    "ExchangeError",
    # Models
    "OutputFormat",
    "TokenResponse",
    "TokenResult",
    "TokenType",
]
