"""Token configuration loading and normalization.

Configuration files use the field names of the platform's tooling (camelCase
and snake_case mixed). ``TokenConfig`` holds them as loaded; ``normalize``
validates a config and reduces it to the ``RequestConfig`` the token pipeline
consumes.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from pctl.exceptions import ConfigError
from pctl.models import TokenType

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME_SECONDS = 899
TOKEN_ENDPOINT_PATH = "/am/oauth2/access_token"

# File key -> TokenConfig attribute.
FIELD_ALIASES = {
    "type": "type",
    "baseUrl": "base_url",
    "platform": "platform",
    "username": "username",
    "password": "password",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "service_account_id": "service_account_id",
    "serviceAccountName": "service_account_name",
    "privateKey": "private_key",
    "keyId": "key_id",
    "jwk_json": "jwk_json",
    "audience": "audience",
    "issuer": "issuer",
    "subject": "subject",
    "expiresIn": "expires_in",
    "exp_seconds": "exp_seconds",
    "scopes": "scopes",
    "scope": "scope",
    "output_format": "output_format",
    "verbose": "verbose",
    "verify_ssl": "verify_ssl",
    "proxy": "proxy",
    "customClaims": "custom_claims",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> timedelta:
    """Parse a duration given as seconds or as a string like "1h30m".

    Raises:
        ConfigError: If the value is not a recognised duration.
    """
    if value is None or value == "":
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}", field="expiresIn")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return timedelta(seconds=int(text))
        parts = _DURATION_PART.findall(text)
        if parts and "".join(n + u for n, u in parts) == text:
            return timedelta(seconds=sum(float(n) * _DURATION_UNITS[u] for n, u in parts))
    raise ConfigError(f"Invalid duration: {value!r}", field="expiresIn")


def _as_int(value: Any, name: str) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer", field=name) from None


def _as_bool(value: Any, name: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"'{name}' must be true or false, got {value!r}", field=name)
    return value


@dataclass
class TokenConfig:
    """Token configuration as read from a config file."""

    type: TokenType = TokenType.SERVICE_ACCOUNT

    # Platform connection details
    base_url: str = ""
    platform: str = ""  # Alternative name for base_url
    username: str = ""
    password: str = field(default="", repr=False)
    client_id: str = ""
    client_secret: str = field(default="", repr=False)

    # Service account
    service_account_id: str = ""
    service_account_name: str = ""
    private_key: str = field(default="", repr=False)
    key_id: str = ""
    jwk_json: str | dict[str, Any] = field(default="", repr=False)

    # Token properties
    audience: str = ""
    issuer: str = ""
    subject: str = ""
    expires_in: timedelta = field(default_factory=timedelta)
    exp_seconds: int = 0  # Alternative expiry format
    scopes: list[str] = field(default_factory=list)
    scope: str = ""  # Alternative single scope format

    # Output and behavior
    output_format: str = "text"
    verbose: bool = False
    verify_ssl: bool = True
    proxy: str = ""

    custom_claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenConfig:
        """Create from a mapping keyed by config-file field names.

        Raises:
            ConfigError: If a field has the wrong shape.
        """
        values = {FIELD_ALIASES[k]: v for k, v in data.items() if k in FIELD_ALIASES and v is not None}

        raw_type = values.pop("type", "") or TokenType.SERVICE_ACCOUNT.value
        try:
            token_type = TokenType(raw_type)
        except ValueError:
            raise ConfigError(f"Invalid token type: {raw_type}", field="type") from None

        scopes = values.pop("scopes", [])
        if isinstance(scopes, str):
            scopes = scopes.split()
        if not isinstance(scopes, list):
            raise ConfigError("'scopes' must be a list", field="scopes")
        scope = str(values.pop("scope", "") or "")
        if scope and not scopes:
            scopes = scope.split()

        jwk_json = values.pop("jwk_json", "")
        if not isinstance(jwk_json, (str, dict)):
            raise ConfigError("'jwk_json' must be a JSON string or a mapping", field="jwk_json")

        custom_claims = values.pop("custom_claims", {})
        if not isinstance(custom_claims, dict):
            raise ConfigError("'customClaims' must be a mapping", field="customClaims")

        return cls(
            type=token_type,
            scopes=[str(s) for s in scopes],
            scope=scope,
            jwk_json=jwk_json,
            custom_claims=custom_claims,
            expires_in=parse_duration(values.pop("expires_in", None)),
            exp_seconds=_as_int(values.pop("exp_seconds", 0), "exp_seconds"),
            verbose=_as_bool(values.pop("verbose", None), "verbose", False),
            verify_ssl=_as_bool(values.pop("verify_ssl", None), "verify_ssl", True),
            **{k: str(v) for k, v in values.items()},
        )


@dataclass(frozen=True)
class RequestConfig:
    """Canonical input for one service-account token request."""

    service_account_id: str
    token_endpoint_base: str
    scope: str
    jwk_source: str | dict[str, Any] = field(repr=False)
    lifetime_seconds: int = DEFAULT_LIFETIME_SECONDS
    platform: str = ""
    verify_ssl: bool = True
    proxy: str | None = None

    @property
    def token_endpoint(self) -> str:
        return token_endpoint(self.token_endpoint_base)


def load_config(config_path: str | Path) -> TokenConfig:
    """Load token configuration from a YAML file.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    if not config_path:
        raise ConfigError("config path is required", field="config")

    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}", field="config") from e

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file: {path}", field="config") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}", field="config")

    logger.debug("Loaded token config from %s", path)
    return TokenConfig.from_dict(data)


def resolve_base_url(config: TokenConfig) -> str:
    """Return the platform base URL: base_url if set, else platform."""
    return (config.base_url or config.platform).rstrip("/")


def token_endpoint(base_url: str) -> str:
    """Build the OAuth2 token endpoint URL for a platform base URL."""
    return base_url.rstrip("/") + TOKEN_ENDPOINT_PATH


def resolve_lifetime(config: TokenConfig) -> int:
    """Return the assertion lifetime in seconds.

    exp_seconds wins, then expires_in, then the 899 second default.
    """
    if config.exp_seconds > 0:
        return config.exp_seconds
    seconds = int(config.expires_in.total_seconds())
    if seconds > 0:
        return seconds
    return DEFAULT_LIFETIME_SECONDS


def resolve_scope(config: TokenConfig) -> str:
    if config.scopes:
        return " ".join(config.scopes)
    return config.scope.strip()


def validate(config: TokenConfig) -> None:
    """Validate the token configuration.

    Raises:
        ConfigError: Naming the first missing or conflicting field.
    """
    if not resolve_base_url(config):
        raise ConfigError("baseUrl or platform is required", field="baseUrl")

    if config.type is not TokenType.SERVICE_ACCOUNT:
        raise ConfigError(f"Unsupported token type: {config.type.value}", field="type")

    if not config.service_account_id.strip():
        raise ConfigError(
            "service_account_id is required for service account tokens",
            field="service_account_id",
        )

    sources = [name for name, value in (("jwk_json", config.jwk_json), ("privateKey", config.private_key)) if value]
    if not sources:
        raise ConfigError("jwk_json or privateKey is required for service account tokens", field="jwk_json")
    if len(sources) > 1:
        raise ConfigError("Only one of jwk_json or privateKey may be set", field="privateKey")


def normalize(config: TokenConfig) -> RequestConfig:
    """Validate a config and reduce it to a RequestConfig.

    Raises:
        ConfigError: If the config is invalid.
    """
    validate(config)
    return RequestConfig(
        service_account_id=config.service_account_id.strip(),
        token_endpoint_base=resolve_base_url(config),
        scope=resolve_scope(config),
        jwk_source=config.jwk_json or config.private_key,
        lifetime_seconds=resolve_lifetime(config),
        platform=config.platform,
        verify_ssl=config.verify_ssl,
        proxy=config.proxy or None,
    )
