"""Token exchange client and service-account token generation."""

from __future__ import annotations

import logging
import socket
import threading
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from pctl import assertion as assertions
from pctl import jwk
from pctl.assertion import SignedAssertion
from pctl.config import RequestConfig, TokenConfig, normalize
from pctl.exceptions import ExchangeError, ResponseParseError, TransportError
from pctl.models import OutputFormat, TokenResponse, TokenResult
from pctl.output import format_output

logger = logging.getLogger(__name__)

GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
SERVICE_ACCOUNT_CLIENT_ID = "service-account"
DEFAULT_TIMEOUT = 30.0
USER_AGENT = "pctl/0.1.0"


class _Deadline:
    """One wall-clock bound over connect, send, response headers and body.

    httpx timeouts apply per socket operation, so a peer that keeps sending
    a byte at a time never trips them. Once the TCP connection exists a
    timer shuts the socket down when the bound runs out, which wakes any
    blocked read or write.
    """

    def __init__(self, seconds: float) -> None:
        self._expires_at = time.monotonic() + seconds
        self._fired = False
        self._timer: threading.Timer | None = None

    @property
    def expired(self) -> bool:
        return self._fired or time.monotonic() >= self._expires_at

    def trace(self, event: str, info: dict[str, Any]) -> None:
        """httpcore trace hook; arms the timer on the raw TCP socket."""
        if event != "connection.connect_tcp.complete" or self._timer is not None:
            return
        sock = info["return_value"].get_extra_info("socket")
        self._timer = threading.Timer(max(self._expires_at - time.monotonic(), 0.0), self._abort, args=(sock,))
        self._timer.daemon = True
        self._timer.start()

    def _abort(self, sock: socket.socket) -> None:
        self._fired = True
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Token request socket already closed: %s", e)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()


class TokenExchangeClient:
    """Exchanges signed assertions for access tokens (RFC 7523).

    Each exchange is a single POST whose total wall-clock time is bounded by
    ``timeout``; nothing is retried. A failed exchange must be repeated with a
    freshly signed assertion. Connections are not kept alive, so every
    exchange gets its own bounded socket.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        proxy: str | None = None,
    ) -> None:
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.proxy = proxy
        self._http_client: httpx.Client | None = None

    def _get_http_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=self.timeout,
                verify=self.verify_ssl,
                proxy=self.proxy,
                limits=httpx.Limits(max_keepalive_connections=0),
            )
        return self._http_client

    def exchange(
        self,
        token_endpoint_url: str,
        signed_assertion: SignedAssertion | str,
        scope: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> TokenResult:
        """Exchange a signed assertion for an access token.

        Args:
            token_endpoint_url: Full URL of the OAuth2 token endpoint.
            signed_assertion: Assertion to present; used once.
            scope: Space-separated scopes. Sent even when empty.
            metadata: Extra metadata to attach to the result.

        Returns:
            TokenResult with expires_at derived from expires_in.

        Raises:
            TransportError: If the endpoint cannot be reached or times out.
            ExchangeError: If the endpoint answers with a non-200 status.
            ResponseParseError: If a 200 response body is not a token response.
        """
        form = {
            "client_id": SERVICE_ACCOUNT_CLIENT_ID,
            "grant_type": GRANT_TYPE,
            "assertion": str(signed_assertion),
            "scope": scope,
        }

        logger.debug("Making token request to: %s", token_endpoint_url)
        logger.debug("Grant type: %s", GRANT_TYPE)
        logger.debug("Scope: %s", scope or "(none)")

        deadline = _Deadline(self.timeout)
        try:
            client = self._get_http_client()
            response = client.post(
                token_endpoint_url,
                data=form,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                },
                extensions={"trace": deadline.trace},
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Token request timed out after {self.timeout}s",
                endpoint=token_endpoint_url,
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            if deadline.expired:
                raise TransportError(
                    f"Token request timed out after {self.timeout}s",
                    endpoint=token_endpoint_url,
                ) from e
            raise TransportError(
                f"Failed to make token request: {e}",
                endpoint=token_endpoint_url,
            ) from e
        finally:
            deadline.cancel()

        logger.debug("Response status: %d %s", response.status_code, response.reason_phrase)

        if response.status_code != 200:
            raise ExchangeError(
                f"Token request failed with status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
                endpoint=token_endpoint_url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ResponseParseError(
                f"Failed to parse token response: {e}",
                endpoint=token_endpoint_url,
                body=response.text,
            ) from e

        try:
            token_response = TokenResponse.from_dict(data)
        except ResponseParseError as e:
            raise ResponseParseError(e.message, endpoint=token_endpoint_url, body=response.text) from e

        logger.debug("Access token received (length: %d chars)", len(token_response.access_token))
        logger.debug("Token type: %s", token_response.token_type)
        logger.debug("Expires in: %d seconds", token_response.expires_in)

        try:
            return TokenResult.from_response(
                token_response,
                issued_at=datetime.now(timezone.utc),
                metadata=metadata,
            )
        except ResponseParseError as e:
            raise ResponseParseError(e.message, endpoint=token_endpoint_url, body=response.text) from e

    def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            self._http_client.close()
            self._http_client = None

    def __enter__(self) -> TokenExchangeClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class ServiceAccountTokenGenerator:
    """Obtains a service-account access token via the JWT-Bearer grant.

    Every call to ``generate`` decodes the key, signs a new assertion and
    performs one exchange; nothing is cached between calls.
    """

    def __init__(
        self,
        config: RequestConfig,
        timeout: float = DEFAULT_TIMEOUT,
        exchange_client: TokenExchangeClient | None = None,
    ) -> None:
        self.config = config
        self._exchange_client = exchange_client or TokenExchangeClient(
            timeout=timeout,
            verify_ssl=config.verify_ssl,
            proxy=config.proxy,
        )

    def generate(self) -> TokenResult:
        """Generate a service account token.

        Raises:
            KeyMaterialError: If the key description is unusable.
            AssertionError: If the assertion cannot be signed.
            TransportError, ExchangeError, ResponseParseError: If the
                exchange fails.
        """
        logger.debug("Generating service account token for: %s", self.config.service_account_id)

        key = jwk.decode(self.config.jwk_source)
        token_url = self.config.token_endpoint
        signed = assertions.build(
            self.config.service_account_id,
            token_url,
            self.config.lifetime_seconds,
            key,
        )

        result = self._exchange_client.exchange(
            token_url,
            signed,
            scope=self.config.scope,
            metadata={
                "service_account_id": self.config.service_account_id,
                "generated_at": int(datetime.now(timezone.utc).timestamp()),
                "platform": self.config.platform,
            },
        )
        logger.debug("Token generated successfully, expires at: %s", result.expires_at.isoformat())
        return result

    def close(self) -> None:
        self._exchange_client.close()

    def __enter__(self) -> ServiceAccountTokenGenerator:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class TokenClient:
    """Entry point for token operations driven by a TokenConfig.

    Example:
        >>> client = TokenClient(load_config("token.yaml"), OutputFormat.JSON)
        >>> print(client.format_output(client.generate()))
    """

    def __init__(
        self,
        config: TokenConfig,
        output_format: OutputFormat | str = OutputFormat.TEXT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self.output_format = OutputFormat(output_format)
        self.timeout = timeout

    def generate(self) -> TokenResult:
        """Validate the configuration and generate a token for its type.

        Raises:
            ConfigError: If the configuration is invalid or the token type
                is not supported.
        """
        request = normalize(self.config)
        with ServiceAccountTokenGenerator(request, timeout=self.timeout) as generator:
            return generator.generate()

    def format_output(self, result: TokenResult) -> str:
        """Render a token result in the configured output format."""
        return format_output(result, self.output_format)


def exchange(
    token_endpoint_url: str,
    signed_assertion: SignedAssertion | str,
    scope: str = "",
    timeout: float = DEFAULT_TIMEOUT,
) -> TokenResult:
    """Exchange one assertion for an access token with a throwaway client."""
    with TokenExchangeClient(timeout=timeout) as client:
        return client.exchange(token_endpoint_url, signed_assertion, scope=scope)
