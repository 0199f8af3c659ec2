"""Tests for the token exchange client and generators."""

import logging
import socket
import threading
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
import respx

from pctl.client import (
    GRANT_TYPE,
    ServiceAccountTokenGenerator,
    TokenClient,
    TokenExchangeClient,
    exchange,
)
from pctl.config import RequestConfig, TokenConfig
from pctl.exceptions import (
    ConfigError,
    ExchangeError,
    KeyMaterialError,
    ResponseParseError,
    TransportError,
)
from pctl.models import OutputFormat

SERVICE_ACCOUNT_ID = "3f1c2a8e-5b7d-4e2f-9a61-0c8d4b2e7f10"
TOKEN_URL = "https://tenant.example.com/am/oauth2/access_token"


def form_of(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode(), keep_blank_values=True).items()}


def trickle_headers(server: socket.socket, stop: threading.Event) -> None:
    """Accept one connection and send a status line, then a header every 0.6s."""
    try:
        conn, _ = server.accept()
    except OSError:
        return
    with conn:
        try:
            conn.recv(65536)
            conn.sendall(b"HTTP/1.1 200 OK\r\n")
            n = 0
            while not stop.wait(0.6):
                conn.sendall(f"X-Trickle-{n}: 1\r\n".encode())
                n += 1
        except OSError:
            return


class TestTokenExchangeClient:
    """Tests for TokenExchangeClient."""

    def test_init_with_defaults(self):
        """Test client initialization with defaults."""
        client = TokenExchangeClient()
        assert client.timeout == 30.0
        assert client.verify_ssl is True
        assert client.proxy is None

    def test_context_manager(self):
        """Test client as context manager."""
        with TokenExchangeClient() as client:
            assert client._http_client is None  # Lazy init

    @respx.mock
    def test_exchange_success(self):
        """Test a 200 response becomes a TokenResult."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={"access_token": "abc", "token_type": "Bearer", "expires_in": 3600},
            )
        )

        with TokenExchangeClient() as client:
            result = client.exchange(TOKEN_URL, "header.payload.signature", scope="fr:am:*")

        assert result.access_token == "abc"
        assert result.token_type == "Bearer"
        assert result.expires_in == 3600
        expected = datetime.now(timezone.utc) + timedelta(seconds=3600)
        assert abs((result.expires_at - expected).total_seconds()) < 5
        assert route.call_count == 1

    @respx.mock
    def test_exchange_request_shape(self):
        """Test the form body and headers of the token request."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )

        with TokenExchangeClient() as client:
            client.exchange(TOKEN_URL, "header.payload.signature", scope="fr:am:* fr:idm:*")

        request = route.calls.last.request
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.headers["User-Agent"].startswith("pctl/")
        assert form_of(request) == {
            "client_id": "service-account",
            "grant_type": GRANT_TYPE,
            "assertion": "header.payload.signature",
            "scope": "fr:am:* fr:idm:*",
        }

    @respx.mock
    def test_exchange_sends_empty_scope(self):
        """Test that an empty scope is still sent as a blank parameter."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )

        with TokenExchangeClient() as client:
            client.exchange(TOKEN_URL, "header.payload.signature")

        assert route.calls.last.request.content.decode().endswith("&scope=")
        assert form_of(route.calls.last.request)["scope"] == ""

    @respx.mock
    def test_exchange_optional_fields(self):
        """Test that missing expires_in gives zero and expires_at of now."""
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={"access_token": "abc", "token_type": "Bearer", "scope": "fr:am:*"},
            )
        )

        result = exchange(TOKEN_URL, "header.payload.signature")

        assert result.expires_in == 0
        assert result.scope == "fr:am:*"
        assert abs((result.expires_at - datetime.now(timezone.utc)).total_seconds()) < 5

    @respx.mock
    def test_exchange_rejected(self):
        """Test that a 401 carries the status code and literal body."""
        body = '{"error":"invalid_client"}'
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, text=body))

        with TokenExchangeClient() as client:
            with pytest.raises(ExchangeError) as exc:
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert exc.value.status_code == 401
        assert exc.value.body == body
        assert exc.value.endpoint == TOKEN_URL

    @respx.mock
    def test_exchange_server_error_not_retried(self):
        """Test that a 503 with a non-JSON body fails after one attempt."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(503, text="<html>Service Unavailable</html>")
        )

        with TokenExchangeClient() as client:
            with pytest.raises(ExchangeError) as exc:
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert exc.value.status_code == 503
        assert exc.value.body == "<html>Service Unavailable</html>"
        assert route.call_count == 1

    @respx.mock
    def test_exchange_malformed_json(self):
        """Test that a 200 with a non-JSON body is a parse error."""
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, text="not json"))

        with TokenExchangeClient() as client:
            with pytest.raises(ResponseParseError) as exc:
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert exc.value.body == "not json"

    @respx.mock
    def test_exchange_missing_access_token(self):
        """Test that a 200 without access_token is a parse error."""
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"token_type": "Bearer"}))

        with TokenExchangeClient() as client:
            with pytest.raises(ResponseParseError) as exc:
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert exc.value.endpoint == TOKEN_URL

    @pytest.mark.parametrize("expires_in", ["1000000000000", "NaN", "Infinity", "-Infinity", "1e400"])
    @respx.mock
    def test_exchange_unusable_expires_in(self, expires_in):
        """Test that a huge or non-finite expires_in still yields a result."""
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                text=f'{{"access_token":"abc","token_type":"Bearer","expires_in":{expires_in}}}',
            )
        )

        with TokenExchangeClient() as client:
            result = client.exchange(TOKEN_URL, "header.payload.signature")

        assert result.expires_in == 0
        assert abs((result.expires_at - datetime.now(timezone.utc)).total_seconds()) < 5

    @respx.mock
    def test_exchange_connect_timeout(self):
        """Test that a timeout surfaces as a transport error."""
        respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with TokenExchangeClient() as client:
            with pytest.raises(TransportError) as exc:
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert exc.value.endpoint == TOKEN_URL
        assert "timed out" in exc.value.message

    @respx.mock
    def test_exchange_connection_refused(self):
        """Test that a refused connection surfaces as a transport error."""
        route = respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        with TokenExchangeClient() as client:
            with pytest.raises(TransportError):
                client.exchange(TOKEN_URL, "header.payload.signature")

        assert route.call_count == 1

    def test_exchange_read_timeout_is_bounded(self, monkeypatch):
        """Test that a server that never answers fails within the timeout."""
        for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
            monkeypatch.delenv(name, raising=False)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            started = time.monotonic()
            with TokenExchangeClient(timeout=0.5) as client:
                with pytest.raises(TransportError):
                    client.exchange(f"http://127.0.0.1:{port}/am/oauth2/access_token", "a.b.c")
            elapsed = time.monotonic() - started

        assert elapsed < 5

    def test_exchange_trickling_headers_are_bounded(self, monkeypatch):
        """Test that a server sending one header line at a time cannot outlast the timeout."""
        for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
            monkeypatch.delenv(name, raising=False)
        stop = threading.Event()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            server.settimeout(5)
            port = server.getsockname()[1]
            worker = threading.Thread(target=trickle_headers, args=(server, stop), daemon=True)
            worker.start()

            started = time.monotonic()
            try:
                with TokenExchangeClient(timeout=1.0) as client:
                    with pytest.raises(TransportError) as exc:
                        client.exchange(f"http://127.0.0.1:{port}/am/oauth2/access_token", "a.b.c")
                elapsed = time.monotonic() - started
            finally:
                stop.set()
                worker.join(timeout=5)

        assert "timed out" in exc.value.message
        assert elapsed < 2.0


class TestServiceAccountTokenGenerator:
    """Tests for ServiceAccountTokenGenerator."""

    @respx.mock
    def test_generate(self, request_config, rsa_key):
        """Test the full decode, sign and exchange pipeline."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "access_token": "eyJ0eXAiOiJKV1Qi",
                    "token_type": "Bearer",
                    "expires_in": 899,
                    "scope": "fr:am:* fr:idm:*",
                },
            )
        )

        with ServiceAccountTokenGenerator(request_config) as generator:
            result = generator.generate()

        assert result.access_token == "eyJ0eXAiOiJKV1Qi"
        assert result.scope == "fr:am:* fr:idm:*"
        assert result.metadata["service_account_id"] == SERVICE_ACCOUNT_ID
        assert result.metadata["platform"] == "https://tenant.example.com"
        assert isinstance(result.metadata["generated_at"], int)

        form = form_of(route.calls.last.request)
        claims = jwt.decode(
            form["assertion"],
            rsa_key.public_key(),
            algorithms=["RS256"],
            audience=TOKEN_URL,
        )
        assert claims["iss"] == SERVICE_ACCOUNT_ID
        assert claims["sub"] == SERVICE_ACCOUNT_ID
        assert abs(claims["exp"] - (int(time.time()) + 899)) <= 2

    @respx.mock
    def test_debug_log_has_no_secrets(self, request_config, jwk_dict, caplog):
        """Test that debug logging never shows key material, the assertion or the token."""
        caplog.set_level(logging.DEBUG)
        access_token = "eyJhbGciOiJSUzI1NiJ9.c2VjcmV0LXRva2Vu.c2lnbmF0dXJl"
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": access_token, "token_type": "Bearer"})
        )

        with ServiceAccountTokenGenerator(request_config) as generator:
            generator.generate()

        assertion = form_of(route.calls.last.request)["assertion"]
        assert f"length: {len(access_token)} chars" in caplog.text
        for secret in (jwk_dict["d"], jwk_dict["p"], jwk_dict["q"], assertion, access_token):
            assert secret not in caplog.text

    @respx.mock
    def test_fresh_assertion_per_call(self, request_config):
        """Test that each generate call signs a new assertion."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )

        with ServiceAccountTokenGenerator(request_config) as generator:
            generator.generate()
            generator.generate()

        first, second = (form_of(call.request)["assertion"] for call in route.calls)
        assert first != second

    @pytest.mark.parametrize("name", ["n", "d", "p", "q"])
    @respx.mock(assert_all_called=False)
    def test_bad_key_makes_no_request(self, jwk_dict, name):
        """Test that a key missing a field fails before any network call."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )
        jwk_dict.pop(name)
        config = RequestConfig(
            service_account_id=SERVICE_ACCOUNT_ID,
            token_endpoint_base="https://tenant.example.com",
            scope="",
            jwk_source=jwk_dict,
        )

        with ServiceAccountTokenGenerator(config) as generator:
            with pytest.raises(KeyMaterialError) as exc:
                generator.generate()

        assert exc.value.field == name
        assert route.call_count == 0

    @respx.mock
    def test_trailing_slash_base_url(self, jwk_json):
        """Test that a trailing slash on the base URL hits the same endpoint."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )
        config = TokenConfig(
            base_url="https://tenant.example.com/",
            service_account_id=SERVICE_ACCOUNT_ID,
            jwk_json=jwk_json,
        )

        result = TokenClient(config).generate()

        assert result.access_token == "abc"
        assert route.call_count == 1


class TestTokenClient:
    """Tests for TokenClient."""

    def test_invalid_config_makes_no_request(self):
        """Test that validation runs before anything else."""
        with respx.mock(assert_all_called=False) as mock:
            route = mock.post(TOKEN_URL)
            with pytest.raises(ConfigError) as exc:
                TokenClient(TokenConfig(base_url="https://tenant.example.com")).generate()
            assert route.call_count == 0
        assert exc.value.field == "service_account_id"

    @respx.mock
    def test_generate_from_platform_field(self, jwk_dict):
        """Test that the platform field works as the base URL."""
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})
        )
        config = TokenConfig(
            platform="https://tenant.example.com",
            service_account_id=SERVICE_ACCOUNT_ID,
            jwk_json=jwk_dict,
        )

        client = TokenClient(config, output_format="json")
        result = client.generate()

        assert client.output_format is OutputFormat.JSON
        assert '"access_token": "abc"' in client.format_output(result)
