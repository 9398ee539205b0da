"""Tests for the in-process OAuth backend, token vault and PKCE helpers."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from shared.config import OAuthSettings
from shared.errors import AuthorizationFlowError, ConfigurationIncomplete
from shared.models import OAuthProviderConfig, TokenStatus
from oauth.backend import OAuthBackend, TokenVault
from oauth.models import StoredToken
from oauth.pkce import code_challenge, generate_pkce, generate_state


KEY = "00" * 32

AUTH_METADATA = {
    "issuer": "https://auth.test",
    "authorization_endpoint": "https://auth.test/authorize",
    "token_endpoint": "https://auth.test/token",
    "registration_endpoint": "https://auth.test/register",
    "scopes_supported": ["tickets.read"],
}


class AuthServer:
    """Mock authorization server and protected resource."""

    def __init__(self, with_resource_metadata=True, expires_in=3600, token_status=200):
        self.with_resource_metadata = with_resource_metadata
        self.expires_in = expires_in
        self.token_status = token_status
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == "https://mcp.test/.well-known/oauth-protected-resource":
            if not self.with_resource_metadata:
                return httpx.Response(404)
            return httpx.Response(200, json={
                "resource": "https://mcp.test",
                "authorization_servers": ["https://auth.test/"],
            })
        if url == "https://auth.test/.well-known/oauth-authorization-server":
            return httpx.Response(200, json=AUTH_METADATA)
        if url == "https://mcp.test/.well-known/oauth-authorization-server":
            return httpx.Response(200, json={**AUTH_METADATA, "issuer": "https://mcp.test"})
        if url == "https://auth.test/register":
            return httpx.Response(201, json={"client_id": "registered-id", "client_secret": "s3cret"})
        if url == "https://auth.test/token":
            return self._token(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_forms.append(form)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        if form["grant_type"] == "refresh_token":
            return httpx.Response(200, json={"access_token": "refreshed-token", "expires_in": 3600})
        payload = {"access_token": "first-token", "refresh_token": "refresh-1", "token_type": "bearer"}
        if self.expires_in is not None:
            payload["expires_in"] = self.expires_in
        return httpx.Response(200, json=payload)


def make_backend(server: AuthServer) -> OAuthBackend:
    settings = OAuthSettings(redirect_uri="https://gw.test/oauth/callback", encryption_key=KEY)
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return OAuthBackend(settings, http_client=client)


OAUTH_CONFIG = OAuthProviderConfig(
    client_id="registered-id",
    authorization_endpoint="https://auth.test/authorize",
    token_endpoint="https://auth.test/token",
    scopes=["tickets.read", "tickets.write"],
    resource="https://mcp.test",
)


async def authorize(backend: OAuthBackend, provider_id: str = "tickets") -> str:
    url = await backend.request_authorization_url(provider_id, OAUTH_CONFIG)
    return parse_qs(urlparse(url).query)["state"][0]


class TestDiscovery:
    """Tests for metadata discovery."""

    @pytest.mark.asyncio
    async def test_via_protected_resource_metadata(self):
        """Test that the advertised authorization server is used."""
        server = AuthServer()
        backend = make_backend(server)

        metadata = await backend.discover_metadata("https://mcp.test/mcp")

        assert metadata.issuer == "https://auth.test"
        assert metadata.token_endpoint == "https://auth.test/token"
        assert [str(r.url) for r in server.requests] == [
            "https://mcp.test/.well-known/oauth-protected-resource",
            "https://auth.test/.well-known/oauth-authorization-server",
        ]

    @pytest.mark.asyncio
    async def test_falls_back_to_origin(self):
        """Test that the endpoint origin is tried without resource metadata."""
        backend = make_backend(AuthServer(with_resource_metadata=False))

        metadata = await backend.discover_metadata("https://mcp.test/mcp")

        assert metadata.issuer == "https://mcp.test"

    @pytest.mark.asyncio
    async def test_invalid_url(self):
        """Test that a relative endpoint cannot be discovered."""
        backend = make_backend(AuthServer())

        with pytest.raises(AuthorizationFlowError):
            await backend.discover_metadata("/mcp")

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        """Test that a server without metadata fails discovery."""
        backend = make_backend(AuthServer())

        with pytest.raises(AuthorizationFlowError):
            await backend.discover_metadata("https://elsewhere.test/mcp")


class TestRegistration:
    """Tests for dynamic client registration."""

    @pytest.mark.asyncio
    async def test_register_client(self):
        """Test that registration posts RFC 7591 metadata and returns the id."""
        server = AuthServer()
        backend = make_backend(server)

        client_id = await backend.register_client(
            "tickets",
            "https://auth.test/register",
            "tool-gateway",
            "https://gw.test/oauth/callback",
            ["tickets.read"]
        )

        body = json.loads(server.requests[0].content)
        assert client_id == "registered-id"
        assert body["redirect_uris"] == ["https://gw.test/oauth/callback"]
        assert body["grant_types"] == ["authorization_code", "refresh_token"]
        assert body["response_types"] == ["code"]
        assert body["scope"] == "tickets.read"

    @pytest.mark.asyncio
    async def test_registration_rejected(self):
        """Test that a non-success status raises a flow error."""
        backend = make_backend(AuthServer())

        with pytest.raises(AuthorizationFlowError):
            await backend.register_client(
                "tickets", "https://auth.test/nope", "gw", "https://gw.test/cb", []
            )

    @pytest.mark.asyncio
    async def test_registered_secret_is_used_for_exchange(self):
        """Test that the issued secret accompanies the code exchange."""
        server = AuthServer()
        backend = make_backend(server)
        await backend.register_client(
            "tickets", "https://auth.test/register", "gw", "https://gw.test/oauth/callback", []
        )

        state = await authorize(backend)
        await backend.exchange_code("code-1", state)

        assert server.token_forms[0]["client_secret"] == "s3cret"


class TestAuthorizationCode:
    """Tests for the authorization URL and the code exchange."""

    @pytest.mark.asyncio
    async def test_authorization_url_parameters(self):
        """Test that the URL carries PKCE, state, resource and scopes."""
        backend = make_backend(AuthServer())

        url = await backend.request_authorization_url("tickets", OAUTH_CONFIG)

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://auth.test/authorize"
        assert params["response_type"] == "code"
        assert params["client_id"] == "registered-id"
        assert params["redirect_uri"] == "https://gw.test/oauth/callback"
        assert params["code_challenge_method"] == "S256"
        assert params["resource"] == "https://mcp.test"
        assert params["scope"] == "tickets.read tickets.write"
        assert backend.provider_for_state(params["state"]) == "tickets"

    @pytest.mark.asyncio
    async def test_incomplete_configuration(self):
        """Test that a URL is not issued without client id and endpoints."""
        backend = make_backend(AuthServer())

        with pytest.raises(ConfigurationIncomplete):
            await backend.request_authorization_url("tickets", OAuthProviderConfig(client_id="x"))

    @pytest.mark.asyncio
    async def test_exchange_sends_verifier_matching_challenge(self):
        """Test that the code exchange proves possession of the verifier."""
        server = AuthServer()
        backend = make_backend(server)

        url = await backend.request_authorization_url("tickets", OAUTH_CONFIG)
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        result = await backend.exchange_code("code-1", params["state"])

        form = server.token_forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-1"
        assert form["redirect_uri"] == "https://gw.test/oauth/callback"
        assert form["resource"] == "https://mcp.test"
        assert code_challenge(form["code_verifier"]) == params["code_challenge"]
        assert result.provider_id == "tickets"
        assert "first-token" not in result.model_dump_json()

    @pytest.mark.asyncio
    async def test_state_is_single_use(self):
        """Test that a state cannot be exchanged twice."""
        backend = make_backend(AuthServer())
        state = await authorize(backend)
        await backend.exchange_code("code-1", state)

        with pytest.raises(AuthorizationFlowError, match="state"):
            await backend.exchange_code("code-1", state)

    @pytest.mark.asyncio
    async def test_unknown_state(self):
        """Test that an unknown state is rejected without a token request."""
        server = AuthServer()
        backend = make_backend(server)

        with pytest.raises(AuthorizationFlowError):
            await backend.exchange_code("code-1", "forged")

        assert server.token_forms == []

    @pytest.mark.asyncio
    async def test_rejected_exchange_records_error(self):
        """Test that a token endpoint error becomes the error status."""
        backend = make_backend(AuthServer(token_status=400))
        state = await authorize(backend)

        with pytest.raises(AuthorizationFlowError, match="invalid_grant"):
            await backend.exchange_code("bad-code", state)

        status = await backend.get_status("tickets")
        assert status.status == TokenStatus.ERROR
        assert "invalid_grant" in status.last_error

    @pytest.mark.asyncio
    async def test_cancelled_authorization_cannot_be_exchanged(self):
        """Test that discarding a provider's pending state voids its code."""
        server = AuthServer()
        backend = make_backend(server)
        state = await authorize(backend)
        other_state = await authorize(backend, "wiki")

        await backend.cancel_authorization("tickets")
        await backend.cancel_authorization("tickets")

        with pytest.raises(AuthorizationFlowError, match="state"):
            await backend.exchange_code("late-code", state)

        assert server.token_forms == []
        assert backend.provider_for_state(other_state) == "wiki"
        assert await backend.authorization_header("tickets") is None

    @pytest.mark.asyncio
    async def test_default_lifetime_is_one_hour(self):
        """Test that a response without expires_in lasts one hour."""
        backend = make_backend(AuthServer(expires_in=None))
        state = await authorize(backend)

        result = await backend.exchange_code("code-1", state)

        expected = datetime.now(timezone.utc) + timedelta(hours=1)
        assert abs((result.expires_at - expected).total_seconds()) < 5


class TestCredentials:
    """Tests for header issuance, refresh, status and revocation."""

    @pytest.mark.asyncio
    async def test_authorization_header(self):
        """Test that a stored token yields a bearer header."""
        backend = make_backend(AuthServer())
        await backend.exchange_code("code-1", await authorize(backend))

        assert await backend.authorization_header("tickets") == "Bearer first-token"
        assert await backend.authorization_header("other") is None

    @pytest.mark.asyncio
    async def test_refreshes_when_close_to_expiry(self):
        """Test that a token expiring within five minutes is refreshed first."""
        server = AuthServer(expires_in=60)
        backend = make_backend(server)
        await backend.exchange_code("code-1", await authorize(backend))

        header = await backend.authorization_header("tickets")

        assert header == "Bearer refreshed-token"
        assert server.token_forms[-1]["grant_type"] == "refresh_token"
        assert server.token_forms[-1]["refresh_token"] == "refresh-1"

        token = backend._vault.load("tickets")
        assert token.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_status_values(self):
        """Test not configured then authorized status."""
        backend = make_backend(AuthServer())

        assert (await backend.get_status("tickets")).status == TokenStatus.NOT_CONFIGURED

        await backend.exchange_code("code-1", await authorize(backend))
        status = await backend.get_status("tickets")

        assert status.status == TokenStatus.AUTHORIZED
        assert status.expires_at is not None

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self):
        """Test that revoking drops the token and pending state, twice over."""
        backend = make_backend(AuthServer())
        await backend.exchange_code("code-1", await authorize(backend))
        pending_state = await authorize(backend)

        await backend.revoke("tickets")
        await backend.revoke("tickets")

        assert (await backend.get_status("tickets")).status == TokenStatus.NOT_CONFIGURED
        assert await backend.authorization_header("tickets") is None
        assert backend.provider_for_state(pending_state) is None


class TestTokenVault:
    """Tests for encrypted token storage."""

    def make_token(self, provider_id="tickets"):
        return StoredToken(
            provider_id=provider_id,
            access_token="super-secret-access-token",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    def test_tokens_are_encrypted(self):
        """Test that the sealed bytes do not contain the token."""
        vault = TokenVault(KEY)
        vault.save(self.make_token())

        assert b"super-secret-access-token" not in vault._sealed["tickets"]
        assert vault.load("tickets").access_token == "super-secret-access-token"

    def test_tampered_token_is_discarded(self):
        """Test that a failed integrity check drops the token."""
        vault = TokenVault(KEY)
        vault.save(self.make_token())
        sealed = bytearray(vault._sealed["tickets"])
        sealed[-1] ^= 0x01
        vault._sealed["tickets"] = bytes(sealed)

        assert vault.load("tickets") is None
        assert "tickets" not in vault

    def test_token_bound_to_provider(self):
        """Test that a token sealed for one provider cannot be read as another."""
        vault = TokenVault(KEY)
        vault.save(self.make_token())
        vault._sealed["wiki"] = vault._sealed["tickets"]

        assert vault.load("wiki") is None

    @pytest.mark.parametrize("key", ["not-hex", "00" * 16])
    def test_invalid_key(self, key):
        """Test that malformed or short keys are rejected."""
        with pytest.raises(ValueError):
            TokenVault(key)

    def test_ephemeral_key(self):
        """Test that a vault works without a configured key."""
        vault = TokenVault()
        vault.save(self.make_token())

        assert vault.load("tickets") is not None


class TestPKCE:
    """Tests for PKCE and state generation."""

    def test_rfc7636_example(self):
        """Test the S256 challenge against the RFC 7636 appendix B vector."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_generated_pair(self):
        """Test that generated verifiers are unpadded and match their challenge."""
        pkce = generate_pkce()

        assert len(pkce.verifier) == 43
        assert "=" not in pkce.verifier
        assert pkce.challenge == code_challenge(pkce.verifier)
        assert pkce.method == "S256"

    def test_state_is_random(self):
        """Test that states do not repeat."""
        assert len({generate_state() for _ in range(20)}) == 20
