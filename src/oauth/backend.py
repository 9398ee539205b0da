"""In-process trusted OAuth backend.

Implements the token custodian and credential source roles: metadata
discovery, dynamic client registration, PKCE authorization URLs, the code
exchange at the redirect callback, token refresh and revocation. Tokens
are kept encrypted with AES-256-GCM and never leave this module except as
an Authorization header for provider requests.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from shared.config import OAuthSettings
from shared.errors import AuthorizationFlowError, ConfigurationIncomplete
from shared.logging import get_logger
from shared.models import OAuthProviderConfig, OAuthStatus, TokenStatus
from oauth.custody import TokenCustodian
from oauth.models import (
    CallbackResult,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    OAuthMetadata,
    PendingAuthorizationRecord,
    ProtectedResourceMetadata,
    ProviderClient,
    StoredToken,
    TokenErrorResponse,
    TokenResponse,
)
from oauth.pkce import generate_pkce, generate_state

logger = get_logger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 300
NONCE_SIZE = 12


class TokenVault:
    """
    Encrypted token storage.

    Each token is serialized and sealed with AES-256-GCM under a fresh
    nonce, with the provider id as associated data.
    """

    def __init__(self, encryption_key: Optional[str] = None) -> None:
        self._aesgcm = AESGCM(self._load_key(encryption_key))
        self._sealed: dict[str, bytes] = {}

    @staticmethod
    def _load_key(encryption_key: Optional[str]) -> bytes:
        if not encryption_key:
            logger.warning(
                "OAuth encryption key not set, using an ephemeral key; "
                "stored tokens will not survive a restart"
            )
            return AESGCM.generate_key(bit_length=256)

        try:
            key = bytes.fromhex(encryption_key)
        except ValueError as e:
            raise ValueError("OAuth encryption key must be a hex string") from e

        if len(key) != 32:
            raise ValueError(
                f"OAuth encryption key must be 32 bytes (64 hex characters), got {len(key)} bytes"
            )
        return key

    def save(self, token: StoredToken) -> None:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(
            nonce,
            token.model_dump_json().encode("utf-8"),
            token.provider_id.encode("utf-8")
        )
        self._sealed[token.provider_id] = nonce + ciphertext

    def load(self, provider_id: str) -> Optional[StoredToken]:
        sealed = self._sealed.get(provider_id)
        if sealed is None:
            return None

        try:
            plaintext = self._aesgcm.decrypt(
                sealed[:NONCE_SIZE],
                sealed[NONCE_SIZE:],
                provider_id.encode("utf-8")
            )
        except InvalidTag:
            logger.error("Stored token failed integrity check, discarding", provider=provider_id)
            del self._sealed[provider_id]
            return None

        return StoredToken.model_validate_json(plaintext)

    def delete(self, provider_id: str) -> bool:
        return self._sealed.pop(provider_id, None) is not None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._sealed


class OAuthBackend(TokenCustodian):
    """Trusted party for the delegated authorization flow."""

    def __init__(
        self,
        settings: Optional[OAuthSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.settings = settings or OAuthSettings()
        self._client = http_client
        self._owns_client = http_client is None
        self._vault = TokenVault(self.settings.encryption_key)
        self._clients: dict[str, ProviderClient] = {}
        self._pending: dict[str, PendingAuthorizationRecord] = {}
        self._errors: dict[str, str] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    @property
    def redirect_uri(self) -> str:
        return self.settings.redirect_uri

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # Discovery and registration

    async def _get_json(self, url: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise AuthorizationFlowError(f"Failed to fetch {url}: {e}") from e

        if response.status_code != 200:
            raise AuthorizationFlowError(f"{url} returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthorizationFlowError(f"Invalid JSON from {url}") from e

        if not isinstance(data, dict):
            raise AuthorizationFlowError(f"Unexpected document from {url}")
        return data

    async def discover_metadata(self, endpoint: str) -> OAuthMetadata:
        """
        Discover the authorization server for a provider endpoint.

        Tries protected resource metadata on the endpoint's origin first and
        falls back to the origin itself as the authorization server.

        Raises:
            AuthorizationFlowError: If no usable metadata is found
        """
        parsed = urlparse(endpoint)
        if not parsed.scheme or not parsed.netloc:
            raise AuthorizationFlowError(f"Invalid server URL: {endpoint}")

        origin = f"{parsed.scheme}://{parsed.netloc}"
        auth_server = origin

        try:
            resource = ProtectedResourceMetadata.model_validate(
                await self._get_json(f"{origin}/.well-known/oauth-protected-resource")
            )
            if resource.authorization_servers:
                auth_server = resource.authorization_servers[0].rstrip("/")
        except (AuthorizationFlowError, ValidationError) as e:
            logger.debug(
                "Protected resource metadata not found, trying authorization server metadata",
                endpoint=endpoint,
                error=str(e)
            )

        data = await self._get_json(f"{auth_server}/.well-known/oauth-authorization-server")
        try:
            metadata = OAuthMetadata.model_validate(data)
        except ValidationError as e:
            raise AuthorizationFlowError(f"Invalid authorization server metadata: {e}") from e

        logger.info(
            "OAuth metadata discovered",
            issuer=metadata.issuer,
            authorization_endpoint=metadata.authorization_endpoint
        )
        return metadata

    async def register_client(
        self,
        provider_id: str,
        registration_endpoint: str,
        client_name: str,
        redirect_uri: str,
        scopes: list[str]
    ) -> str:
        """
        Register a client dynamically (RFC 7591).

        The client secret, if issued, is kept here; only the id is returned.

        Raises:
            AuthorizationFlowError: If registration fails
        """
        request = ClientRegistrationRequest(
            client_name=client_name,
            redirect_uris=[redirect_uri],
            scope=" ".join(scopes) if scopes else None,
        )

        client = await self._get_client()
        try:
            response = await client.post(
                registration_endpoint,
                json=request.model_dump(exclude_none=True),
                headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise AuthorizationFlowError(f"Client registration failed: {e}", provider_id) from e

        if response.status_code not in (200, 201):
            raise AuthorizationFlowError(
                f"Registration failed with status {response.status_code}: {response.text}",
                provider_id
            )

        try:
            registration = ClientRegistrationResponse.model_validate(response.json())
        except ValueError as e:
            raise AuthorizationFlowError(f"Invalid registration response: {e}", provider_id) from e

        self._clients[provider_id] = ProviderClient(
            client_id=registration.client_id,
            client_secret=registration.client_secret,
        )
        logger.info("OAuth client registered", provider=provider_id, client_id=registration.client_id)
        return registration.client_id

    # Authorization code flow

    def _purge_expired_pending(self) -> None:
        for state in [s for s, record in self._pending.items() if record.expired]:
            del self._pending[state]

    async def request_authorization_url(
        self,
        provider_id: str,
        config: OAuthProviderConfig
    ) -> str:
        """
        Build the authorization URL and remember the PKCE verifier.

        Raises:
            ConfigurationIncomplete: If client id or endpoints are missing
        """
        if not config.client_id or not config.authorization_endpoint or not config.token_endpoint:
            raise ConfigurationIncomplete(
                "OAuth client id, authorization endpoint and token endpoint are required",
                provider_id
            )

        self._purge_expired_pending()

        pkce = generate_pkce()
        state = generate_state()
        now = datetime.now(timezone.utc)

        self._pending[state] = PendingAuthorizationRecord(
            provider_id=provider_id,
            state=state,
            code_verifier=pkce.verifier,
            redirect_uri=self.redirect_uri,
            client_id=config.client_id,
            token_endpoint=config.token_endpoint,
            resource=config.resource,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.pending_ttl_seconds),
        )

        known = self._clients.get(provider_id)
        secret = known.client_secret if known is not None and known.client_id == config.client_id else None
        self._clients[provider_id] = ProviderClient(
            client_id=config.client_id,
            client_secret=secret,
            token_endpoint=config.token_endpoint,
            resource=config.resource,
        )

        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        if config.resource:
            params["resource"] = config.resource
        if config.scopes:
            params["scope"] = " ".join(config.scopes)

        separator = "&" if "?" in config.authorization_endpoint else "?"
        logger.info("Authorization URL issued", provider=provider_id)
        return f"{config.authorization_endpoint}{separator}{urlencode(params)}"

    def provider_for_state(self, state: str) -> Optional[str]:
        record = self._pending.get(state)
        return record.provider_id if record is not None else None

    def discard_pending(self, state: str) -> Optional[str]:
        """Drop a pending authorization; returns its provider id."""
        record = self._pending.pop(state, None)
        return record.provider_id if record is not None else None

    async def _token_request(self, provider_id: str, url: str, form: dict[str, str]) -> TokenResponse:
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                data=form,
                headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise AuthorizationFlowError(f"Token request failed: {e}", provider_id) from e

        if response.status_code != 200:
            try:
                error = TokenErrorResponse.model_validate(response.json())
                message = f"Token error: {error.error} - {error.error_description or ''}".rstrip(" -")
            except ValueError:
                message = f"Token request failed with status {response.status_code}: {response.text}"
            raise AuthorizationFlowError(message, provider_id)

        try:
            return TokenResponse.model_validate(response.json())
        except ValueError as e:
            raise AuthorizationFlowError(f"Invalid token response: {e}", provider_id) from e

    def _store_token(
        self,
        provider_id: str,
        response: TokenResponse,
        audience: Optional[str],
        previous: Optional[StoredToken] = None
    ) -> StoredToken:
        lifetime = response.expires_in or DEFAULT_TOKEN_LIFETIME_SECONDS
        token = StoredToken(
            provider_id=provider_id,
            access_token=response.access_token,
            token_type=response.token_type,
            refresh_token=response.refresh_token or (previous.refresh_token if previous else None),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=lifetime),
            scopes=response.scope.split() if response.scope else (previous.scopes if previous else []),
            audience=audience,
        )
        self._vault.save(token)
        self._errors.pop(provider_id, None)
        return token

    async def exchange_code(self, code: str, state: str) -> CallbackResult:
        """
        Exchange an authorization code at the redirect callback.

        The pending record is consumed whether or not the exchange succeeds.

        Raises:
            AuthorizationFlowError: If the state is unknown or expired, or the
                token endpoint rejects the code
        """
        record = self._pending.pop(state, None)
        if record is None or record.expired:
            raise AuthorizationFlowError("Invalid or expired state parameter")

        client = self._clients.get(record.provider_id)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": record.redirect_uri,
            "client_id": record.client_id,
            "code_verifier": record.code_verifier,
        }
        if client is not None and client.client_secret:
            form["client_secret"] = client.client_secret
        if record.resource:
            form["resource"] = record.resource

        try:
            response = await self._token_request(record.provider_id, record.token_endpoint, form)
        except AuthorizationFlowError as e:
            self._errors[record.provider_id] = e.message
            logger.error("Code exchange failed", provider=record.provider_id, error=e.message)
            raise

        token = self._store_token(record.provider_id, response, record.resource)
        logger.info("Token exchanged and stored", provider=record.provider_id)
        return CallbackResult(provider_id=record.provider_id, expires_at=token.expires_at)

    async def refresh(self, provider_id: str) -> StoredToken:
        """
        Refresh a provider token.

        Raises:
            AuthorizationFlowError: If there is nothing to refresh or the
                token endpoint rejects the refresh
        """
        token = self._vault.load(provider_id)
        if token is None:
            raise AuthorizationFlowError("No token stored", provider_id)
        if not token.refresh_token:
            raise AuthorizationFlowError("No refresh token available", provider_id)

        client = self._clients.get(provider_id)
        if client is None or not client.token_endpoint:
            raise AuthorizationFlowError("No token endpoint known for provider", provider_id)

        form = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "client_id": client.client_id,
        }
        if client.client_secret:
            form["client_secret"] = client.client_secret

        try:
            response = await self._token_request(provider_id, client.token_endpoint, form)
        except AuthorizationFlowError as e:
            self._errors[provider_id] = e.message
            raise

        refreshed = self._store_token(provider_id, response, token.audience, previous=token)
        logger.info("Token refreshed", provider=provider_id)
        return refreshed

    # Credential source

    async def authorization_header(self, provider_id: str) -> Optional[str]:
        """
        Authorization header for provider requests.

        Refreshes the token first when it expires within five minutes.
        """
        token = self._vault.load(provider_id)
        if token is None:
            return None

        if token.expires_within(REFRESH_MARGIN_SECONDS):
            lock = self._refresh_locks.setdefault(provider_id, asyncio.Lock())
            async with lock:
                token = self._vault.load(provider_id)
                if token is not None and token.expires_within(REFRESH_MARGIN_SECONDS):
                    try:
                        token = await self.refresh(provider_id)
                    except AuthorizationFlowError as e:
                        logger.warning("Token refresh failed", provider=provider_id, error=e.message)
                        if token.expires_within(0):
                            return None

        return token.authorization_header if token is not None else None

    # Status

    async def get_status(self, provider_id: str) -> OAuthStatus:
        token = self._vault.load(provider_id)
        last_error = self._errors.get(provider_id)

        if token is None:
            if last_error:
                return OAuthStatus(status=TokenStatus.ERROR, last_error=last_error)
            return OAuthStatus(status=TokenStatus.NOT_CONFIGURED)

        status = TokenStatus.EXPIRED if token.expires_within(0) else TokenStatus.AUTHORIZED
        return OAuthStatus(status=status, expires_at=token.expires_at, last_error=last_error)

    async def cancel_authorization(self, provider_id: str) -> None:
        stale = [s for s, record in self._pending.items() if record.provider_id == provider_id]
        for state in stale:
            del self._pending[state]
        if stale:
            logger.info("Pending authorization discarded", provider=provider_id)

    async def revoke(self, provider_id: str) -> None:
        removed = self._vault.delete(provider_id)
        self._errors.pop(provider_id, None)
        await self.cancel_authorization(provider_id)
        logger.info("Token revoked", provider=provider_id, had_token=removed)
