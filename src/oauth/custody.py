"""Token custody interface.

Tokens and client secrets live only with a trusted custodian. The flow
manager talks to it through this interface and only ever receives
authorization URLs, client ids and token status.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import AuthorizationFlowError
from shared.logging import get_logger
from shared.models import OAuthProviderConfig, OAuthStatus
from oauth.models import OAuthMetadata

logger = get_logger(__name__)


class TokenCustodian(ABC):
    """Trusted party holding client secrets and provider tokens."""

    @abstractmethod
    async def discover_metadata(self, endpoint: str) -> OAuthMetadata:
        """Discover the authorization server protecting an endpoint."""

    @abstractmethod
    async def register_client(
        self,
        provider_id: str,
        registration_endpoint: str,
        client_name: str,
        redirect_uri: str,
        scopes: list[str]
    ) -> str:
        """Register a client dynamically and return its client id."""

    @abstractmethod
    async def request_authorization_url(
        self,
        provider_id: str,
        config: OAuthProviderConfig
    ) -> str:
        """Prepare PKCE and state and return the URL to send the user to."""

    @abstractmethod
    async def cancel_authorization(self, provider_id: str) -> None:
        """Discard any pending authorization for a provider. Idempotent."""

    @abstractmethod
    async def get_status(self, provider_id: str) -> OAuthStatus:
        """Token status for a provider, without the token."""

    @abstractmethod
    async def revoke(self, provider_id: str) -> None:
        """Delete the provider's token. Idempotent."""


class HTTPTokenCustodian(TokenCustodian):
    """
    Custodian reached over an authenticated HTTP channel.

    Also serves as a credential source, so adapters can obtain a bearer
    header for delegated providers without the token being stored locally.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _send(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> httpx.Response:
        client = await self._get_client()
        return await client.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers()
        )

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        try:
            response = await self._send(method, path, payload)
        except httpx.TransportError as e:
            logger.error("Token custodian unreachable", path=path, error=str(e))
            raise AuthorizationFlowError(f"Token custodian unreachable: {e}") from e

        if not response.is_success:
            raise AuthorizationFlowError(
                f"Token custodian returned {response.status_code}: {response.text}"
            )

        if not response.content:
            return {}
        return response.json()

    async def discover_metadata(self, endpoint: str) -> OAuthMetadata:
        data = await self._request("POST", "/oauth/discover", {"endpoint": endpoint})
        return OAuthMetadata.model_validate(data)

    async def register_client(
        self,
        provider_id: str,
        registration_endpoint: str,
        client_name: str,
        redirect_uri: str,
        scopes: list[str]
    ) -> str:
        data = await self._request("POST", f"/oauth/{provider_id}/register", {
            "registration_endpoint": registration_endpoint,
            "client_name": client_name,
            "redirect_uri": redirect_uri,
            "scopes": scopes,
        })
        return data["client_id"]

    async def request_authorization_url(
        self,
        provider_id: str,
        config: OAuthProviderConfig
    ) -> str:
        data = await self._request(
            "POST",
            f"/oauth/{provider_id}/authorization-url",
            config.model_dump(mode="json")
        )
        return data["authorization_url"]

    async def get_status(self, provider_id: str) -> OAuthStatus:
        data = await self._request("GET", f"/oauth/{provider_id}/status")
        return OAuthStatus.model_validate(data)

    async def cancel_authorization(self, provider_id: str) -> None:
        await self._request("DELETE", f"/oauth/{provider_id}/pending")

    async def revoke(self, provider_id: str) -> None:
        await self._request("DELETE", f"/oauth/{provider_id}/token")

    async def authorization_header(self, provider_id: str) -> Optional[str]:
        try:
            data = await self._request("GET", f"/oauth/{provider_id}/credential")
        except AuthorizationFlowError as e:
            logger.warning("No credential from custodian", provider=provider_id, error=e.message)
            return None
        return data.get("authorization")
