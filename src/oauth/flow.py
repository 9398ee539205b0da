"""Delegated authorization flow state machine.

Tracks one session per provider (not_configured, authorizing, authorized,
expired, error) and drives the interactive authorize step. Token material
never passes through here: the custodian issues the authorization URL and
completes the exchange, this module only waits for the outcome.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from shared.config import OAuthSettings
from shared.errors import (
    AuthorizationFlowCancelled,
    AuthorizationFlowError,
    AuthorizationFlowTimeout,
    AuthorizationInProgress,
    ConfigurationIncomplete,
    GatewayError,
)
from shared.logging import get_logger
from shared.models import OAuthProviderConfig, OAuthStatus, TokenStatus
from oauth.custody import TokenCustodian
from oauth.interaction import InteractionOpener, PendingAuthorization
from oauth.models import AuthorizationOutcome, OAuthMetadata

logger = get_logger(__name__)


class OAuthSession(BaseModel):
    """Per-provider authorization state. Never holds a token."""
    provider_id: str
    status: TokenStatus = TokenStatus.NOT_CONFIGURED
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_status(self) -> OAuthStatus:
        return OAuthStatus(
            status=self.status,
            expires_at=self.expires_at,
            last_error=self.last_error,
        )


class OAuthFlowManager:
    """
    Coordinates discovery, registration and interactive authorization.

    At most one authorize attempt per provider is in flight. Whatever ends
    an attempt (completion, error, user abandonment, timeout or caller
    cancellation), the consent channel is closed and the slot released. An
    attempt that did not complete also has its pending state discarded by
    the custodian, so a late consent cannot mint a token.
    """

    def __init__(
        self,
        custodian: TokenCustodian,
        opener: InteractionOpener,
        settings: Optional[OAuthSettings] = None
    ) -> None:
        self.custodian = custodian
        self.settings = settings or OAuthSettings()
        self._opener = opener
        self._sessions: dict[str, OAuthSession] = {}
        self._in_flight: set[str] = set()

    @property
    def authorize_timeout(self) -> float:
        return self.settings.authorize_timeout_seconds

    def _session(self, provider_id: str) -> OAuthSession:
        session = self._sessions.get(provider_id)
        if session is None:
            session = OAuthSession(provider_id=provider_id)
            self._sessions[provider_id] = session
        return session

    def is_authorizing(self, provider_id: str) -> bool:
        return provider_id in self._in_flight

    async def discover(self, provider_id: str, endpoint: str) -> OAuthMetadata:
        """
        Discover authorization server metadata for a provider endpoint.

        Raises:
            AuthorizationFlowError: If discovery fails (session unchanged)
        """
        try:
            metadata = await self.custodian.discover_metadata(endpoint)
        except AuthorizationFlowError as e:
            logger.warning("OAuth discovery failed", provider=provider_id, error=e.message)
            raise
        except Exception as e:
            logger.warning("OAuth discovery failed", provider=provider_id, error=str(e))
            raise AuthorizationFlowError(f"Metadata discovery failed: {e}", provider_id) from e

        logger.info("OAuth discovery succeeded", provider=provider_id, issuer=metadata.issuer)
        return metadata

    def ensure_registration_selected(
        self,
        provider_id: str,
        config: Optional[OAuthProviderConfig]
    ) -> None:
        """Raise ConfigurationIncomplete when the provider opted out of registration."""
        if config is not None and not config.use_dynamic_registration:
            raise ConfigurationIncomplete(
                "Dynamic client registration is not selected for this provider",
                provider_id
            )

    async def register(
        self,
        provider_id: str,
        metadata: OAuthMetadata,
        redirect_uri: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        client_name: Optional[str] = None,
        config: Optional[OAuthProviderConfig] = None
    ) -> str:
        """
        Register a client dynamically.

        Registration happens only when the server supports it and the
        provider's OAuth settings, when given, select it. On failure callers
        fall back to manually entered client credentials.

        Returns:
            The issued client id

        Raises:
            ConfigurationIncomplete: If the server offers no registration endpoint
                or the provider uses manually entered credentials
            AuthorizationFlowError: If registration fails (session unchanged)
        """
        self.ensure_registration_selected(provider_id, config)

        if not metadata.registration_endpoint:
            raise ConfigurationIncomplete(
                "Authorization server does not support dynamic client registration",
                provider_id
            )

        try:
            client_id = await self.custodian.register_client(
                provider_id,
                metadata.registration_endpoint,
                client_name or self.settings.client_name,
                redirect_uri or self.settings.redirect_uri,
                scopes if scopes is not None else metadata.scopes_supported
            )
        except AuthorizationFlowError as e:
            logger.warning("OAuth client registration failed", provider=provider_id, error=e.message)
            raise
        except Exception as e:
            logger.warning("OAuth client registration failed", provider=provider_id, error=str(e))
            raise AuthorizationFlowError(f"Client registration failed: {e}", provider_id) from e

        return client_id

    async def authorize(
        self,
        provider_id: str,
        config: Optional[OAuthProviderConfig]
    ) -> OAuthStatus:
        """
        Run the interactive authorization step.

        Returns:
            The authorized status (with expiry)

        Raises:
            ConfigurationIncomplete: Client id or endpoints missing; nothing changed
            AuthorizationInProgress: Another attempt for the provider is pending
            AuthorizationFlowTimeout: No signal before the deadline
            AuthorizationFlowCancelled: The user closed the consent channel
            AuthorizationFlowError: The channel reported an error
        """
        if config is None or not (
            config.client_id and config.authorization_endpoint and config.token_endpoint
        ):
            raise ConfigurationIncomplete(
                "OAuth client id, authorization endpoint and token endpoint are required",
                provider_id
            )

        if provider_id in self._in_flight:
            raise AuthorizationInProgress(
                f"Authorization for '{provider_id}' is already in progress",
                provider_id
            )

        self._in_flight.add(provider_id)
        session = self._session(provider_id)
        session.status = TokenStatus.AUTHORIZING
        session.last_error = None
        channel: Optional[PendingAuthorization] = None
        completed = False

        logger.info("Authorization started", provider=provider_id)

        try:
            url = await self.custodian.request_authorization_url(provider_id, config)
            channel = await self._opener(provider_id, url)

            try:
                signal = await asyncio.wait_for(channel.await_outcome(), self.authorize_timeout)
            except asyncio.TimeoutError as e:
                raise AuthorizationFlowTimeout(
                    f"Authorization timed out after {self.authorize_timeout:g}s",
                    provider_id
                ) from e

            if signal.outcome == AuthorizationOutcome.COMPLETED:
                completed = True
                status = await self.custodian.get_status(provider_id)
                session.status = TokenStatus.AUTHORIZED
                session.expires_at = status.expires_at
                session.last_error = None
                logger.info("Authorization completed", provider=provider_id)
                return session.to_status()

            if signal.outcome == AuthorizationOutcome.CANCELLED:
                raise AuthorizationFlowCancelled(
                    signal.message or "Authorization was cancelled",
                    provider_id
                )

            raise AuthorizationFlowError(signal.message or "Authorization failed", provider_id)

        except asyncio.CancelledError:
            self._fail(session, "Authorization was cancelled")
            raise
        except GatewayError as e:
            self._fail(session, e.message)
            raise
        except Exception as e:
            self._fail(session, str(e))
            raise AuthorizationFlowError(f"Authorization failed: {e}", provider_id) from e
        finally:
            if channel is not None:
                channel.close()
            try:
                if not completed:
                    await self._discard_pending(provider_id)
            finally:
                self._in_flight.discard(provider_id)

    async def _discard_pending(self, provider_id: str) -> None:
        try:
            await self.custodian.cancel_authorization(provider_id)
        except Exception as e:
            logger.warning("Failed to discard pending authorization", provider=provider_id, error=str(e))

    def _fail(self, session: OAuthSession, message: str) -> None:
        session.status = TokenStatus.ERROR
        session.last_error = message
        logger.warning("Authorization failed", provider=session.provider_id, error=message)

    def status(self, provider_id: str) -> OAuthStatus:
        """
        Current status for a provider.

        An authorized session past its expiry reports (and records) expired.
        """
        session = self._sessions.get(provider_id)
        if session is None:
            return OAuthStatus()

        if (
            session.status == TokenStatus.AUTHORIZED
            and session.expires_at is not None
            and datetime.now(timezone.utc) >= session.expires_at
        ):
            session.status = TokenStatus.EXPIRED

        return session.to_status()

    async def refresh_status(self, provider_id: str) -> OAuthStatus:
        """Pull the custodian's token status into the session."""
        if provider_id in self._in_flight:
            return self._session(provider_id).to_status()

        status = await self.custodian.get_status(provider_id)
        session = self._session(provider_id)
        session.status = status.status
        session.expires_at = status.expires_at
        session.last_error = status.last_error
        return session.to_status()

    async def revoke(self, provider_id: str) -> OAuthStatus:
        """Revoke the provider's token. Idempotent."""
        await self.custodian.revoke(provider_id)

        session = self._session(provider_id)
        session.status = TokenStatus.NOT_CONFIGURED
        session.expires_at = None
        session.last_error = None

        logger.info("Authorization revoked", provider=provider_id)
        return session.to_status()

    def forget(self, provider_id: str) -> None:
        """Drop the session of a removed provider."""
        self._sessions.pop(provider_id, None)
