"""Delegated authorization (OAuth 2.1 with PKCE) for tool providers."""

from oauth.backend import OAuthBackend, TokenVault
from oauth.custody import HTTPTokenCustodian, TokenCustodian
from oauth.flow import OAuthFlowManager, OAuthSession
from oauth.interaction import (
    ChannelInteraction,
    InteractionOpener,
    InteractionRegistry,
    PendingAuthorization,
)
from oauth.models import AuthorizationOutcome, OAuthMetadata, OutcomeSignal

__all__ = [
    "AuthorizationOutcome",
    "ChannelInteraction",
    "HTTPTokenCustodian",
    "InteractionOpener",
    "InteractionRegistry",
    "OAuthBackend",
    "OAuthFlowManager",
    "OAuthMetadata",
    "OAuthSession",
    "OutcomeSignal",
    "PendingAuthorization",
    "TokenCustodian",
    "TokenVault",
]
