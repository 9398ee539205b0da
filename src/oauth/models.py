"""Data models for the delegated authorization flow.

Metadata documents follow RFC 8414 (authorization server) and RFC 9728
(protected resource); registration follows RFC 7591.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class OAuthMetadata(BaseModel):
    """Authorization server metadata (RFC 8414)."""
    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    scopes_supported: list[str] = Field(default_factory=list)
    response_types_supported: list[str] = Field(default_factory=list)
    grant_types_supported: list[str] = Field(default_factory=list)
    code_challenge_methods_supported: list[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ProtectedResourceMetadata(BaseModel):
    """Protected resource metadata (RFC 9728)."""
    resource: Optional[str] = None
    authorization_servers: list[str] = Field(default_factory=list)
    scopes_supported: list[str] = Field(default_factory=list)
    bearer_methods_supported: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ClientRegistrationRequest(BaseModel):
    """Dynamic client registration request (RFC 7591)."""
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "client_secret_basic"
    scope: Optional[str] = None


class ClientRegistrationResponse(BaseModel):
    """Dynamic client registration response. The secret stays in the backend."""
    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class TokenResponse(BaseModel):
    """Token endpoint response."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenErrorResponse(BaseModel):
    error: str
    error_description: Optional[str] = None


class StoredToken(BaseModel):
    """A provider token as held by the backend, encrypted at rest."""
    provider_id: str
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: datetime
    scopes: list[str] = Field(default_factory=list)
    audience: Optional[str] = None

    def expires_within(self, seconds: float) -> bool:
        remaining = (self.expires_at - datetime.now(timezone.utc)).total_seconds()
        return remaining < seconds

    @property
    def authorization_header(self) -> str:
        token_type = "Bearer" if self.token_type.lower() == "bearer" else self.token_type
        return f"{token_type} {self.access_token}"


class PendingAuthorizationRecord(BaseModel):
    """State kept between issuing an authorization URL and the callback."""
    provider_id: str
    state: str
    code_verifier: str
    redirect_uri: str
    client_id: str
    token_endpoint: str
    resource: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


class ProviderClient(BaseModel):
    """Client credentials and endpoints the backend uses for one provider."""
    client_id: str
    client_secret: Optional[str] = None
    token_endpoint: Optional[str] = None
    resource: Optional[str] = None


class AuthorizationOutcome(str, Enum):
    """Terminal result of an interactive authorization attempt."""
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class OutcomeSignal(BaseModel):
    """Signal delivered by the consent channel."""
    outcome: AuthorizationOutcome
    message: Optional[str] = None


class CallbackResult(BaseModel):
    """Outcome of a redirect callback. Carries no token material."""
    provider_id: str
    expires_at: Optional[datetime] = None
