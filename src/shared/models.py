"""Core data models for the Tool Gateway.

This module defines the shared data structures used by provider adapters,
the aggregator and the OAuth flow, so every layer speaks the same shapes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import GatewayError


class Dialect(str, Enum):
    """Wire protocol a provider speaks."""
    MANAGED = "managed"
    RPC = "rpc"
    OPENAPI = "openapi"


class AuthMode(str, Enum):
    """How requests to a provider are authenticated."""
    NONE = "none"
    STATIC_HEADERS = "static_headers"
    OAUTH2 = "oauth2"


class ErrorCode(str, Enum):
    """Stable error codes carried by error results."""
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class ToolAnnotations(BaseModel):
    """Capability hints attached to a tool by its provider."""
    read_only_hint: Optional[bool] = Field(default=None, alias="readOnlyHint")
    destructive_hint: Optional[bool] = Field(default=None, alias="destructiveHint")
    idempotent_hint: Optional[bool] = Field(default=None, alias="idempotentHint")
    open_world_hint: Optional[bool] = Field(default=None, alias="openWorldHint")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Tool(BaseModel):
    """
    A named, schema-described callable operation.

    Identity is the name. Uniqueness is enforced when catalogs are merged,
    not by the provider that reports the tool.
    """
    name: str = Field(..., description="Tool name as exposed to callers")
    description: str = Field(default="")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
        description="JSON Schema for the tool arguments"
    )
    annotations: ToolAnnotations = Field(default_factory=ToolAnnotations)

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Return the caller-facing shape: name, description and inputSchema."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ContentBlock(BaseModel):
    """A single block of tool output."""
    type: str = "text"
    text: str = ""


class CallToolResult(BaseModel):
    """
    Result of a tool invocation.

    Failures are reported with is_error set and a human-readable message in
    the content; error_code tells callers which kind of failure occurred.
    """
    content: list[ContentBlock] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    error_code: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def text(cls, text: str) -> "CallToolResult":
        """Create a successful single-text result."""
        return cls(content=[ContentBlock(text=text)])

    @classmethod
    def error(cls, message: str, code: str = ErrorCode.EXECUTION_FAILED.value) -> "CallToolResult":
        """Create an error result."""
        return cls(content=[ContentBlock(text=message)], is_error=True, error_code=code)

    @classmethod
    def from_exception(cls, exc: GatewayError) -> "CallToolResult":
        """Create an error result carrying a gateway error's message and code."""
        return cls.error(exc.message, exc.code)

    @property
    def message(self) -> str:
        """Concatenated text of all content blocks."""
        return "\n".join(block.text for block in self.content)

    def to_wire(self) -> dict[str, Any]:
        return {
            "content": [block.model_dump() for block in self.content],
            "isError": self.is_error,
        }


class OAuthProviderConfig(BaseModel):
    """OAuth 2.1 settings for a provider. Never holds the client secret."""
    client_id: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    registration_endpoint: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    resource: Optional[str] = None
    use_dynamic_registration: bool = False


class ProviderConfig(BaseModel):
    """
    Configuration of one tool provider.

    Created and edited by the administration layer and consumed read-only
    here. Any change invalidates the provider's cached catalog and routes.
    """
    id: str = Field(..., description="Stable identifier, used for namespacing")
    display_name: str = Field(default="")
    endpoint: str
    dialect: Dialect
    enabled: bool = True
    auth_mode: AuthMode = AuthMode.NONE
    headers: dict[str, str] = Field(default_factory=dict)
    oauth: Optional[OAuthProviderConfig] = None
    namespace_tools: bool = Field(
        default=False,
        description="Expose tools as '{id}_{name}' instead of their plain name"
    )
    timeout_seconds: float = Field(default=30, gt=0)

    @property
    def name(self) -> str:
        return self.display_name or self.id

    def connection_key(self) -> tuple[Any, ...]:
        """Fields whose change requires a fresh adapter."""
        return (
            self.endpoint,
            self.dialect,
            self.auth_mode,
            tuple(sorted(self.headers.items())),
            self.namespace_tools,
            self.timeout_seconds,
        )


class CatalogEntry(BaseModel):
    """A tool together with the provider that serves it."""
    tool: Tool
    provider_id: str


class TokenStatus(str, Enum):
    """Lifecycle of a provider's delegated authorization."""
    NOT_CONFIGURED = "not_configured"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    ERROR = "error"


class OAuthStatus(BaseModel):
    """Authorization status as seen by callers. Carries no token material."""
    status: TokenStatus = TokenStatus.NOT_CONFIGURED
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
