"""Base classes for provider adapters.

All adapters must:
- Normalize "list tools" and "call tool" into the shared Tool/CallToolResult shapes
- Attach provider credentials themselves
- Never raise out of list_tools or call_tool
- Keep their own last-fetched catalog so the router can verify ownership
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol

import httpx

from shared.errors import ConfigurationIncomplete, ExecutionFailed
from shared.logging import get_logger
from shared.models import (
    AuthMode,
    CallToolResult,
    Dialect,
    ProviderConfig,
    Tool,
)

logger = get_logger(__name__)


class CredentialSource(Protocol):
    """Supplies bearer credentials for providers using delegated authorization."""

    async def authorization_header(self, provider_id: str) -> Optional[str]:
        """Return an Authorization header value, or None if not authorized."""
        ...


class ProviderAdapter(ABC):
    """
    Base class for provider adapters.

    Each adapter:
    - Serves exactly one provider configuration
    - Translates list/call into the provider's dialect
    - Converts every failure into an empty catalog or an error result
    """

    dialect: Dialect

    def __init__(
        self,
        config: ProviderConfig,
        credentials: Optional[CredentialSource] = None
    ) -> None:
        self.config = config
        self.provider_id = config.id
        self._credentials = credentials
        self._tools: dict[str, Tool] = {}
        self.last_error: Optional[str] = None

    @abstractmethod
    async def _fetch_tools(self) -> list[Tool]:
        """Fetch the provider's tools under their original names."""

    @abstractmethod
    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        """Invoke a tool by its original name."""

    async def list_tools(self) -> list[Tool]:
        """
        List the provider's tools.

        Never raises: any failure is logged and yields an empty list.

        Returns:
            Tools under the names callers will use
        """
        try:
            fetched = await self._fetch_tools()
        except Exception as e:
            self.last_error = str(e) or e.__class__.__name__
            logger.warning(
                "Failed to list tools from provider",
                provider=self.provider_id,
                dialect=self.dialect.value,
                error=self.last_error
            )
            self._tools = {}
            return []

        tools = [self._expose(tool) for tool in fetched]
        self._tools = {tool.name: tool for tool in tools}
        self.last_error = None

        logger.debug(
            "Listed tools from provider",
            provider=self.provider_id,
            tool_count=len(tools)
        )
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None
    ) -> CallToolResult:
        """
        Call a tool on the provider.

        Never raises: failures are returned as error results.

        Args:
            name: Tool name as listed by this adapter
            arguments: Tool arguments

        Returns:
            Tool result from the provider
        """
        try:
            return await self._invoke(self._original_name(name), dict(arguments or {}))
        except Exception as e:
            logger.error(
                "Tool call failed",
                provider=self.provider_id,
                tool=name,
                error=str(e) or e.__class__.__name__
            )
            return CallToolResult.from_exception(ExecutionFailed(
                f"Error calling tool {name} on {self.config.name}: {e}",
                self.provider_id
            ))

    def owns_tool(self, name: str) -> bool:
        """Whether the last fetched catalog contains the tool."""
        return name in self._tools

    def get_tool(self, name: str) -> Optional[Tool]:
        """Get a tool from the last fetched catalog."""
        return self._tools.get(name)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def clear_cache(self) -> None:
        """Forget the last fetched catalog."""
        self._tools = {}

    async def close(self) -> None:
        """Release provider connections."""

    def _expose(self, tool: Tool) -> Tool:
        """Apply the provider namespace prefix when configured."""
        if not self.config.namespace_tools:
            return tool
        return tool.model_copy(update={"name": f"{self.provider_id}_{tool.name}"})

    def _original_name(self, name: str) -> str:
        prefix = f"{self.provider_id}_"
        if self.config.namespace_tools and name.startswith(prefix):
            return name[len(prefix):]
        return name

    async def _request_headers(self) -> dict[str, str]:
        """
        Headers carrying the provider credentials.

        Raises:
            ConfigurationIncomplete: If the provider needs OAuth and no
                credential is available
        """
        mode = self.config.auth_mode

        if mode == AuthMode.STATIC_HEADERS:
            return dict(self.config.headers)

        if mode == AuthMode.OAUTH2:
            header = None
            if self._credentials is not None:
                header = await self._credentials.authorization_header(self.provider_id)
            if not header:
                raise ConfigurationIncomplete(
                    f"Provider '{self.provider_id}' requires OAuth authorization",
                    provider_id=self.provider_id
                )
            return {"Authorization": header}

        return {}


class HTTPProviderAdapter(ProviderAdapter):
    """
    Base adapter for providers reached over plain HTTP.

    Provides common HTTP client functionality.
    """

    def __init__(
        self,
        config: ProviderConfig,
        credentials: Optional[CredentialSource] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        super().__init__(config, credentials)
        self.timeout = config.timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
