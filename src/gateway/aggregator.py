"""Tool Aggregator and Router.

Fans catalog discovery out to every enabled provider in parallel, merges
the answers into one de-duplicated catalog, and routes each tool call to
the single provider that listed the tool.

Merge order is deterministic: the managed provider first, then external
providers in configuration order. A tool name already taken by an
earlier provider is dropped with a warning.
"""

import asyncio
from typing import Any, Callable, Iterable, Optional

import httpx

from shared.errors import ExecutionFailed, ToolNotFound
from shared.logging import get_logger
from shared.models import CallToolResult, CatalogEntry, ProviderConfig, Tool
from providers.base import CredentialSource, ProviderAdapter
from providers.factory import create_adapter
from gateway.config_store import ProviderConfigStore
from gateway.policy import filter_catalog

logger = get_logger(__name__)

TOOL_NOT_AVAILABLE = (
    "Error: Tool '{name}' is not available. "
    "It may not exist or you may not have permission to use it."
)

AdapterFactory = Callable[..., ProviderAdapter]


class ToolAggregator:
    """
    Unified tool catalog and call router over all configured providers.

    Provider failures never escape: an unreachable provider contributes no
    tools to the catalog, and a failing call comes back as an error result.
    """

    def __init__(
        self,
        managed: Optional[ProviderAdapter] = None,
        store: Optional[ProviderConfigStore] = None,
        credentials: Optional[CredentialSource] = None,
        adapter_factory: AdapterFactory = create_adapter,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_timeout: Optional[float] = None
    ) -> None:
        self._managed = managed
        self._credentials = credentials
        self._adapter_factory = adapter_factory
        self._http_client = http_client
        self.refresh_timeout = refresh_timeout

        self._configs: list[ProviderConfig] = []
        self._adapters: dict[str, ProviderAdapter] = {}
        self._catalog: Optional[list[CatalogEntry]] = None
        self._routes: dict[str, str] = {}
        self._generation = 0

        self.last_errors: dict[str, str] = {}
        self.warnings: list[str] = []
        self._provider_counts: dict[str, int] = {}

        self._unsubscribe: Optional[Callable[[], None]] = None
        if store is not None:
            self._apply_configs(store.list())
            self._unsubscribe = store.subscribe(self.sync_providers)

    @property
    def managed_id(self) -> Optional[str]:
        return self._managed.provider_id if self._managed is not None else None

    def _apply_configs(self, configs: Iterable[ProviderConfig]) -> list[ProviderAdapter]:
        """Install adapters for the given configs; return the ones no longer used."""
        enabled = [c for c in configs if c.enabled]
        stale: list[ProviderAdapter] = []
        adapters: dict[str, ProviderAdapter] = {}

        for config in enabled:
            if config.id == self.managed_id:
                logger.warning(
                    "Provider id reserved for the managed provider",
                    provider=config.id
                )
                continue

            existing = self._adapters.get(config.id)
            if existing is not None and existing.config.connection_key() == config.connection_key():
                existing.config = config
                adapters[config.id] = existing
                continue

            if existing is not None:
                stale.append(existing)

            try:
                adapters[config.id] = self._adapter_factory(
                    config,
                    credentials=self._credentials,
                    http_client=self._http_client
                )
            except ValueError as e:
                logger.error("Cannot create provider adapter", provider=config.id, error=str(e))

        for provider_id, adapter in self._adapters.items():
            if provider_id not in adapters and adapter not in stale:
                stale.append(adapter)

        self._configs = [c for c in enabled if c.id in adapters]
        self._adapters = adapters
        self._invalidate()
        return stale

    async def sync_providers(self, configs: Iterable[ProviderConfig]) -> None:
        """
        Bring adapters in line with a new configuration set.

        Adapters whose connection settings changed are replaced, removed
        providers are closed, and every cached catalog is invalidated.
        """
        stale = self._apply_configs(configs)
        for adapter in stale:
            await adapter.close()

        logger.info(
            "Providers synchronized",
            providers=[c.id for c in self._configs],
            closed=[a.provider_id for a in stale]
        )

    def _invalidate(self) -> None:
        self._generation += 1
        self._catalog = None
        self._routes = {}

    def _sources(self) -> list[ProviderAdapter]:
        sources: list[ProviderAdapter] = []
        if self._managed is not None:
            sources.append(self._managed)
        sources.extend(self._adapters[c.id] for c in self._configs)
        return sources

    def _adapter_for(self, provider_id: str) -> Optional[ProviderAdapter]:
        if provider_id == self.managed_id:
            return self._managed
        return self._adapters.get(provider_id)

    async def _list_from(self, adapter: ProviderAdapter) -> list[Tool]:
        if self.refresh_timeout is None:
            return await adapter.list_tools()
        return await asyncio.wait_for(adapter.list_tools(), self.refresh_timeout)

    async def refresh(self) -> list[Tool]:
        """
        Rebuild the merged catalog and routing table.

        Returns:
            The merged catalog, unfiltered
        """
        generation = self._generation
        sources = self._sources()

        results = await asyncio.gather(
            *(self._list_from(adapter) for adapter in sources),
            return_exceptions=True
        )

        catalog: list[CatalogEntry] = []
        routes: dict[str, str] = {}
        warnings: list[str] = []
        errors: dict[str, str] = {}
        counts: dict[str, int] = {}

        for adapter, result in zip(sources, results):
            provider_id = adapter.provider_id
            counts[provider_id] = 0

            if isinstance(result, BaseException):
                errors[provider_id] = str(result) or result.__class__.__name__
                logger.warning(
                    "Provider discovery failed",
                    provider=provider_id,
                    error=errors[provider_id]
                )
                continue

            if adapter.last_error:
                errors[provider_id] = adapter.last_error

            for tool in result:
                owner = routes.get(tool.name)
                if owner is not None:
                    message = (
                        f"Tool '{tool.name}' from provider '{provider_id}' conflicts "
                        f"with provider '{owner}' and was dropped"
                    )
                    logger.warning(
                        "Tool name collision",
                        tool=tool.name,
                        provider=provider_id,
                        owner=owner
                    )
                    warnings.append(message)
                    continue

                routes[tool.name] = provider_id
                catalog.append(CatalogEntry(tool=tool, provider_id=provider_id))
                counts[provider_id] += 1

        if generation != self._generation:
            logger.debug("Providers changed during refresh, result not cached")
            return [entry.tool for entry in catalog]

        self._catalog = catalog
        self._routes = routes
        self.warnings = warnings
        self.last_errors = errors
        self._provider_counts = counts

        logger.info(
            "Tool catalog refreshed",
            tool_count=len(catalog),
            providers=len(sources),
            failed=list(errors),
            collisions=len(warnings)
        )
        return [entry.tool for entry in catalog]

    async def list_tools(self, role: Optional[str] = None, refresh: bool = False) -> list[Tool]:
        """
        Get the merged catalog, filtered for a role.

        Args:
            role: Caller role; None returns the unfiltered catalog
            refresh: Rebuild the catalog even if one is cached

        Returns:
            Tools the role may use, in merge order
        """
        if refresh or self._catalog is None:
            await self.refresh()

        tools = [entry.tool for entry in self._catalog or []]
        if role is None:
            return tools
        return filter_catalog(tools, role)

    async def list_tools_wire(self, role: Optional[str] = None) -> list[dict[str, Any]]:
        """Catalog in the caller-facing shape: name, description and inputSchema."""
        return [tool.to_wire() for tool in await self.list_tools(role)]

    def get_catalog(self) -> list[CatalogEntry]:
        """Last merged catalog with owning provider ids."""
        return list(self._catalog or [])

    def owner_of(self, name: str) -> Optional[str]:
        return self._routes.get(name)

    def get_tool(self, name: str) -> Optional[Tool]:
        for entry in self._catalog or []:
            if entry.tool.name == name:
                return entry.tool
        return None

    def is_tool(self, name: str) -> bool:
        """Whether the last merged catalog routes this name."""
        return name in self._routes

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None
    ) -> CallToolResult:
        """
        Route a tool call to the provider that owns the tool.

        Never raises. Authorization is the caller's responsibility: the
        catalog handed out was already filtered for the caller's role.

        Args:
            name: Tool name from the merged catalog
            arguments: Tool arguments

        Returns:
            The provider's result, or an error result
        """
        if self._catalog is None:
            await self.refresh()

        provider_id = self._routes.get(name)
        adapter = self._adapter_for(provider_id) if provider_id else None

        if adapter is None:
            logger.warning("Tool not found in catalog", tool=name)
            return CallToolResult.from_exception(ToolNotFound(TOOL_NOT_AVAILABLE.format(name=name)))

        logger.info("Routing tool call", tool=name, provider=provider_id)

        try:
            result = await adapter.call_tool(name, arguments or {})
        except Exception as e:
            logger.error(
                "Tool call raised",
                tool=name,
                provider=provider_id,
                error=str(e) or e.__class__.__name__
            )
            return CallToolResult.from_exception(
                ExecutionFailed(f"Error calling tool: {e}", provider_id)
            )

        if result.is_error:
            logger.warning(
                "Tool call returned an error",
                tool=name,
                provider=provider_id,
                error_code=result.error_code
            )
        return result

    def clear_cache(self) -> None:
        """Drop the merged catalog, the routing table and every adapter cache."""
        self._invalidate()
        for adapter in self._sources():
            adapter.clear_cache()
        logger.debug("Tool caches cleared")

    def get_stats(self) -> dict[str, Any]:
        """Tool counts from the last refresh."""
        return {
            "total_tools": len(self._catalog or []),
            "providers": dict(self._provider_counts),
            "collisions": len(self.warnings),
            "cached": self._catalog is not None,
        }

    def get_health(self) -> dict[str, Any]:
        """
        Provider health as observed by the last refresh.

        Overall status is healthy when every provider answered, unhealthy
        when none did, and degraded otherwise.
        """
        providers: dict[str, dict[str, Any]] = {}
        for adapter in self._sources():
            provider_id = adapter.provider_id
            if provider_id not in self._provider_counts:
                providers[provider_id] = {"status": "unknown", "tool_count": 0}
            elif provider_id in self.last_errors:
                providers[provider_id] = {
                    "status": "unhealthy",
                    "tool_count": 0,
                    "error": self.last_errors[provider_id],
                }
            else:
                providers[provider_id] = {
                    "status": "healthy",
                    "tool_count": self._provider_counts[provider_id],
                }

        observed = [p["status"] for p in providers.values() if p["status"] != "unknown"]
        if observed and all(s == "unhealthy" for s in observed):
            overall = "unhealthy"
        elif any(s == "unhealthy" for s in observed):
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "providers": providers,
            "tool_count": len(self._catalog or []),
        }

    async def close(self) -> None:
        """Close every adapter and stop following configuration changes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        for adapter in self._sources():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning("Failed to close provider", provider=adapter.provider_id, error=str(e))
