"""Tests for the Tool Aggregator and Router."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.errors import ExecutionFailed, ToolNotFound
from shared.models import CallToolResult, Dialect, ErrorCode, ProviderConfig
from gateway.aggregator import ToolAggregator
from gateway.config_store import ProviderConfigStore
from conftest import FakeAdapter, make_tool


def aggregator_with(managed=None, *externals):
    """Aggregator over pre-built fake adapters, in the given order."""
    by_id = {adapter.provider_id: adapter for adapter in externals}
    store = ProviderConfigStore([adapter.config for adapter in externals])

    def factory(config, credentials=None, http_client=None):
        return by_id[config.id]

    return ToolAggregator(managed=managed, store=store, adapter_factory=factory)


class TestCatalog:
    """Tests for catalog discovery and merging."""

    @pytest.mark.asyncio
    async def test_merges_managed_first_then_externals(self):
        """Test deterministic merge order across providers."""
        managed = FakeAdapter("builtin", [make_tool("query_prometheus"), make_tool("get_dashboard")])
        grafana = FakeAdapter("grafana", [make_tool("query_loki")])
        custom = FakeAdapter("custom", [make_tool("fetch_data")])
        aggregator = aggregator_with(managed, grafana, custom)

        tools = await aggregator.list_tools()

        assert [t.name for t in tools] == [
            "query_prometheus", "get_dashboard", "query_loki", "fetch_data"
        ]

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self):
        """Test that two refreshes with unchanged providers give equal catalogs."""
        aggregator = aggregator_with(
            FakeAdapter("builtin", [make_tool("a")]),
            FakeAdapter("ext", [make_tool("b"), make_tool("c")]),
        )

        first = await aggregator.refresh()
        second = await aggregator.refresh()

        assert first == second
        assert [e.provider_id for e in aggregator.get_catalog()] == ["builtin", "ext", "ext"]

    @pytest.mark.asyncio
    async def test_catalog_names_are_unique_and_managed_wins(self):
        """Test that a conflicting external tool is dropped with a warning."""
        managed = FakeAdapter("builtin", [make_tool("search", description="builtin search")])
        external = FakeAdapter("ext", [make_tool("search", description="external search"), make_tool("other")])
        aggregator = aggregator_with(managed, external)

        tools = await aggregator.list_tools()

        names = [t.name for t in tools]
        assert len(names) == len(set(names))
        assert aggregator.owner_of("search") == "builtin"
        assert aggregator.get_tool("search").description == "builtin search"
        assert len(aggregator.warnings) == 1
        assert "search" in aggregator.warnings[0] and "ext" in aggregator.warnings[0]

    @pytest.mark.asyncio
    async def test_collision_between_externals_keeps_first_configured(self):
        """Test that configuration order decides between external providers."""
        first = FakeAdapter("first", [make_tool("fetch")])
        second = FakeAdapter("second", [make_tool("fetch")])
        aggregator = aggregator_with(None, first, second)

        await aggregator.refresh()

        assert aggregator.owner_of("fetch") == "first"

    @pytest.mark.asyncio
    async def test_namespacing_avoids_collisions(self):
        """Test that a namespaced provider keeps its conflicting tool."""
        managed = FakeAdapter("builtin", [make_tool("search")])
        external = FakeAdapter("ext", [make_tool("search")], namespace_tools=True)
        aggregator = aggregator_with(managed, external)

        tools = await aggregator.list_tools()

        assert [t.name for t in tools] == ["search", "ext_search"]
        assert aggregator.warnings == []

    @pytest.mark.asyncio
    async def test_every_catalog_name_is_owned_by_its_route(self):
        """Test that each merged name routes to an adapter that owns it."""
        managed = FakeAdapter("builtin", [make_tool("search"), make_tool("fetch")])
        namespaced = FakeAdapter("ext", [make_tool("search"), make_tool("annotate")], namespace_tools=True)
        first = FakeAdapter("first", [make_tool("fetch"), make_tool("upload")])
        second = FakeAdapter("second", [make_tool("upload"), make_tool("archive")])
        aggregator = aggregator_with(managed, namespaced, first, second)

        await aggregator.refresh()
        catalog = aggregator.get_catalog()

        assert [entry.tool.name for entry in catalog] == [
            "search", "fetch", "ext_search", "ext_annotate", "upload", "archive"
        ]
        for entry in catalog:
            adapter = aggregator._adapter_for(entry.provider_id)
            assert adapter.owns_tool(entry.tool.name) is True

            result = await aggregator.call_tool(entry.tool.name, {})
            assert result.message.startswith(f"{entry.provider_id}:")

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        """Test that a failing provider only removes its own tools."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        broken = FakeAdapter("broken", [make_tool("b")], fail=True)
        healthy = FakeAdapter("healthy", [make_tool("c")])
        aggregator = aggregator_with(managed, broken, healthy)

        tools = await aggregator.list_tools()

        assert [t.name for t in tools] == ["a", "c"]
        assert "broken" in aggregator.last_errors
        assert aggregator.get_health()["status"] == "degraded"
        assert aggregator.get_health()["providers"]["broken"]["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_raising_adapter_is_isolated(self):
        """Test that an adapter raising out of list_tools does not break the refresh."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        managed.list_tools = AsyncMock(side_effect=RuntimeError("boom"))
        external = FakeAdapter("ext", [make_tool("b")])
        aggregator = aggregator_with(managed, external)

        tools = await aggregator.list_tools()

        assert [t.name for t in tools] == ["b"]
        assert aggregator.last_errors["builtin"] == "boom"

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self):
        """Test that the refresh timeout bounds each provider branch."""
        slow = FakeAdapter("slow", [make_tool("s")])

        async def hang():
            await asyncio.sleep(5)
            return []

        slow.list_tools = hang
        aggregator = aggregator_with(FakeAdapter("builtin", [make_tool("a")]), slow)
        aggregator.refresh_timeout = 0.05

        tools = await aggregator.list_tools()

        assert [t.name for t in tools] == ["a"]
        assert "slow" in aggregator.last_errors

    @pytest.mark.asyncio
    async def test_all_providers_failing(self):
        """Test that total failure yields an empty catalog and unhealthy status."""
        aggregator = aggregator_with(
            FakeAdapter("builtin", fail=True),
            FakeAdapter("ext", fail=True),
        )

        assert await aggregator.list_tools() == []
        assert aggregator.get_health()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_role_filtering(self):
        """Test that list_tools applies the role policy."""
        aggregator = aggregator_with(
            FakeAdapter("builtin", [make_tool("read", read_only=True), make_tool("write", read_only=False)]),
        )

        assert [t.name for t in await aggregator.list_tools("Viewer")] == ["read"]
        assert [t.name for t in await aggregator.list_tools("Admin")] == ["read", "write"]

    @pytest.mark.asyncio
    async def test_wire_shape(self):
        """Test the caller-facing tool shape."""
        aggregator = aggregator_with(FakeAdapter("builtin", [make_tool("read", read_only=True)]))

        wire = await aggregator.list_tools_wire("Viewer")

        assert wire == [{
            "name": "read",
            "description": "read tool",
            "inputSchema": {"type": "object", "properties": {}},
        }]

    @pytest.mark.asyncio
    async def test_catalog_is_cached_until_cleared(self):
        """Test that list_tools reuses the catalog until clear_cache."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        aggregator = aggregator_with(managed)

        await aggregator.list_tools()
        await aggregator.list_tools()
        assert managed.fetch_count == 1

        aggregator.clear_cache()
        assert not aggregator.is_tool("a")

        await aggregator.list_tools()
        assert managed.fetch_count == 2


class TestRouting:
    """Tests for routing tool calls."""

    @pytest.mark.asyncio
    async def test_routes_to_owning_provider(self):
        """Test that a call reaches exactly the provider that listed the tool."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        external = FakeAdapter("ext", [make_tool("b")])
        aggregator = aggregator_with(managed, external)
        await aggregator.refresh()

        result = await aggregator.call_tool("b", {"x": 1})

        assert result.message == "ext:b"
        assert external.calls == [("b", {"x": 1})]
        assert managed.calls == []

    @pytest.mark.asyncio
    async def test_colliding_name_routes_to_winner(self):
        """Test that a dropped duplicate never receives calls."""
        managed = FakeAdapter("builtin", [make_tool("search")])
        external = FakeAdapter("ext", [make_tool("search")])
        aggregator = aggregator_with(managed, external)
        await aggregator.refresh()

        await aggregator.call_tool("search")

        assert len(managed.calls) == 1
        assert external.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Test the not-available error for names no provider lists."""
        aggregator = aggregator_with(FakeAdapter("builtin", [make_tool("a")]))
        await aggregator.refresh()

        result = await aggregator.call_tool("missing")

        assert result.is_error
        assert result.error_code == ErrorCode.TOOL_NOT_FOUND.value == ToolNotFound.code
        assert result.message == (
            "Error: Tool 'missing' is not available. "
            "It may not exist or you may not have permission to use it."
        )

    @pytest.mark.asyncio
    async def test_adapter_exception_becomes_error_result(self):
        """Test that an adapter raising from call_tool is contained."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        managed.call_tool = AsyncMock(side_effect=RuntimeError("socket closed"))
        aggregator = aggregator_with(managed)
        await aggregator.refresh()

        result = await aggregator.call_tool("a")

        assert result.is_error
        assert result.message == "Error calling tool: socket closed"
        assert result.error_code == ErrorCode.EXECUTION_FAILED.value == ExecutionFailed.code

    @pytest.mark.asyncio
    async def test_provider_error_result_passes_through(self):
        """Test that a provider error result is returned untouched."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        failure = CallToolResult.error("quota exceeded")
        managed.call_tool = AsyncMock(return_value=failure)
        aggregator = aggregator_with(managed)
        await aggregator.refresh()

        assert await aggregator.call_tool("a") is failure

    @pytest.mark.asyncio
    async def test_is_tool_before_and_after_refresh(self):
        """Test that is_tool reflects the last merged catalog only."""
        aggregator = aggregator_with(FakeAdapter("builtin", [make_tool("a")]))

        assert not aggregator.is_tool("a")
        await aggregator.refresh()
        assert aggregator.is_tool("a")
        assert not aggregator.is_tool("b")

    @pytest.mark.asyncio
    async def test_call_without_catalog_refreshes_first(self):
        """Test that the first call builds the catalog."""
        managed = FakeAdapter("builtin", [make_tool("a")])
        aggregator = aggregator_with(managed)

        result = await aggregator.call_tool("a")

        assert not result.is_error
        assert managed.fetch_count == 1


class TestProviderSync:
    """Tests for following configuration changes."""

    @pytest.mark.asyncio
    async def test_config_change_replaces_adapter_and_invalidates(self):
        """Test that a changed endpoint builds a new adapter and drops caches."""
        created = []

        def factory(config, credentials=None, http_client=None):
            adapter = FakeAdapter(config.id, [make_tool(f"tool_{len(created)}")])
            adapter.config = config
            created.append(adapter)
            return adapter

        store = ProviderConfigStore([
            ProviderConfig(id="ext", endpoint="http://one.test", dialect=Dialect.RPC),
        ])
        aggregator = ToolAggregator(store=store, adapter_factory=factory)
        assert [t.name for t in await aggregator.list_tools()] == ["tool_0"]

        await store.replace([
            ProviderConfig(id="ext", endpoint="http://two.test", dialect=Dialect.RPC),
        ])

        assert created[0].closed
        assert not aggregator.is_tool("tool_0")
        assert [t.name for t in await aggregator.list_tools()] == ["tool_1"]

    @pytest.mark.asyncio
    async def test_disabled_and_removed_providers(self):
        """Test that disabled or removed providers are closed and not listed."""
        ext = FakeAdapter("ext", [make_tool("b")])
        aggregator = aggregator_with(None, ext)
        await aggregator.refresh()

        await aggregator.sync_providers([ext.config.model_copy(update={"enabled": False})])

        assert ext.closed
        assert await aggregator.list_tools() == []

    @pytest.mark.asyncio
    async def test_unchanged_config_keeps_adapter(self):
        """Test that replacing with equal connection settings reuses the adapter."""
        ext = FakeAdapter("ext", [make_tool("b")])
        aggregator = aggregator_with(None, ext)

        await aggregator.sync_providers([ext.config.model_copy(update={"display_name": "Renamed"})])

        assert not ext.closed
        assert [t.name for t in await aggregator.list_tools()] == ["b"]

    @pytest.mark.asyncio
    async def test_stats_and_close(self):
        """Test statistics and shutdown."""
        managed = FakeAdapter("builtin", [make_tool("a"), make_tool("b")])
        ext = FakeAdapter("ext", [make_tool("c")])
        aggregator = aggregator_with(managed, ext)
        await aggregator.refresh()

        stats = aggregator.get_stats()
        await aggregator.close()

        assert stats["total_tools"] == 3
        assert stats["providers"] == {"builtin": 2, "ext": 1}
        assert managed.closed and ext.closed
