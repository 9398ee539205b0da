"""Shared fixtures and fakes for the gateway tests."""

from typing import Any, Optional

import pytest

from shared.errors import ProviderUnreachable
from shared.models import (
    CallToolResult,
    Dialect,
    ProviderConfig,
    Tool,
    ToolAnnotations,
)
from providers.base import ProviderAdapter


def make_tool(name: str, read_only: Optional[bool] = None, description: str = "") -> Tool:
    """Build a tool with an optional read-only hint."""
    return Tool(
        name=name,
        description=description or f"{name} tool",
        annotations=ToolAnnotations(read_only_hint=read_only),
    )


class FakeAdapter(ProviderAdapter):
    """In-memory adapter with canned tools that records calls."""

    dialect = Dialect.RPC

    def __init__(
        self,
        provider_id: str,
        tools: Optional[list[Tool]] = None,
        fail: bool = False,
        namespace_tools: bool = False
    ) -> None:
        super().__init__(ProviderConfig(
            id=provider_id,
            endpoint=f"http://{provider_id}.test",
            dialect=Dialect.RPC,
            namespace_tools=namespace_tools,
        ))
        self.source_tools = list(tools or [])
        self.fail = fail
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fetch_count = 0
        self.closed = False

    async def _fetch_tools(self) -> list[Tool]:
        self.fetch_count += 1
        if self.fail:
            raise ProviderUnreachable("connection refused", provider_id=self.provider_id)
        return list(self.source_tools)

    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        self.calls.append((name, arguments))
        return CallToolResult.text(f"{self.provider_id}:{name}")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def viewer_tools() -> list[Tool]:
    return [
        make_tool("read_logs", read_only=True),
        make_tool("restart_service", read_only=False),
        make_tool("query_metrics", read_only=True),
        make_tool("unlabelled"),
    ]
