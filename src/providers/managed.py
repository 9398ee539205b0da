"""Managed-connection provider adapter.

Speaks the native tool protocol over a long-lived streamable HTTP session
(mcp SDK). The session is opened lazily on first use, shared by every
subsequent call, and re-opened once when the connection turns out to be
closed.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client

from shared.config import ManagedSettings
from shared.errors import ProviderUnreachable
from shared.logging import get_logger
from shared.models import (
    AuthMode,
    CallToolResult,
    ContentBlock,
    Dialect,
    ErrorCode,
    ProviderConfig,
    Tool,
    ToolAnnotations,
)
from shared.schema import normalize_input_schema
from providers.base import CredentialSource, ProviderAdapter

logger = get_logger(__name__)

CLOSED_CONNECTION_ERRORS = {"ClosedResourceError", "BrokenResourceError", "EndOfStream"}

SessionFactory = Callable[[str, dict[str, str]], Any]


def is_connection_closed(error: BaseException) -> bool:
    """Whether an error means the underlying session is gone."""
    if error.__class__.__name__ in CLOSED_CONNECTION_ERRORS:
        return True
    return "connection closed" in str(error).lower()


def content_text(block: Any) -> str:
    """Render an SDK content block as text."""
    kind = getattr(block, "type", None)
    if kind == "text":
        return block.text
    if kind == "image":
        return f"[Image: {block.mimeType}]"
    if kind == "resource":
        return f"[Resource: {block.resource.uri}]"
    if kind == "resource_link":
        return f"[Resource: {block.uri}]"
    return "[Unknown content type]"


def _convert_tool(raw: Any) -> Tool:
    annotations = ToolAnnotations()
    if getattr(raw, "annotations", None) is not None:
        annotations = ToolAnnotations.model_validate(
            raw.annotations.model_dump(exclude_none=True)
        )
    return Tool(
        name=raw.name,
        description=raw.description or "",
        input_schema=normalize_input_schema(raw.inputSchema),
        annotations=annotations,
    )


class ManagedConnectionAdapter(ProviderAdapter):
    """
    Adapter for the first-party provider reached over a managed session.

    Concurrent first callers join a single in-flight connect; when it fails,
    every waiter sees the failure and the next call starts a fresh attempt.
    """

    dialect = Dialect.MANAGED

    def __init__(
        self,
        config: ProviderConfig,
        credentials: Optional[CredentialSource] = None,
        session_factory: Optional[SessionFactory] = None,
        connect_timeout: float = 10,
        call_timeout: Optional[float] = None
    ) -> None:
        super().__init__(config, credentials)
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout or config.timeout_seconds
        self._session_factory = session_factory or self._open_streamable_session

        self._session: Optional[Any] = None
        self._runner: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._connecting: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: ManagedSettings,
        session_factory: Optional[SessionFactory] = None
    ) -> "ManagedConnectionAdapter":
        """Build the first-party adapter from application settings."""
        config = ProviderConfig(
            id=settings.id,
            display_name="Built-in tools",
            endpoint=settings.endpoint,
            dialect=Dialect.MANAGED,
            auth_mode=AuthMode.STATIC_HEADERS if settings.headers else AuthMode.NONE,
            headers=settings.headers,
            timeout_seconds=settings.call_timeout_seconds,
        )
        return cls(
            config,
            session_factory=session_factory,
            connect_timeout=settings.connect_timeout_seconds,
            call_timeout=settings.call_timeout_seconds,
        )

    @property
    def connected(self) -> bool:
        return self._session is not None

    @asynccontextmanager
    async def _open_streamable_session(
        self,
        url: str,
        headers: dict[str, str]
    ) -> AsyncIterator[ClientSession]:
        async with httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self.call_timeout)
        ) as http_client:
            async with streamable_http_client(url, http_client=http_client) as (read_stream, write_stream, _):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self.call_timeout)
                ) as session:
                    await session.initialize()
                    yield session

    async def _ensure_session(self) -> Any:
        if self._session is not None:
            return self._session

        if self._connecting is None:
            self._connecting = asyncio.create_task(self._connect())
            self._connecting.add_done_callback(self._connect_finished)

        return await asyncio.shield(self._connecting)

    def _connect_finished(self, task: asyncio.Task) -> None:
        self._connecting = None
        if not task.cancelled():
            task.exception()

    async def _connect(self) -> Any:
        headers = await self._request_headers()
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        shutdown = asyncio.Event()
        runner = asyncio.create_task(self._run_session(headers, ready, shutdown))

        try:
            session = await asyncio.wait_for(asyncio.shield(ready), self.connect_timeout)
        except asyncio.TimeoutError as e:
            ready.cancel()
            runner.cancel()
            raise ProviderUnreachable(
                f"Timed out connecting to {self.config.name} after {self.connect_timeout}s",
                provider_id=self.provider_id
            ) from e
        except BaseException:
            ready.cancel()
            runner.cancel()
            raise

        self._session = session
        self._runner = runner
        self._shutdown = shutdown
        logger.info("Managed provider connected", provider=self.provider_id)
        return session

    async def _run_session(
        self,
        headers: dict[str, str],
        ready: asyncio.Future,
        shutdown: asyncio.Event
    ) -> None:
        """Own the session for its whole lifetime, inside a single task."""
        try:
            async with self._session_factory(self.config.endpoint, headers) as session:
                if not ready.done():
                    ready.set_result(session)
                await shutdown.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning(
                    "Managed provider session ended",
                    provider=self.provider_id,
                    error=str(e) or e.__class__.__name__
                )
        finally:
            if not ready.done():
                ready.set_exception(ProviderUnreachable(
                    f"Session with {self.config.name} ended before it was ready",
                    provider_id=self.provider_id
                ))
            if self._runner is asyncio.current_task():
                self._session = None
                self._runner = None
                self._shutdown = None

    async def _disconnect(self) -> None:
        runner, shutdown = self._runner, self._shutdown
        self._session = None
        self._runner = None
        self._shutdown = None

        if shutdown is not None:
            shutdown.set()
        if runner is not None:
            _, pending = await asyncio.wait({runner}, timeout=5)
            for task in pending:
                task.cancel()

    async def _with_session(self, operation: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run an operation, reconnecting once if the connection was closed."""
        session = await self._ensure_session()
        try:
            return await operation(session)
        except Exception as e:
            if not is_connection_closed(e):
                raise
            logger.warning(
                "Managed connection closed, reconnecting",
                provider=self.provider_id,
                error=str(e) or e.__class__.__name__
            )
            await self._disconnect()
            session = await self._ensure_session()
            return await operation(session)

    async def _fetch_tools(self) -> list[Tool]:
        async def list_all(session: Any) -> list[Any]:
            collected: list[Any] = []
            cursor = None
            while True:
                if cursor:
                    page = await asyncio.wait_for(session.list_tools(cursor=cursor), self.call_timeout)
                else:
                    page = await asyncio.wait_for(session.list_tools(), self.call_timeout)
                collected.extend(page.tools)
                cursor = getattr(page, "nextCursor", None)
                if not cursor:
                    return collected

        raw_tools = await self._with_session(list_all)
        return [_convert_tool(raw) for raw in raw_tools]

    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        try:
            result = await self._with_session(
                lambda session: asyncio.wait_for(
                    session.call_tool(name, arguments), self.call_timeout
                )
            )
        except asyncio.TimeoutError:
            logger.error(
                "Managed tool call timed out",
                provider=self.provider_id,
                tool=name,
                timeout=self.call_timeout
            )
            return CallToolResult.error(
                f"Tool {name} timed out after {self.call_timeout}s",
                ErrorCode.EXECUTION_FAILED.value
            )

        is_error = bool(getattr(result, "isError", False))
        return CallToolResult(
            content=[ContentBlock(text=content_text(block)) for block in result.content],
            is_error=is_error,
            error_code=ErrorCode.EXECUTION_FAILED.value if is_error else None,
        )

    async def close(self) -> None:
        """Shut the session down."""
        await self._disconnect()
        logger.debug("Managed provider closed", provider=self.provider_id)
