"""Generic-RPC provider adapter.

Stateless JSON-RPC 2.0 over plain HTTP POST: tools/list is sent to
'{endpoint}/mcp/list-tools' and tools/call to '{endpoint}/mcp/call-tool'.
"""

import itertools
import json
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import ProviderUnreachable
from shared.logging import get_logger
from shared.models import CallToolResult, Dialect, ErrorCode, Tool
from shared.schema import normalize_input_schema
from providers.base import HTTPProviderAdapter

logger = get_logger(__name__)

_request_ids = itertools.count(1)


class RPCAdapter(HTTPProviderAdapter):
    """Adapter for providers exposing tools over stateless JSON-RPC calls."""

    dialect = Dialect.RPC

    def _url(self, action: str) -> str:
        return f"{self.config.endpoint.rstrip('/')}/mcp/{action}"

    @staticmethod
    def _envelope(method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": params,
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _post(self, action: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        headers = {"Content-Type": "application/json", **await self._request_headers()}
        return await client.post(self._url(action), json=payload, headers=headers)

    async def _fetch_tools(self) -> list[Tool]:
        try:
            response = await self._post("list-tools", self._envelope("tools/list", {}))
        except httpx.TransportError as e:
            raise ProviderUnreachable(
                f"Cannot connect to provider: {e}", provider_id=self.provider_id
            ) from e

        if response.status_code != 200:
            raise ProviderUnreachable(
                f"list-tools returned status {response.status_code}: {response.text}",
                provider_id=self.provider_id
            )

        data = response.json()
        if isinstance(data, dict) and "error" in data and data["error"]:
            raise ProviderUnreachable(
                f"list-tools failed: {_rpc_error_message(data['error'])}",
                provider_id=self.provider_id
            )

        payload = data.get("result", data) if isinstance(data, dict) else {}
        raw_tools = payload.get("tools") or []

        tools = []
        for raw in raw_tools:
            tool = Tool.model_validate(raw)
            tools.append(tool.model_copy(
                update={"input_schema": normalize_input_schema(tool.input_schema)}
            ))
        return tools

    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        try:
            response = await self._post(
                "call-tool",
                self._envelope("tools/call", {"name": name, "arguments": arguments})
            )
        except httpx.TransportError as e:
            logger.error(
                "Provider connection failed",
                provider=self.provider_id,
                tool=name,
                error=str(e)
            )
            return CallToolResult.error(
                f"Cannot connect to {self.config.name}: {e}",
                ErrorCode.PROVIDER_UNREACHABLE.value
            )

        if not response.is_success:
            return CallToolResult.error(
                f"Error calling tool {name}: HTTP {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError:
            return CallToolResult.error(f"Invalid response from {self.config.name}: {response.text}")

        if isinstance(data, dict) and data.get("error"):
            return CallToolResult.error(
                f"Error calling tool {name}: {_rpc_error_message(data['error'])}"
            )

        payload = data.get("result", data) if isinstance(data, dict) else data
        result = CallToolResult.model_validate(payload)
        if result.is_error and result.error_code is None:
            result.error_code = ErrorCode.EXECUTION_FAILED.value
        return result


def _rpc_error_message(error: Any) -> str:
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message", "Unknown error")
        return f"{message} (code {code})" if code is not None else message
    return str(error)
