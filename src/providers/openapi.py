"""OpenAPI provider adapter.

Derives a synthetic tool catalog from an OpenAPI description: every HTTP
operation becomes one tool, and tool calls are executed as parameterized
HTTP requests against the described API.
"""

import json
import re
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import ProviderUnreachable
from shared.logging import get_logger
from shared.models import CallToolResult, Dialect, ErrorCode, Tool, ToolAnnotations
from shared.schema import coerce_integers, inline_refs, resolve_ref, validate_schema
from providers.base import HTTPProviderAdapter

logger = get_logger(__name__)

HTTP_METHODS = ("get", "post", "put", "delete", "patch", "head", "options")
READ_ONLY_METHODS = {"GET", "HEAD"}
BODY_METHODS = {"POST", "PUT", "PATCH"}
DESCRIPTION_SUFFIX = "/openapi.json"


class OperationSpec(BaseModel):
    """An OpenAPI operation and the tool derived from it."""
    tool: Tool
    method: str
    path: str
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    has_body: bool = False
    body_properties: list[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.tool.name


def synthesize_tool_name(method: str, path: str) -> str:
    """
    Build a tool name for an operation without an operationId.

    Static segments contribute their text and path parameters their
    placeholder name: GET /users/{id} becomes get_users_id.
    """
    segments = re.sub(r"[{}/]", "_", path)
    segments = re.sub(r"_+", "_", segments).strip("_")
    return f"{method.lower()}_{segments}" if segments else method.lower()


def _resolve(document: dict[str, Any], node: Any) -> Any:
    if isinstance(node, dict) and isinstance(node.get("$ref"), str):
        resolved = resolve_ref(document, node["$ref"])
        if resolved is None:
            logger.warning("Failed to resolve schema reference", ref=node["$ref"])
            return node
        return resolved
    return node


def _merge_parameters(
    document: dict[str, Any],
    path_level: list[Any],
    operation_level: list[Any]
) -> list[dict[str, Any]]:
    """Operation parameters override path-item parameters with the same name and location."""
    merged: dict[tuple[str, str], dict[str, Any]] = {}
    for raw in [*path_level, *operation_level]:
        param = _resolve(document, raw)
        if not isinstance(param, dict) or "name" not in param:
            continue
        merged[(param["name"], param.get("in", "query"))] = param
    return list(merged.values())


def build_input_schema(
    document: dict[str, Any],
    parameters: list[dict[str, Any]],
    operation: dict[str, Any]
) -> tuple[dict[str, Any], bool, list[str]]:
    """
    Build a tool input schema from an operation's parameters and JSON body.

    Returns:
        Tuple of (schema, has_json_body, body_property_names)
    """
    properties: dict[str, Any] = {}
    required: list[str] = []

    for param in parameters:
        if param.get("in") not in ("path", "query", "header"):
            continue
        name = param["name"]
        raw_schema = param.get("schema")
        prop = inline_refs(document, raw_schema) if isinstance(raw_schema, dict) else {"type": "string"}
        if param.get("description"):
            prop.setdefault("description", param["description"])
        properties[name] = prop
        if param.get("required") or param.get("in") == "path":
            required.append(name)

    has_body = False
    body_properties: list[str] = []
    request_body = _resolve(document, operation.get("requestBody"))
    if isinstance(request_body, dict):
        content = request_body.get("content") or {}
        json_content = content.get("application/json")
        if isinstance(json_content, dict) and isinstance(json_content.get("schema"), dict):
            has_body = True
            body_schema = inline_refs(document, json_content["schema"])
            for key, value in (body_schema.get("properties") or {}).items():
                properties[key] = value
                body_properties.append(key)
            for key in body_schema.get("required") or []:
                if isinstance(key, str) and key not in required:
                    required.append(key)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required

    return schema, has_body, body_properties


def derive_operations(document: dict[str, Any]) -> dict[str, OperationSpec]:
    """
    Derive one tool per HTTP operation of an OpenAPI document.

    Args:
        document: Parsed OpenAPI description

    Returns:
        Mapping of tool name to operation, in document order

    Raises:
        ProviderUnreachable: If the document has no paths
    """
    paths = document.get("paths")
    if not isinstance(paths, dict):
        raise ProviderUnreachable("Invalid OpenAPI document: no paths found")

    operations: dict[str, OperationSpec] = {}

    for path, path_item in paths.items():
        if not isinstance(path_item, dict):
            continue

        for method, operation in path_item.items():
            if method.lower() not in HTTP_METHODS or not isinstance(operation, dict):
                continue

            name = operation.get("operationId") or synthesize_tool_name(method, path)
            if name in operations:
                logger.warning("Duplicate OpenAPI operation name", tool=name, path=path)
                continue

            description = (
                operation.get("description")
                or operation.get("summary")
                or f"{method.upper()} {path}"
            )
            parameters = _merge_parameters(
                document,
                path_item.get("parameters") or [],
                operation.get("parameters") or []
            )
            schema, has_body, body_properties = build_input_schema(
                document, parameters, operation
            )

            read_only = method.upper() in READ_ONLY_METHODS
            if isinstance(operation.get("x-read-only"), bool):
                read_only = operation["x-read-only"]

            operations[name] = OperationSpec(
                tool=Tool(
                    name=name,
                    description=description,
                    input_schema=schema,
                    annotations=ToolAnnotations(read_only_hint=read_only),
                ),
                method=method.upper(),
                path=path,
                parameters=parameters,
                has_body=has_body,
                body_properties=body_properties,
            )

    return operations


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _accepts_string(schema: Any) -> bool:
    declared = schema.get("type") if isinstance(schema, dict) else None
    if isinstance(declared, list):
        return "string" in declared
    return declared == "string"


def stringify_parameters(operation: OperationSpec, arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Render numbers and booleans as text for string-typed path, query and
    header parameters, which travel as text on the wire anyway.
    """
    properties = operation.tool.input_schema.get("properties") or {}
    rendered = dict(arguments)

    for param in operation.parameters:
        name = param["name"]
        value = arguments.get(name)
        if param.get("in") not in ("path", "query", "header") or isinstance(value, str):
            continue
        if not _is_scalar(value) or not _accepts_string(properties.get(name)):
            continue
        rendered[name] = str(value).lower() if isinstance(value, bool) else str(value)

    return rendered


class OpenAPIAdapter(HTTPProviderAdapter):
    """
    Adapter for HTTP APIs described by an OpenAPI document.

    The derived operation map is cached per instance; clear_cache() forces
    the description to be fetched and derived again.
    """

    dialect = Dialect.OPENAPI

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._document: Optional[dict[str, Any]] = None
        self._operations: Optional[dict[str, OperationSpec]] = None

    @property
    def description_url(self) -> str:
        endpoint = self.config.endpoint
        if endpoint.endswith(DESCRIPTION_SUFFIX):
            return endpoint
        return endpoint.rstrip("/") + DESCRIPTION_SUFFIX

    @property
    def base_url(self) -> str:
        """Base URL operation paths are appended to."""
        servers = (self._document or {}).get("servers") or []
        if servers and isinstance(servers[0], dict):
            server_url = str(servers[0].get("url", ""))
            if server_url.startswith(("http://", "https://")):
                return server_url.rstrip("/")

        endpoint = self.config.endpoint
        if endpoint.endswith(DESCRIPTION_SUFFIX):
            endpoint = endpoint[: -len(DESCRIPTION_SUFFIX)]
        return endpoint.rstrip("/")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _fetch_document(self) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get(
            self.description_url,
            headers={"Accept": "application/json", **await self._request_headers()}
        )

        if response.status_code != 200:
            raise ProviderUnreachable(
                f"Failed to fetch OpenAPI description: status {response.status_code}",
                provider_id=self.provider_id
            )

        try:
            document = response.json()
        except json.JSONDecodeError as e:
            raise ProviderUnreachable(
                f"Failed to decode OpenAPI description: {e}", provider_id=self.provider_id
            ) from e

        if not isinstance(document, dict):
            raise ProviderUnreachable(
                "Invalid OpenAPI description", provider_id=self.provider_id
            )
        return document

    async def _operation_map(self) -> dict[str, OperationSpec]:
        if self._operations is None:
            document = await self._fetch_document()
            operations = derive_operations(document)
            self._document = document
            self._operations = operations
            logger.info(
                "OpenAPI operations derived",
                provider=self.provider_id,
                operation_count=len(operations)
            )
        return self._operations

    async def _fetch_tools(self) -> list[Tool]:
        operations = await self._operation_map()
        return [op.tool for op in operations.values()]

    def clear_cache(self) -> None:
        super().clear_cache()
        self._document = None
        self._operations = None

    def build_request(
        self,
        client: httpx.AsyncClient,
        operation: OperationSpec,
        arguments: dict[str, Any],
        auth_headers: Optional[dict[str, str]] = None
    ) -> httpx.Request:
        """
        Translate tool arguments into an HTTP request.

        Path placeholders are substituted, header parameters become headers,
        JSON body properties form the body, and every remaining scalar
        argument is sent as a query parameter.

        Raises:
            ValueError: If a path placeholder has no value
        """
        path = operation.path
        query: dict[str, Any] = {}
        headers: dict[str, str] = {}
        consumed: set[str] = set()

        for param in operation.parameters:
            name = param["name"]
            if name not in arguments:
                continue
            value = arguments[name]
            location = param.get("in", "query")

            if location == "path":
                path = path.replace("{" + name + "}", quote(str(value), safe=""))
            elif location == "header":
                headers[name] = str(value)
            elif location == "query":
                query[name] = value
            else:
                continue
            consumed.add(name)

        unresolved = re.findall(r"{([^}]+)}", path)
        if unresolved:
            raise ValueError(f"Missing path parameter(s): {', '.join(unresolved)}")

        body: Optional[dict[str, Any]] = None
        if operation.has_body and operation.method in BODY_METHODS:
            body = {
                key: value
                for key, value in arguments.items()
                if key not in consumed
                and (not operation.body_properties or key in operation.body_properties)
            }
            consumed.update(body)

        for key, value in arguments.items():
            if key not in consumed and _is_scalar(value):
                query[key] = value

        headers.update(auth_headers or {})
        return client.build_request(
            operation.method,
            self.base_url + path,
            params=query or None,
            headers=headers,
            json=body,
        )

    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        operations = await self._operation_map()
        operation = operations.get(name)
        if operation is None:
            return CallToolResult.error(
                f"Tool {name} not found in OpenAPI specification",
                ErrorCode.TOOL_NOT_FOUND.value
            )

        schema = operation.tool.input_schema
        arguments = coerce_integers(stringify_parameters(operation, arguments), schema)
        is_valid, errors = validate_schema(arguments, schema)
        if not is_valid:
            return CallToolResult.error(
                f"Argument validation failed: {'; '.join(errors)}",
                ErrorCode.VALIDATION_ERROR.value
            )

        client = await self._get_client()
        try:
            request = self.build_request(
                client, operation, arguments, await self._request_headers()
            )
        except ValueError as e:
            return CallToolResult.error(str(e), ErrorCode.VALIDATION_ERROR.value)

        logger.debug(
            "Calling OpenAPI operation",
            provider=self.provider_id,
            tool=name,
            method=operation.method,
            url=str(request.url)
        )

        try:
            response = await client.send(request)
        except httpx.HTTPError as e:
            logger.error(
                "OpenAPI request failed",
                provider=self.provider_id,
                tool=name,
                error=str(e)
            )
            return CallToolResult.error(
                f"Error executing OpenAPI operation: {e}",
                ErrorCode.PROVIDER_UNREACHABLE.value
            )

        text = _response_text(response)
        if not response.is_success:
            return CallToolResult.error(f"API Error ({response.status_code}): {text}")

        return CallToolResult.text(text)


def _response_text(response: httpx.Response) -> str:
    """Serialize a response body: JSON pretty-printed, anything else as-is."""
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return json.dumps(response.json(), indent=2)
        except json.JSONDecodeError:
            pass
    return response.text
