"""Tool Gateway - FastAPI Application.

Exposes the unified, role-filtered tool catalog, routes tool calls to the
owning provider, and drives delegated authorization for providers that
need it. No LLM or UI logic lives here.
"""

import html
import json
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.errors import (
    AuthorizationDenied,
    AuthorizationFlowCancelled,
    AuthorizationFlowError,
    AuthorizationFlowTimeout,
    AuthorizationInProgress,
    ConfigurationIncomplete,
    GatewayError,
)
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import CallToolResult, ErrorCode, OAuthProviderConfig, ProviderConfig
from providers.managed import ManagedConnectionAdapter
from gateway.aggregator import TOOL_NOT_AVAILABLE, ToolAggregator
from gateway.auth import AuthConfig, AuthMiddleware, Caller, security
from gateway.config_store import ProviderConfigStore
from gateway.policy import is_privileged, require_authorized
from oauth.backend import OAuthBackend
from oauth.custody import HTTPTokenCustodian
from oauth.flow import OAuthFlowManager
from oauth.interaction import InteractionRegistry
from oauth.models import OAuthMetadata

logger = get_logger(__name__)

VERSION = "0.1.0"

ERROR_STATUS: list[tuple[type[GatewayError], int]] = [
    (ConfigurationIncomplete, status.HTTP_400_BAD_REQUEST),
    (AuthorizationInProgress, status.HTTP_409_CONFLICT),
    (AuthorizationFlowTimeout, status.HTTP_408_REQUEST_TIMEOUT),
    (AuthorizationFlowCancelled, 499),
    (AuthorizationDenied, status.HTTP_403_FORBIDDEN),
    (AuthorizationFlowError, status.HTTP_400_BAD_REQUEST),
]


# Request/Response Models
class ToolCallRequest(BaseModel):
    """Request to execute a tool."""
    name: str = Field(..., description="Tool name from the catalog")
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResponse(BaseModel):
    """Result of a tool call."""
    content: list[dict[str, Any]]
    isError: bool = False
    errorCode: Optional[str] = None


class ToolListResponse(BaseModel):
    """Tools available to the caller."""
    tools: list[dict[str, Any]]
    count: int


class RefreshResponse(BaseModel):
    tool_count: int
    warnings: list[str]
    errors: dict[str, str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    providers: dict[str, Any]
    tool_count: int


class DiscoverRequest(BaseModel):
    endpoint: Optional[str] = None


class RegisterRequest(BaseModel):
    metadata: Optional[OAuthMetadata] = None
    redirect_uri: Optional[str] = None
    scopes: Optional[list[str]] = None
    client_name: Optional[str] = None


class AuthorizeRequest(BaseModel):
    config: Optional[OAuthProviderConfig] = None


def build_components(settings: Settings) -> dict[str, Any]:
    """Wire the gateway components from settings."""
    store = ProviderConfigStore.from_yaml(settings.gateway.providers_path)
    interactions = InteractionRegistry()

    if settings.oauth.custody_url:
        custodian = HTTPTokenCustodian(
            settings.oauth.custody_url,
            token=settings.oauth.custody_token,
            timeout=settings.oauth.http_timeout_seconds
        )
        backend = None
        credentials = custodian
    else:
        backend = OAuthBackend(settings.oauth)
        custodian = backend
        credentials = backend

    managed = None
    if settings.managed.enabled:
        managed = ManagedConnectionAdapter.from_settings(settings.managed)

    aggregator = ToolAggregator(
        managed=managed,
        store=store,
        credentials=credentials,
        refresh_timeout=settings.gateway.refresh_timeout_seconds
    )
    oauth_flow = OAuthFlowManager(custodian, interactions, settings.oauth)

    known = {config.id for config in store.list()}

    def forget_removed(configs: list[ProviderConfig]) -> None:
        current = {config.id for config in configs}
        for provider_id in known - current:
            oauth_flow.forget(provider_id)
        known.clear()
        known.update(current)

    store.subscribe(forget_removed)

    return {
        "store": store,
        "aggregator": aggregator,
        "oauth_flow": oauth_flow,
        "oauth_backend": backend,
        "interactions": interactions,
        "custodian": custodian,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, json_output=settings.environment == "production")

    owned: dict[str, Any] = {}
    if app.state.aggregator is None:
        owned = build_components(settings)
        for key, value in owned.items():
            setattr(app.state, key, value)

    logger.info("Starting Tool Gateway", version=VERSION)
    yield

    logger.info("Shutting down Tool Gateway")
    if owned:
        await owned["aggregator"].close()
        await owned["custodian"].close()


router = APIRouter()


async def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Caller:
    """Dependency resolving the authenticated caller."""
    caller = request.app.state.auth.authenticate(credentials)
    clear_context()
    bind_context(user=caller.user_id, role=caller.role)
    return caller


async def require_privileged(caller: Caller = Depends(get_caller)) -> Caller:
    """Dependency restricting an endpoint to privileged roles."""
    if not is_privileged(caller.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Privileged role required"
        )
    return caller


def _component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized"
        )
    return component


def _provider_config(request: Request, provider_id: str) -> Optional[ProviderConfig]:
    store: Optional[ProviderConfigStore] = getattr(request.app.state, "store", None)
    return store.get(provider_id) if store is not None else None


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(request: Request):
    """Health of every provider as seen by the last refresh."""
    health = _component(request, "aggregator").get_health()
    return HealthResponse(
        status=health["status"],
        version=VERSION,
        providers=health["providers"],
        tool_count=health["tool_count"],
    )


@router.get("/tools", response_model=ToolListResponse, tags=["Tools"])
async def list_tools(request: Request, caller: Caller = Depends(get_caller)):
    """Tools the caller's role may use, in the caller-facing shape."""
    tools = await _component(request, "aggregator").list_tools_wire(caller.role)
    return ToolListResponse(tools=tools, count=len(tools))


@router.post("/tools/call", response_model=ToolCallResponse, tags=["Tools"])
async def call_tool(
    body: ToolCallRequest,
    request: Request,
    caller: Caller = Depends(get_caller)
):
    """
    Execute a tool.

    A tool hidden from the caller's role is reported exactly like a tool
    that does not exist.
    """
    aggregator: ToolAggregator = _component(request, "aggregator")
    await aggregator.list_tools()

    tool = aggregator.get_tool(body.name)
    result: Optional[CallToolResult] = None
    if tool is not None:
        try:
            require_authorized(caller.role, tool)
        except AuthorizationDenied:
            logger.warning("Tool call denied", tool=body.name, user=caller.user_id, role=caller.role)
            result = CallToolResult.error(
                TOOL_NOT_AVAILABLE.format(name=body.name),
                ErrorCode.TOOL_NOT_FOUND.value
            )

    if result is None:
        result = await aggregator.call_tool(body.name, body.arguments)

    wire = result.to_wire()
    return ToolCallResponse(
        content=wire["content"],
        isError=wire["isError"],
        errorCode=result.error_code,
    )


@router.post("/tools/refresh", response_model=RefreshResponse, tags=["Tools"])
async def refresh_tools(request: Request, caller: Caller = Depends(require_privileged)):
    """Drop every cache and rebuild the catalog."""
    aggregator: ToolAggregator = _component(request, "aggregator")
    aggregator.clear_cache()
    tools = await aggregator.refresh()
    return RefreshResponse(
        tool_count=len(tools),
        warnings=aggregator.warnings,
        errors=aggregator.last_errors,
    )


@router.post("/oauth/{provider_id}/discover", tags=["OAuth"])
async def oauth_discover(
    provider_id: str,
    request: Request,
    body: Optional[DiscoverRequest] = None,
    caller: Caller = Depends(require_privileged)
):
    """Discover the authorization server protecting a provider."""
    endpoint = body.endpoint if body is not None else None
    if endpoint is None:
        config = _provider_config(request, provider_id)
        endpoint = config.endpoint if config is not None else None
    if endpoint is None:
        raise ConfigurationIncomplete("Provider endpoint is required", provider_id)

    flow: OAuthFlowManager = _component(request, "oauth_flow")
    metadata = await flow.discover(provider_id, endpoint)
    return metadata.model_dump(exclude_none=True)


@router.post("/oauth/{provider_id}/register", tags=["OAuth"])
async def oauth_register(
    provider_id: str,
    request: Request,
    body: Optional[RegisterRequest] = None,
    caller: Caller = Depends(require_privileged)
):
    """Register a client dynamically, discovering metadata first if needed."""
    body = body or RegisterRequest()
    flow: OAuthFlowManager = _component(request, "oauth_flow")

    config = _provider_config(request, provider_id)
    oauth_config = config.oauth if config is not None else None
    flow.ensure_registration_selected(provider_id, oauth_config)

    metadata = body.metadata
    if metadata is None:
        if config is None:
            raise ConfigurationIncomplete("Authorization server metadata is required", provider_id)
        metadata = await flow.discover(provider_id, config.endpoint)

    client_id = await flow.register(
        provider_id,
        metadata,
        redirect_uri=body.redirect_uri,
        scopes=body.scopes,
        client_name=body.client_name,
        config=oauth_config
    )
    return {"provider_id": provider_id, "client_id": client_id}


@router.post("/oauth/{provider_id}/authorize", tags=["OAuth"])
async def oauth_authorize(
    provider_id: str,
    request: Request,
    body: Optional[AuthorizeRequest] = None,
    caller: Caller = Depends(require_privileged)
):
    """
    Run the interactive authorization step.

    Returns once the user completes consent, or fails with 400 (missing
    configuration or provider error), 408 (timeout), 409 (already in
    progress) or 499 (user closed the consent window).
    """
    oauth_config = body.config if body is not None else None
    if oauth_config is None:
        config = _provider_config(request, provider_id)
        oauth_config = config.oauth if config is not None else None

    flow: OAuthFlowManager = _component(request, "oauth_flow")
    result = await flow.authorize(provider_id, oauth_config)

    aggregator: Optional[ToolAggregator] = getattr(request.app.state, "aggregator", None)
    if aggregator is not None:
        aggregator.clear_cache()

    return result.model_dump(mode="json")


@router.get("/oauth/{provider_id}/pending", tags=["OAuth"])
async def oauth_pending(
    provider_id: str,
    request: Request,
    caller: Caller = Depends(require_privileged)
):
    """Authorization URL of the attempt currently waiting for consent."""
    interactions: InteractionRegistry = _component(request, "interactions")
    url = interactions.pending_url(provider_id)
    if url is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending authorization for '{provider_id}'"
        )
    return {"provider_id": provider_id, "authorization_url": url}


@router.post("/oauth/{provider_id}/cancel", tags=["OAuth"])
async def oauth_cancel(
    provider_id: str,
    request: Request,
    caller: Caller = Depends(require_privileged)
):
    """Report that the user closed the consent window."""
    interactions: InteractionRegistry = _component(request, "interactions")
    if not interactions.abandon(provider_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending authorization for '{provider_id}'"
        )
    return {"provider_id": provider_id, "cancelled": True}


@router.get("/oauth/{provider_id}/status", tags=["OAuth"])
async def oauth_status(
    provider_id: str,
    request: Request,
    caller: Caller = Depends(get_caller)
):
    """Authorization status. Never includes token material."""
    flow: OAuthFlowManager = _component(request, "oauth_flow")
    return flow.status(provider_id).model_dump(mode="json")


@router.post("/oauth/{provider_id}/revoke", tags=["OAuth"])
async def oauth_revoke(
    provider_id: str,
    request: Request,
    caller: Caller = Depends(require_privileged)
):
    """Revoke a provider's authorization."""
    flow: OAuthFlowManager = _component(request, "oauth_flow")
    result = await flow.revoke(provider_id)

    aggregator: Optional[ToolAggregator] = getattr(request.app.state, "aggregator", None)
    if aggregator is not None:
        aggregator.clear_cache()

    return result.model_dump(mode="json")


def _callback_page(message_type: str, provider_id: Optional[str], text: str, status_code: int) -> HTMLResponse:
    payload = json.dumps({"type": message_type, "provider": provider_id}).replace("<", "\\u003c")
    content = (
        "<!DOCTYPE html><html><body>"
        f"<p>{html.escape(text)}</p>"
        "<script>"
        f"if (window.opener) {{ window.opener.postMessage({payload}, '*'); window.close(); }}"
        "</script>"
        "</body></html>"
    )
    return HTMLResponse(content=content, status_code=status_code)


@router.get("/oauth/callback", tags=["OAuth"], response_class=HTMLResponse)
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None
):
    """
    Redirect target of the authorization server.

    Exchanges the code and signals the waiting authorize attempt.
    """
    backend: OAuthBackend = _component(request, "oauth_backend")
    interactions: InteractionRegistry = _component(request, "interactions")

    if error:
        provider_id = backend.discard_pending(state) if state else None
        message = f"{error}: {error_description}" if error_description else error
        logger.warning("Authorization server returned an error", provider=provider_id, error=message)
        if provider_id is not None:
            interactions.fail(provider_id, message)
        return _callback_page("oauth-error", provider_id, f"Authorization failed: {message}", 400)

    if not code or not state:
        return _callback_page("oauth-error", None, "Missing code or state parameter", 400)

    provider_id = backend.provider_for_state(state)
    if provider_id is not None and provider_id not in interactions:
        backend.discard_pending(state)
        logger.warning("Callback for an authorization that is no longer waiting", provider=provider_id)
        return _callback_page("oauth-error", provider_id, "Authorization is no longer in progress", 400)

    try:
        result = await backend.exchange_code(code, state)
    except AuthorizationFlowError as e:
        if provider_id is not None:
            interactions.fail(provider_id, e.message)
        return _callback_page("oauth-error", provider_id, f"Authorization failed: {e.message}", 400)

    if not interactions.complete(result.provider_id):
        await backend.revoke(result.provider_id)
        logger.warning("Authorization ended during code exchange", provider=result.provider_id)
        return _callback_page(
            "oauth-error", result.provider_id, "Authorization is no longer in progress", 400
        )

    return _callback_page(
        "oauth-complete",
        result.provider_id,
        "Authorization complete. You can close this window.",
        200
    )


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "provider_id": exc.provider_id}
    )


def create_app(
    aggregator: Optional[ToolAggregator] = None,
    oauth_flow: Optional[OAuthFlowManager] = None,
    oauth_backend: Optional[OAuthBackend] = None,
    settings: Optional[Settings] = None,
    store: Optional[ProviderConfigStore] = None,
    interactions: Optional[InteractionRegistry] = None
) -> FastAPI:
    """
    Create the gateway application.

    Components left as None are built from settings at startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Tool Gateway",
        description="Unified tool catalog, routing and delegated authorization",
        version=VERSION,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.aggregator = aggregator
    app.state.oauth_flow = oauth_flow
    app.state.oauth_backend = oauth_backend
    app.state.store = store
    app.state.interactions = interactions
    app.state.auth = AuthMiddleware(AuthConfig(
        secret_key=settings.gateway.secret_key,
        require_auth=settings.gateway.require_auth,
        default_role=settings.gateway.default_role,
    ))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    """Run the Tool Gateway."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "gateway.api:app",
        host=settings.gateway.host,
        port=settings.gateway.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
