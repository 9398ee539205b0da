"""Adapter factory: one adapter class per provider dialect."""

from typing import Optional

import httpx

from shared.models import Dialect, ProviderConfig
from providers.base import CredentialSource, ProviderAdapter
from providers.managed import ManagedConnectionAdapter
from providers.openapi import OpenAPIAdapter
from providers.rpc import RPCAdapter


def create_adapter(
    config: ProviderConfig,
    credentials: Optional[CredentialSource] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> ProviderAdapter:
    """
    Create the adapter for a provider configuration.

    Args:
        config: Provider configuration
        credentials: Source of OAuth bearer credentials
        http_client: Shared HTTP client for stateless dialects

    Returns:
        Adapter serving the provider

    Raises:
        ValueError: If the dialect is not supported
    """
    if config.dialect == Dialect.MANAGED:
        return ManagedConnectionAdapter(config, credentials)
    if config.dialect == Dialect.RPC:
        return RPCAdapter(config, credentials, http_client=http_client)
    if config.dialect == Dialect.OPENAPI:
        return OpenAPIAdapter(config, credentials, http_client=http_client)

    raise ValueError(f"Unsupported provider dialect: {config.dialect}")
