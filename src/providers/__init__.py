"""Provider adapters: one per wire dialect a tool source can speak."""

from providers.base import CredentialSource, HTTPProviderAdapter, ProviderAdapter
from providers.factory import create_adapter
from providers.managed import ManagedConnectionAdapter
from providers.openapi import OpenAPIAdapter
from providers.rpc import RPCAdapter

__all__ = [
    "CredentialSource",
    "HTTPProviderAdapter",
    "ManagedConnectionAdapter",
    "OpenAPIAdapter",
    "ProviderAdapter",
    "RPCAdapter",
    "create_adapter",
]
