"""Tool Gateway: unified catalog, role policy, routing and HTTP surface."""

from gateway.aggregator import ToolAggregator
from gateway.config_store import ProviderConfigStore
from gateway.policy import Role, filter_catalog, is_authorized, require_authorized

__all__ = [
    "ProviderConfigStore",
    "Role",
    "ToolAggregator",
    "filter_catalog",
    "is_authorized",
    "require_authorized",
]
