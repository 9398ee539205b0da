"""Shared utilities and base classes for the Tool Gateway."""

from shared.models import (
    AuthMode,
    CallToolResult,
    ContentBlock,
    Dialect,
    OAuthStatus,
    ProviderConfig,
    TokenStatus,
    Tool,
    ToolAnnotations,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AuthMode",
    "CallToolResult",
    "ContentBlock",
    "Dialect",
    "OAuthStatus",
    "ProviderConfig",
    "TokenStatus",
    "Tool",
    "ToolAnnotations",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
