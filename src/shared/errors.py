"""Error taxonomy for the Tool Gateway.

Provider-level errors are converted to error results at the aggregator
boundary; configuration and OAuth flow errors are raised to the caller.
"""

from typing import Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, provider_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id


class ConfigurationIncomplete(GatewayError):
    """Required configuration is missing. Raised before any side effect."""
    code = "CONFIGURATION_INCOMPLETE"


class ProviderUnreachable(GatewayError):
    """A provider could not be reached or returned an unusable response."""
    code = "PROVIDER_UNREACHABLE"


class AuthorizationDenied(GatewayError):
    """The tool exists but the caller's role may not use it."""
    code = "AUTHORIZATION_DENIED"


class ToolNotFound(GatewayError):
    """The tool name is not in the routing table."""
    code = "TOOL_NOT_FOUND"


class ExecutionFailed(GatewayError):
    """The owning adapter reported a failure."""
    code = "EXECUTION_FAILED"


class AuthorizationFlowError(GatewayError):
    """The delegated authorization flow failed."""
    code = "AUTHORIZATION_ERROR"


class AuthorizationFlowTimeout(AuthorizationFlowError):
    """No completion or error signal arrived before the deadline."""
    code = "AUTHORIZATION_TIMEOUT"


class AuthorizationFlowCancelled(AuthorizationFlowError):
    """The user closed the consent channel or the caller went away."""
    code = "AUTHORIZATION_CANCELLED"


class AuthorizationInProgress(AuthorizationFlowError):
    """Another authorize attempt for the same provider is pending."""
    code = "AUTHORIZATION_IN_PROGRESS"
