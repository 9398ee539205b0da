"""Role-based authorization policy for tools.

Privileged roles see and may invoke every tool. Every other role,
including unknown or missing roles, is limited to tools whose provider
declares them read-only.
"""

from enum import Enum
from typing import Iterable, Optional

from shared.errors import AuthorizationDenied
from shared.logging import get_logger
from shared.models import Tool

logger = get_logger(__name__)


class Role(str, Enum):
    """Caller roles known to the gateway."""
    ADMIN = "Admin"
    EDITOR = "Editor"
    VIEWER = "Viewer"


PRIVILEGED_ROLES = frozenset({Role.ADMIN.value, Role.EDITOR.value})


def is_privileged(role: Optional[str]) -> bool:
    """Whether the role belongs to the privileged tier."""
    if isinstance(role, Role):
        role = role.value
    return role in PRIVILEGED_ROLES


def is_read_only(tool: Tool) -> bool:
    """Only an explicit readOnlyHint of true counts; absent hints do not."""
    return tool.annotations.read_only_hint is True


def is_authorized(role: Optional[str], tool: Tool) -> bool:
    """
    Check whether a role may see and invoke a tool.

    Args:
        role: Caller role (None or unknown roles get the restricted tier)
        tool: Tool to check

    Returns:
        True if the tool is allowed
    """
    if is_privileged(role) or is_read_only(tool):
        return True

    logger.debug("Tool denied by role", tool=tool.name, role=role)
    return False


def filter_catalog(tools: Iterable[Tool], role: Optional[str]) -> list[Tool]:
    """
    Restrict a catalog to the tools a role may use.

    Order is preserved and entries are returned unmodified.
    """
    tools = list(tools)
    if is_privileged(role):
        return tools
    return [tool for tool in tools if is_authorized(role, tool)]


def require_authorized(role: Optional[str], tool: Tool) -> None:
    """
    Raise if the role may not use the tool.

    Raises:
        AuthorizationDenied: If the tool is not allowed for the role
    """
    if not is_authorized(role, tool):
        raise AuthorizationDenied(f"Role '{role}' may not use tool '{tool.name}'")
