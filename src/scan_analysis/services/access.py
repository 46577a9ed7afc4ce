"""
Role checks for administrative operations.
"""

from typing import Any, Dict, Optional

from ..utils.error_handler import AuthorizationError

ADMIN_ROLE = "administrator"


def is_administrator(caller: Optional[Dict[str, Any]]) -> bool:
    return bool(caller) and caller.get("role") == ADMIN_ROLE


def require_administrator(caller: Optional[Dict[str, Any]], action: str) -> None:
    """Raise AuthorizationError unless ``caller`` holds the administrator role."""
    if not is_administrator(caller):
        username = (caller or {}).get("username", "anonymous")
        raise AuthorizationError(f"User {username} is not allowed to {action}")
