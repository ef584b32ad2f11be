from .grant_cache import GrantCache
from .grant_store import GrantInput, PermissionGrantStore
from .permission_service import PermissionService, rate_limit_action

__all__ = [
    "GrantCache",
    "GrantInput",
    "PermissionGrantStore",
    "PermissionService",
    "rate_limit_action",
]
