from .permission_grant import ResourcePermission

__all__ = ["ResourcePermission"]
