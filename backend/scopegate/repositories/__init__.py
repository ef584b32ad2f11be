from .base_repository import BaseRepository
from .permission_grant_repository import PermissionGrantRepository

__all__ = ["BaseRepository", "PermissionGrantRepository"]
