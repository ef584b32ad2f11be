# backend/scopegate/repositories/permission_grant_repository.py
"""
Permission grant repository.

Pure storage for ResourcePermission rows keyed by (subject_id, resource,
action). No scope or rate-limit logic lives here.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.permission_grant import ResourcePermission
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PermissionGrantRepository(BaseRepository[ResourcePermission]):
    """
    Repository for resource permission grants.

    Note: Does NOT commit - callers control the transaction.
    """

    def __init__(self, db: Session):
        super().__init__(db, ResourcePermission)

    def get_by_key(self, subject_id: str, resource: str, action: str) -> Optional[ResourcePermission]:
        """Grant for the exact (subject_id, resource, action) key, expired or not."""
        try:
            stmt = select(ResourcePermission).where(
                ResourcePermission.subject_id == subject_id,
                ResourcePermission.resource == resource,
                ResourcePermission.action == action,
            )
            return self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error getting grant {subject_id}:{resource}:{action}: {str(e)}"
            )
            raise RepositoryException(f"Failed to retrieve grant: {str(e)}") from e

    def upsert(
        self,
        subject_id: str,
        resource: str,
        action: str,
        *,
        scope: str,
        rate_limit_max_actions: Optional[int],
        rate_limit_window_minutes: Optional[int],
        time_restriction: Optional[Dict[str, Any]],
        filters: Optional[Dict[str, Any]],
        granted_by: str,
        expires_at: Optional[datetime],
    ) -> ResourcePermission:
        """
        Insert or fully replace the grant for a key.

        Every condition column is overwritten; nothing from the previous
        grant is merged into the new one.
        """
        values: Dict[str, Any] = {
            "scope": scope,
            "rate_limit_max_actions": rate_limit_max_actions,
            "rate_limit_window_minutes": rate_limit_window_minutes,
            "time_restriction": time_restriction,
            "filters": filters,
            "granted_by": granted_by,
            "expires_at": expires_at,
        }
        existing = self.get_by_key(subject_id, resource, action)
        if existing is None:
            return self.create(subject_id=subject_id, resource=resource, action=action, **values)

        try:
            for column, value in values.items():
                setattr(existing, column, value)
            self.db.flush()
            return existing
        except SQLAlchemyError as e:
            self.logger.error(f"Error replacing grant {existing.id}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to replace grant: {str(e)}") from e

    def delete_by_key(self, subject_id: str, resource: str, action: str) -> bool:
        """Delete the grant for a key; False when there was none."""
        try:
            stmt = delete(ResourcePermission).where(
                ResourcePermission.subject_id == subject_id,
                ResourcePermission.resource == resource,
                ResourcePermission.action == action,
            )
            result = self.db.execute(stmt)
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting grant {subject_id}:{resource}:{action}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to delete grant: {str(e)}") from e

    def list_for_subject(self, subject_id: str) -> List[ResourcePermission]:
        try:
            stmt = (
                select(ResourcePermission)
                .where(ResourcePermission.subject_id == subject_id)
                .order_by(ResourcePermission.created_at.desc(), ResourcePermission.id.desc())
            )
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing grants for subject {subject_id}: {str(e)}")
            raise RepositoryException(f"Failed to list grants: {str(e)}") from e

    def list_for_resource(self, resource: str) -> List[ResourcePermission]:
        try:
            stmt = (
                select(ResourcePermission)
                .where(ResourcePermission.resource == resource)
                .order_by(ResourcePermission.created_at.desc(), ResourcePermission.id.desc())
            )
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing grants for resource {resource}: {str(e)}")
            raise RepositoryException(f"Failed to list grants: {str(e)}") from e
