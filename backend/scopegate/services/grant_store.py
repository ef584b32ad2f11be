# backend/scopegate/services/grant_store.py
"""
Permission grant store.

Async facade over PermissionGrantRepository. Each call opens its own session
in a worker thread, bounded by the configured grant store timeout, and hands
back frozen PermissionGrant values. Database failures surface as
StoreUnavailableException so an outage is never mistaken for a missing grant.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core import config as core_config
from ..core.enums import DataScope
from ..core.exceptions import (
    DomainException,
    RepositoryException,
    StoreUnavailableException,
    ValidationException,
)
from ..database import SessionLocal
from ..domain.authorization import (
    BulkGrantResult,
    PermissionCondition,
    PermissionGrant,
    RateLimitRule,
    TimeRestriction,
    ensure_utc,
    utcnow,
)
from ..models.permission_grant import ResourcePermission
from ..repositories.permission_grant_repository import PermissionGrantRepository
from .base import BaseService
from .grant_cache import GrantCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

GRANT_STORE = "grant store"


@dataclass(frozen=True)
class GrantInput:
    """One entry of a bulk grant."""

    subject_id: str
    resource: str
    action: str
    condition: PermissionCondition
    expires_at: Optional[datetime] = None


def to_domain(row: ResourcePermission) -> PermissionGrant:
    rate_limit = None
    if row.rate_limit_max_actions is not None and row.rate_limit_window_minutes is not None:
        rate_limit = RateLimitRule(
            max_actions=row.rate_limit_max_actions,
            window_minutes=row.rate_limit_window_minutes,
        )
    return PermissionGrant(
        id=row.id,
        subject_id=row.subject_id,
        resource=row.resource,
        action=row.action,
        condition=PermissionCondition(
            scope=DataScope(row.scope),
            rate_limit=rate_limit,
            time_restriction=TimeRestriction.from_dict(row.time_restriction),
            filters=dict(row.filters or {}),
        ),
        granted_by=row.granted_by,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
    )


class PermissionGrantStore(BaseService):
    """
    Durable grants keyed by (subject_id, resource, action).

    Re-granting a key replaces its whole condition; expired grants are
    treated as absent by every read.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        cache: Optional[GrantCache] = None,
        use_cache: Optional[bool] = None,
    ) -> None:
        super().__init__()
        self._session_factory = session_factory
        enabled = core_config.settings.grant_cache_enabled if use_cache is None else use_cache
        self.cache: Optional[GrantCache] = (cache or GrantCache()) if enabled else None

    async def _run(self, operation: str, work: Callable[[PermissionGrantRepository], T]) -> T:
        timeout = core_config.settings.grant_store_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._in_transaction, work), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"[GRANT-STORE] {operation} timed out after {timeout}s")
            raise StoreUnavailableException(GRANT_STORE, operation, cause=exc) from exc
        except (RepositoryException, SQLAlchemyError) as exc:
            logger.error(f"[GRANT-STORE] {operation} failed: {exc}")
            raise StoreUnavailableException(GRANT_STORE, operation, cause=exc) from exc

    def _in_transaction(self, work: Callable[[PermissionGrantRepository], T]) -> T:
        session = self._session_factory()
        try:
            repository = PermissionGrantRepository(session)
            with repository.transaction():
                return work(repository)
        finally:
            session.close()

    async def _changing_key(
        self,
        subject_id: str,
        resource: str,
        action: str,
        operation: str,
        work: Callable[[PermissionGrantRepository], T],
    ) -> T:
        """
        Apply a change to one grant key with the cache invalidated around it.

        The first invalidation voids fills already in flight; if it fails the
        change is not attempted. The second drops anything cached while the
        change was committing. A failure of either raises
        StoreUnavailableException.
        """
        if self.cache is None:
            return await self._run(operation, work)

        await self.cache.invalidate(subject_id, resource, action)
        result = await self._run(operation, work)
        try:
            await self.cache.invalidate(subject_id, resource, action)
        except StoreUnavailableException:
            logger.error(
                f"[GRANT-STORE] {operation} of {resource}:{action} for {subject_id} committed "
                f"but the cache was not invalidated; a stale entry may live "
                f"{self.cache.ttl_seconds}s"
            )
            raise
        return result

    @staticmethod
    def _require_key(subject_id: str, resource: str, action: str) -> None:
        missing = [
            name
            for name, value in (("subject_id", subject_id), ("resource", resource), ("action", action))
            if not value or not value.strip()
        ]
        if missing:
            raise ValidationException(
                f"Grant key is incomplete: {', '.join(missing)} required",
                code="INVALID_GRANT_KEY",
                details={"missing": missing},
            )

    @BaseService.measure_operation("find_grant")
    async def find_grant(
        self, subject_id: str, resource: str, action: str
    ) -> Optional[PermissionGrant]:
        """
        Current grant for the key.

        Returns:
            The grant, or None when absent or expired
        """
        generation: Optional[str] = None
        if self.cache is not None:
            cached = await self.cache.get(subject_id, resource, action)
            if cached is not None:
                return cached
            # Read before the store so a change landing in between voids the fill
            generation = await self.cache.generation(subject_id, resource, action)

        def _load(repository: PermissionGrantRepository) -> Optional[PermissionGrant]:
            row = repository.get_by_key(subject_id, resource, action)
            return to_domain(row) if row is not None else None

        grant = await self._run("find_grant", _load)
        if grant is None or grant.is_expired(utcnow()):
            return None
        if self.cache is not None and generation is not None:
            await self.cache.set(grant, generation)
        return grant

    @BaseService.measure_operation("grant")
    async def grant(
        self,
        subject_id: str,
        resource: str,
        action: str,
        condition: PermissionCondition,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> PermissionGrant:
        """Create the grant for the key, or replace its condition entirely."""
        self._require_key(subject_id, resource, action)
        rate_limit = condition.rate_limit

        def _upsert(repository: PermissionGrantRepository) -> PermissionGrant:
            row = repository.upsert(
                subject_id,
                resource,
                action,
                scope=condition.scope.value,
                rate_limit_max_actions=rate_limit.max_actions if rate_limit else None,
                rate_limit_window_minutes=rate_limit.window_minutes if rate_limit else None,
                time_restriction=(
                    condition.time_restriction.to_dict() if condition.time_restriction else None
                ),
                filters=dict(condition.filters) if condition.filters else None,
                granted_by=granted_by,
                expires_at=ensure_utc(expires_at),
            )
            return to_domain(row)

        stored = await self._changing_key(subject_id, resource, action, "grant", _upsert)
        logger.info(
            f"[GRANT-STORE] Granted {resource}:{action} ({condition.scope.value}) "
            f"to {subject_id} by {granted_by}"
        )
        return stored

    @BaseService.measure_operation("revoke")
    async def revoke(self, subject_id: str, resource: str, action: str) -> bool:
        """Delete the grant for the key; False when there was nothing to revoke."""
        removed = await self._changing_key(
            subject_id,
            resource,
            action,
            "revoke",
            lambda repository: repository.delete_by_key(subject_id, resource, action),
        )
        if removed:
            logger.info(f"[GRANT-STORE] Revoked {resource}:{action} from {subject_id}")
        return removed

    @BaseService.measure_operation("list_subject_grants")
    async def list_subject_grants(self, subject_id: str) -> List[PermissionGrant]:
        rows = await self._run(
            "list_subject_grants",
            lambda repository: [to_domain(row) for row in repository.list_for_subject(subject_id)],
        )
        now = utcnow()
        return [grant for grant in rows if not grant.is_expired(now)]

    @BaseService.measure_operation("list_grants_by_resource")
    async def list_grants_by_resource(self, resource: str) -> List[PermissionGrant]:
        rows = await self._run(
            "list_grants_by_resource",
            lambda repository: [to_domain(row) for row in repository.list_for_resource(resource)],
        )
        now = utcnow()
        return [grant for grant in rows if not grant.is_expired(now)]

    async def bulk_grant(self, inputs: Iterable[GrantInput], granted_by: str) -> BulkGrantResult:
        """
        Grant each input in its own transaction.

        A failing input is counted and reported; it does not stop the rest of
        the batch.
        """
        successful = 0
        errors: List[str] = []
        for item in inputs:
            try:
                await self.grant(
                    item.subject_id,
                    item.resource,
                    item.action,
                    item.condition,
                    granted_by,
                    expires_at=item.expires_at,
                )
                successful += 1
            except DomainException as exc:
                logger.warning(
                    f"[GRANT-STORE] Bulk grant of {item.resource}:{item.action} "
                    f"to {item.subject_id} failed: {exc.message}"
                )
                errors.append(f"{item.subject_id}:{item.resource}:{item.action}: {exc.message}")
        return BulkGrantResult(successful=successful, failed=len(errors), errors=tuple(errors))
