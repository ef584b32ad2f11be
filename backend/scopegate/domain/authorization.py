# backend/scopegate/domain/authorization.py
"""
Value types exchanged between the authorization components.

Every component hands these around by value; none of them carries a session,
a client or any other live resource.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
import re
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..core.enums import DataScope, DecisionReason
from ..core.exceptions import InvalidConfigurationException

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round-trip; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window quota attached to a grant."""

    max_actions: int
    window_minutes: int

    def __post_init__(self) -> None:
        if isinstance(self.max_actions, bool) or not isinstance(self.max_actions, int):
            raise InvalidConfigurationException("max_actions must be an integer")
        if isinstance(self.window_minutes, bool) or not isinstance(self.window_minutes, int):
            raise InvalidConfigurationException("window_minutes must be an integer")
        if self.max_actions <= 0:
            raise InvalidConfigurationException(
                "max_actions must be greater than zero",
                details={"max_actions": self.max_actions},
            )
        if self.window_minutes <= 0:
            raise InvalidConfigurationException(
                "window_minutes must be greater than zero",
                details={"window_minutes": self.window_minutes},
            )

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60


@dataclass(frozen=True)
class TimeRestriction:
    """
    Wall-clock window in which a grant is usable.

    Times are inclusive HH:MM strings; days_of_week uses 0 for Sunday
    through 6 for Saturday.
    """

    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days_of_week: Optional[Tuple[int, ...]] = None

    def __post_init__(self) -> None:
        for label, value in (("start_time", self.start_time), ("end_time", self.end_time)):
            if value is not None and not _HHMM.match(value):
                raise InvalidConfigurationException(
                    f"{label} must use HH:MM format", details={label: value}
                )
        if self.days_of_week is not None:
            days = tuple(self.days_of_week)
            if any(day < 0 or day > 6 for day in days):
                raise InvalidConfigurationException(
                    "days_of_week values must be between 0 and 6",
                    details={"days_of_week": list(days)},
                )
            object.__setattr__(self, "days_of_week", days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time,
            "end_time": self.end_time,
            "days_of_week": list(self.days_of_week) if self.days_of_week is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["TimeRestriction"]:
        if not data:
            return None
        days = data.get("days_of_week")
        return cls(
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            days_of_week=tuple(days) if days is not None else None,
        )


@dataclass(frozen=True)
class PermissionCondition:
    """Scope plus the optional restrictions a grant carries."""

    scope: DataScope = DataScope.OWN
    rate_limit: Optional[RateLimitRule] = None
    time_restriction: Optional[TimeRestriction] = None
    filters: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.value,
            "rate_limit": (
                {
                    "max_actions": self.rate_limit.max_actions,
                    "window_minutes": self.rate_limit.window_minutes,
                }
                if self.rate_limit
                else None
            ),
            "time_restriction": self.time_restriction.to_dict() if self.time_restriction else None,
            "filters": dict(self.filters) if self.filters else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PermissionCondition":
        rate_limit = data.get("rate_limit")
        return cls(
            scope=DataScope(data.get("scope") or DataScope.OWN.value),
            rate_limit=(
                RateLimitRule(
                    max_actions=int(rate_limit["max_actions"]),
                    window_minutes=int(rate_limit["window_minutes"]),
                )
                if rate_limit
                else None
            ),
            time_restriction=TimeRestriction.from_dict(data.get("time_restriction")),
            filters=dict(data.get("filters") or {}),
        )


@dataclass(frozen=True)
class PermissionGrant:
    """Stored grant, detached from the persistence layer."""

    id: str
    subject_id: str
    resource: str
    action: str
    condition: PermissionCondition
    granted_by: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= (now or utcnow())  # type: ignore[operator]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "resource": self.resource,
            "action": self.action,
            "condition": self.condition.to_dict(),
            "granted_by": self.granted_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PermissionGrant":
        expires_at = data.get("expires_at")
        created_at = data.get("created_at")
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            resource=data["resource"],
            action=data["action"],
            condition=PermissionCondition.from_dict(data.get("condition") or {}),
            granted_by=data["granted_by"],
            expires_at=ensure_utc(datetime.fromisoformat(expires_at)) if expires_at else None,
            created_at=ensure_utc(datetime.fromisoformat(created_at)) if created_at else None,
        )


@dataclass(frozen=True)
class RequestContext:
    """
    What the caller knows about the target of a guarded request.

    Team membership is resolved by the caller: either a precomputed
    shares_team flag or the two team id sets.
    """

    subject_id: str
    target_owner_id: Optional[str] = None
    shares_team: Optional[bool] = None
    subject_team_ids: FrozenSet[str] = frozenset()
    target_team_ids: FrozenSet[str] = frozenset()
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        delta = (self.reset_at - (now or utcnow())).total_seconds()
        return max(1, math.ceil(delta))

    @property
    def percent_used(self) -> int:
        if self.limit <= 0:
            return 100
        return round(self.current / self.limit * 100)


@dataclass(frozen=True)
class AuthorizationDecision:
    granted: bool
    reason: Optional[DecisionReason] = None
    message: str = ""
    scope: Optional[DataScope] = None
    rate_limit: Optional[RateLimitRule] = None
    rate_limit_status: Optional[RateLimitStatus] = None

    @classmethod
    def allow(
        cls,
        scope: DataScope,
        rate_limit: Optional[RateLimitRule] = None,
        rate_limit_status: Optional[RateLimitStatus] = None,
    ) -> "AuthorizationDecision":
        return cls(
            granted=True,
            scope=scope,
            rate_limit=rate_limit,
            rate_limit_status=rate_limit_status,
        )

    @classmethod
    def deny(
        cls,
        reason: DecisionReason,
        message: str,
        *,
        rate_limit: Optional[RateLimitRule] = None,
        rate_limit_status: Optional[RateLimitStatus] = None,
    ) -> "AuthorizationDecision":
        return cls(
            granted=False,
            reason=reason,
            message=message,
            rate_limit=rate_limit,
            rate_limit_status=rate_limit_status,
        )


@dataclass(frozen=True)
class BulkGrantResult:
    successful: int
    failed: int
    errors: Tuple[str, ...] = ()
