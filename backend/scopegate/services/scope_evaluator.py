# backend/scopegate/services/scope_evaluator.py
"""
Scope and condition evaluation.

Pure functions over domain values; nothing here performs I/O.
"""

from datetime import datetime
from typing import Any, Mapping, Optional

from ..core.enums import DataScope
from ..domain.authorization import RequestContext, TimeRestriction, ensure_utc


def evaluate(scope: DataScope, context: RequestContext) -> bool:
    """
    Whether a grant of the given scope covers the target described by context.

    OWN and TEAM need a target: a context without an owner, a team answer or
    target teams is covered only by ALL.
    """
    if scope == DataScope.ALL:
        return True
    if scope == DataScope.OWN:
        return context.target_owner_id is not None and context.target_owner_id == context.subject_id
    if scope == DataScope.TEAM:
        if context.shares_team is not None:
            return context.shares_team
        if context.target_owner_id is not None and context.target_owner_id == context.subject_id:
            return True
        return bool(set(context.subject_team_ids) & set(context.target_team_ids))
    return False


def _day_of_week(moment: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (moment.weekday() + 1) % 7


def within_time_restriction(restriction: Optional[TimeRestriction], now: datetime) -> bool:
    """
    True when now falls inside the restriction's window (evaluated in UTC).

    Bounds are inclusive to the minute. A start later than the end wraps
    past midnight.
    """
    if restriction is None:
        return True
    moment = ensure_utc(now)
    assert moment is not None

    if restriction.days_of_week is not None and _day_of_week(moment) not in restriction.days_of_week:
        return False

    current = moment.strftime("%H:%M")
    start, end = restriction.start_time, restriction.end_time
    if start and end and start > end:
        return current >= start or current <= end
    if start and current < start:
        return False
    if end and current > end:
        return False
    return True


def matches_filters(filters: Mapping[str, Any], attributes: Mapping[str, Any]) -> Optional[str]:
    """
    Check request attributes against a grant's equality filters.

    A filter value that is a list matches any of its members.

    Returns:
        The first filter key that does not match, or None when all match
    """
    for key, expected in filters.items():
        actual = attributes.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return key
        elif actual != expected:
            return key
    return None
