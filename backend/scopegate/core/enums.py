# backend/scopegate/core/enums.py
"""
Core enums for the authorization engine.

These enums give callers stable values to branch on instead of
matching message text.
"""

from enum import Enum


class DataScope(str, Enum):
    """
    Breadth of target records a grant covers.

    OWN covers records owned by the subject, TEAM covers records owned by
    anyone sharing a team with the subject, ALL covers every record.
    """

    OWN = "OWN"
    TEAM = "TEAM"
    ALL = "ALL"


class DecisionReason(str, Enum):
    """Closed set of reasons an authorization check can be denied."""

    NO_GRANT = "NO_GRANT"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    TIME_RESTRICTED = "TIME_RESTRICTED"
    FILTER_MISMATCH = "FILTER_MISMATCH"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class FailurePolicy(str, Enum):
    """What the enforcement layer does when a backing store is unreachable."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"
