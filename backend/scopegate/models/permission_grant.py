# backend/scopegate/models/permission_grant.py
"""
Resource permission grant model.

A grant links a subject to a (resource, action) capability together with the
condition that governs it: the data scope it covers, an optional fixed-window
rate limit, and the optional time and attribute restrictions.

Classes:
    ResourcePermission: One grant per (subject_id, resource, action)
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
import ulid

from ..database import Base


class ResourcePermission(Base):
    """
    Stored authorization grant.

    Grants are immutable from the engine's point of view: re-granting the same
    (subject_id, resource, action) replaces the whole condition, and revocation
    deletes the row.

    Attributes:
        id: ULID primary key
        subject_id: Principal the grant authorizes
        resource: Protected resource type (e.g. 'ticket')
        action: Protected action (e.g. 'create')
        scope: OWN, TEAM or ALL
        rate_limit_max_actions: Actions allowed per window, NULL when unlimited
        rate_limit_window_minutes: Window length, NULL when unlimited
        time_restriction: Optional {start_time, end_time, days_of_week}
        filters: Optional attribute equality filters checked against the request
        granted_by: Granting principal (audit only)
        expires_at: Optional hard expiry; expired grants are ignored
    """

    __tablename__ = "resource_permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    scope: Mapped[str] = mapped_column(String(8), nullable=False, default="OWN")
    rate_limit_max_actions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rate_limit_window_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time_restriction: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    filters: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    granted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "resource", "action", name="uq_resource_permission_key"),
        Index("ix_resource_permissions_resource", "resource"),
        CheckConstraint("scope IN ('OWN', 'TEAM', 'ALL')", name="ck_resource_permission_scope"),
        CheckConstraint(
            "(rate_limit_max_actions IS NULL AND rate_limit_window_minutes IS NULL) OR "
            "(rate_limit_max_actions > 0 AND rate_limit_window_minutes > 0)",
            name="ck_resource_permission_rate_limit",
        ),
    )

    def __repr__(self) -> str:
        return f"<ResourcePermission {self.subject_id}:{self.resource}:{self.action}>"
