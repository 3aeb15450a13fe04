"""Schedule model for the workflow scheduler."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import DEFAULT_TIMEZONE
from db.base import BaseModel


class Schedule(BaseModel):
    """Recurring cron trigger bound to one workflow.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Tenant scope, never reassigned
        workflow_id: Foreign key to Workflow
        cron_expression: Validated cron expression (5 or 6 fields)
        timezone: IANA time zone the expression is evaluated in
        enabled: Disabled schedules are never dispatched
        payload: Opaque event data passed to every triggered run
        start_at: No run is due before this instant (naive UTC)
        end_at: No run is due after this instant (naive UTC)
        last_run_at: Last successful scheduled dispatch (naive UTC)
        next_run_at: Next due occurrence (naive UTC), null when disabled,
            past ``end_at``, or when the expression has no future occurrence
        claim_token: Token of the dispatcher currently holding the schedule
        claimed_until: Claim expiry; after a failed dispatch, the earliest
            retry instant
        retry_count: Consecutive failed dispatch attempts
        last_error: Message of the last failed dispatch
        last_error_at: When the last dispatch failed
    """

    __tablename__ = "schedules"
    __table_args__ = (
        Index("ix_schedules_enabled_next_run_at", "enabled", "next_run_at"),
    )

    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cron_expression: Mapped[str] = mapped_column(nullable=False)
    timezone: Mapped[str] = mapped_column(nullable=False, default=DEFAULT_TIMEZONE)
    enabled: Mapped[bool] = mapped_column(default=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    start_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    end_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    claim_token: Mapped[Optional[str]] = mapped_column(nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # "noload" keeps async sessions from lazy-loading; callers join explicitly
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="schedules", lazy="noload"
    )
