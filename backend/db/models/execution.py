"""Workflow execution record produced for scheduler-originated runs."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus, TriggerType
from db.base import BaseModel


class Execution(BaseModel):
    """One triggering of a workflow.

    The execution adapter inserts the row when a run is handed to the
    execution engine; the engine owns every later status transition.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Foreign key to Organization
        workflow_id: Foreign key to Workflow
        schedule_id: Schedule that produced the run (null once the schedule
            is deleted)
        trigger_type: scheduled or schedule_manual
        trigger: Trigger event descriptor sent to the engine
        dispatch_key: Idempotency key of a scheduled occurrence
        status: pending, running, completed or failed
        published_at: When the run was handed to the engine's queue; a
            published row is never sent again
        started_at: Execution start timestamp
        completed_at: Execution completion timestamp
        error: Error message if execution failed
    """

    __tablename__ = "executions"

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
    schedule_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("schedules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    trigger_type: Mapped[str] = mapped_column(
        default=TriggerType.SCHEDULED.value, index=True
    )
    trigger: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    dispatch_key: Mapped[Optional[str]] = mapped_column(nullable=True, unique=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
