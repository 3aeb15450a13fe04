"""Schedule request schemas."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from core.constants import DEFAULT_TIMEZONE

# Fields where an explicit null clears the stored value
CLEARABLE_FIELDS = ("payload", "start_at", "end_at")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC; naive input is taken as UTC already
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ScheduleCreateRequest(BaseModel):
    """Request body to create a schedule."""

    workflow_id: str = Field(..., min_length=1, description="ID of the workflow to schedule")
    cron_expression: str = Field(
        ...,
        min_length=1,
        description="Cron expression: 5 fields (min hour dom mon dow) or 6 with leading seconds",
    )
    timezone: str = Field(default=DEFAULT_TIMEZONE, min_length=1, max_length=64)
    enabled: bool = Field(default=True)
    payload: Optional[dict[str, Any]] = Field(
        default=None, description="Event data passed to every triggered run"
    )
    start_at: Optional[datetime] = Field(default=None, description="No run before this instant")
    end_at: Optional[datetime] = Field(default=None, description="No run after this instant")

    normalize_window = field_validator("start_at", "end_at")(_naive_utc)


class ScheduleUpdateRequest(BaseModel):
    """Request body to update a schedule; omitted fields are left unchanged."""

    cron_expression: Optional[str] = Field(default=None, min_length=1)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)
    enabled: Optional[bool] = None
    payload: Optional[dict[str, Any]] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None

    normalize_window = field_validator("start_at", "end_at")(_naive_utc)

    def changes(self) -> dict[str, Any]:
        """Fields the client actually sent.

        An explicit null clears ``payload`` and the active window bounds;
        for the other fields it means "leave unchanged".
        """
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True).items()
            if value is not None or name in CLEARABLE_FIELDS
        }


class CronValidateRequest(BaseModel):
    """Request body for live cron expression feedback."""

    cron_expression: str = Field(..., description="Expression to validate")
    timezone: str = Field(default=DEFAULT_TIMEZONE, min_length=1, max_length=64)
