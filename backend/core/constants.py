"""Constants and enums for the workflow scheduler."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, Enum):
    """How the scheduler started a workflow execution."""

    SCHEDULED = "scheduled"
    SCHEDULE_MANUAL = "schedule_manual"


SCHEDULER_TRIGGER_TYPES = (TriggerType.SCHEDULED.value, TriggerType.SCHEDULE_MANUAL.value)


class TriggerEventType(str, Enum):
    """Event types carried on scheduler trigger events."""

    MANUAL_TRIGGER = "manual_trigger"
    SCHEDULED_RUN = "scheduled_run"


class Permission(str, Enum):
    """Permission codes checked by the schedule endpoints."""

    READ = "schedules.read"
    CREATE = "schedules.create"
    UPDATE = "schedules.update"
    DELETE = "schedules.delete"
    EXECUTE = "schedules.execute"


TRIGGER_MODULE = "scheduler"
TRIGGER_ENTITY_TYPE = "schedule"

DEFAULT_TIMEZONE = "UTC"

# Failed dispatch backoff: 60s * 2^(n-1), capped at one day
DEFAULT_BACKOFF_SECONDS = 60
MAX_BACKOFF_SECONDS = 60 * 60 * 24
