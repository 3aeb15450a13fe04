"""Scheduler engine: business rules between the API, the store and cron.

All reads and writes go straight to the schedule store; nothing about a
schedule is cached between calls, so any number of engines (API
processes, dispatch loops, Celery workers) can share one database.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from core.constants import (
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_TIMEZONE,
    MAX_BACKOFF_SECONDS,
    TRIGGER_ENTITY_TYPE,
    TRIGGER_MODULE,
    TriggerEventType,
)
from core.exceptions import (
    ConflictError,
    ExecutionDispatchError,
    InvalidCronExpressionError,
    NotFoundError,
    SchedulerError,
    ValidationError,
)
from db.base import utcnow_naive
from db.models.schedule import Schedule
from scheduler import cron
from scheduler.executor import TriggerEvent, WorkflowExecutor
from services.schedule_store import ScheduleStore
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Fields that force ``next_run_at`` to be recomputed when changed
TIMING_FIELDS = ("cron_expression", "timezone", "enabled", "start_at", "end_at")
UPDATABLE_FIELDS = TIMING_FIELDS + ("payload",)

# Re-reads allowed when another writer changes the timing mid-update
UPDATE_ATTEMPTS = 5


@dataclass
class ScheduleInput:
    """Everything needed to register a new schedule."""

    organization_id: str
    workflow_id: str
    cron_expression: str
    timezone: str = DEFAULT_TIMEZONE
    enabled: bool = True
    payload: Optional[dict[str, Any]] = field(default=None)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


def backoff_seconds(retry_count: int) -> int:
    """Delay before retrying after the ``retry_count``-th failure in a row."""
    exponential = DEFAULT_BACKOFF_SECONDS * 2 ** max(retry_count - 1, 0)
    return max(DEFAULT_BACKOFF_SECONDS, min(exponential, MAX_BACKOFF_SECONDS))


def dispatch_key_for(schedule_id: str, occurrence: datetime) -> str:
    """Idempotency key of one scheduled occurrence."""
    return f"{schedule_id}:{occurrence.isoformat()}"


def next_run_in_window(
    expression: str,
    timezone_name: str,
    after: datetime,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """First occurrence strictly after ``after`` inside ``[start_at, end_at]``.

    Before the window opens the search starts at ``start_at`` itself, so an
    occurrence falling exactly on it counts. None once the window closed.
    """
    if end_at is not None and end_at <= after:
        return None
    if start_at is not None and start_at > after:
        # Occurrences fall on whole seconds; search from the second before the first allowed one
        first = start_at.replace(microsecond=0)
        if start_at.microsecond:
            first += timedelta(seconds=1)
        after = first - timedelta(seconds=1)
    next_run = cron.next_run_after(expression, timezone_name, after)
    if next_run is None or (end_at is not None and next_run > end_at):
        return None
    return next_run


class SchedulerEngine:
    """Registers, mutates and triggers schedules.

    Args:
        store: Schedule persistence.
        executor: Entry point of the workflow execution engine.
        workflows: Workflow lookup used by scheduled runs; when omitted
            the workflow is assumed to exist and be enabled.
        clock: Returns the current time as naive UTC.
        dispatch_timeout: Seconds an ``execute_workflow`` call may take
            before it counts as failed.
        claim_ttl: How long a dispatch claim blocks other dispatchers.
    """

    def __init__(
        self,
        store: ScheduleStore,
        executor: WorkflowExecutor,
        workflows: Optional[WorkflowService] = None,
        clock: Clock = utcnow_naive,
        dispatch_timeout: float = 30.0,
        claim_ttl: timedelta = timedelta(minutes=5),
    ):
        self.store = store
        self.executor = executor
        self.workflows = workflows
        self.clock = clock
        self.dispatch_timeout = dispatch_timeout
        self.claim_ttl = claim_ttl

    # ─── Registration ──────────────────────────────────────

    def compute_next_run(
        self,
        expression: str,
        timezone_name: str,
        enabled: bool = True,
        now: Optional[datetime] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Validate ``expression`` and return its next run after ``now``.

        Raises:
            InvalidCronExpressionError: If the expression or time zone is invalid.
            ValidationError: If the active window ends before it starts.
        """
        now = now or self.clock()
        result = cron.parse(expression, timezone_name, now)
        if not result.is_valid:
            raise InvalidCronExpressionError(result.error, expression=expression)
        if start_at is not None and end_at is not None and end_at <= start_at:
            raise ValidationError("end_at must be later than start_at")
        if not enabled:
            return None
        return next_run_in_window(expression, timezone_name, now, start_at, end_at)

    async def register_schedule(self, data: ScheduleInput) -> str:
        """Validate and persist a new schedule; returns its ID."""
        next_run_at = self.compute_next_run(
            data.cron_expression,
            data.timezone,
            data.enabled,
            start_at=data.start_at,
            end_at=data.end_at,
        )
        schedule_id = await self.store.create(
            {
                "organization_id": data.organization_id,
                "workflow_id": data.workflow_id,
                "cron_expression": data.cron_expression.strip(),
                "timezone": data.timezone,
                "enabled": data.enabled,
                "payload": data.payload,
                "start_at": data.start_at,
                "end_at": data.end_at,
                "next_run_at": next_run_at,
            }
        )
        logger.info(
            f"Registered schedule {schedule_id} for workflow {data.workflow_id} "
            f"({data.cron_expression} {data.timezone}), next run {next_run_at}"
        )
        return schedule_id

    async def get_schedule(self, schedule_id: str, organization_id: Optional[str] = None) -> Schedule:
        """Load a schedule, optionally scoped to a tenant.

        A schedule of another organization is reported as missing.

        Raises:
            NotFoundError: If absent or owned by another organization.
        """
        schedule = await self.store.get(schedule_id)
        if schedule is None or (organization_id is not None and schedule.organization_id != organization_id):
            raise NotFoundError("Schedule not found")
        return schedule

    async def update_schedule(self, schedule_id: str, changes: Mapping[str, Any]) -> None:
        """Apply a partial update.

        Changing the expression, time zone, enabled flag or active window
        recomputes ``next_run_at`` from now (null when disabled) and drops
        any dispatch claim or pending retry, so the new timing applies at
        once. The write only lands if no other update changed the timing
        since it was read; otherwise the schedule is read again and the
        next run recomputed from the newer values.

        Raises:
            ConflictError: If concurrent updates kept winning every attempt.
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update schedule fields: {', '.join(sorted(unknown))}")
        if not changes:
            return

        values = dict(changes)
        if "cron_expression" in values:
            values["cron_expression"] = values["cron_expression"].strip()

        if not any(name in values for name in TIMING_FIELDS):
            await self.get_schedule(schedule_id)
            await self.store.update(schedule_id, values)
            logger.info(f"Updated schedule {schedule_id}: {', '.join(sorted(changes))}")
            return

        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            schedule = await self.get_schedule(schedule_id)
            timing = {name: values.get(name, getattr(schedule, name)) for name in TIMING_FIELDS}
            next_run_at = self.compute_next_run(
                timing["cron_expression"],
                timing["timezone"],
                timing["enabled"],
                start_at=timing["start_at"],
                end_at=timing["end_at"],
            )
            written = await self.store.update_if_unchanged(
                schedule_id,
                expected={name: getattr(schedule, name) for name in TIMING_FIELDS},
                values={
                    **values,
                    "next_run_at": next_run_at,
                    "claim_token": None,
                    "claimed_until": None,
                    "retry_count": 0,
                    "last_error": None,
                    "last_error_at": None,
                },
            )
            if written:
                logger.info(
                    f"Updated schedule {schedule_id}: {', '.join(sorted(changes))}, next run {next_run_at}"
                )
                return
            logger.info(f"Schedule {schedule_id} changed during update, re-reading (attempt {attempt})")

        raise ConflictError("Schedule is being modified concurrently, try again")

    async def delete_schedule(self, schedule_id: str) -> None:
        """Physically delete a schedule.

        An in-flight dispatch of it finishes without touching the store.
        """
        await self.store.delete(schedule_id)
        logger.info(f"Deleted schedule {schedule_id}")

    # ─── Triggering ────────────────────────────────────────

    def _build_event(
        self,
        schedule: Schedule,
        event_type: TriggerEventType,
        now: datetime,
        user_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> TriggerEvent:
        return TriggerEvent(
            module=TRIGGER_MODULE,
            entity_type=TRIGGER_ENTITY_TYPE,
            event_type=event_type.value,
            organization_id=schedule.organization_id,
            payload=dict(schedule.payload or {}),
            triggered_at=now,
            user_id=user_id,
            schedule_id=schedule.id,
            scheduled_for=scheduled_for,
        )

    async def _dispatch(
        self,
        workflow_id: str,
        event: TriggerEvent,
        dispatch_key: Optional[str] = None,
    ) -> str:
        try:
            return await asyncio.wait_for(
                self.executor.execute_workflow(workflow_id, event, dispatch_key=dispatch_key),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionDispatchError(
                f"Execution engine did not answer within {self.dispatch_timeout}s"
            ) from exc
        except SchedulerError:
            raise
        except Exception as exc:
            raise ExecutionDispatchError(f"Execution engine call failed: {exc}") from exc

    async def trigger_manually(self, schedule_id: str, actor_id: Optional[str]) -> str:
        """Run a schedule's workflow now, outside its cadence.

        ``last_run_at`` and ``next_run_at`` are left alone. Failures are
        raised to the caller and never retried.
        """
        schedule = await self.get_schedule(schedule_id)
        now = self.clock()
        event = self._build_event(schedule, TriggerEventType.MANUAL_TRIGGER, now, user_id=actor_id)
        execution_id = await self._dispatch(schedule.workflow_id, event)
        logger.info(f"Schedule {schedule_id} triggered manually by {actor_id}: execution {execution_id}")
        return execution_id

    async def _record_failure(self, schedule: Schedule, token: str, error: str, now: datetime) -> None:
        retry_count = (schedule.retry_count or 0) + 1
        retry_at = now + timedelta(seconds=backoff_seconds(retry_count))
        released = await self.store.release_claim(
            schedule.id, token, error=error, failed_at=now, retry_at=retry_at
        )
        if released:
            logger.warning(
                f"Schedule {schedule.id} run failed (attempt {retry_count}), "
                f"retrying after {retry_at}: {error}"
            )

    async def trigger_scheduled(self, schedule_id: str) -> Optional[str]:
        """Dispatch a due schedule exactly once for its current occurrence.

        Returns:
            The execution ID, or None when this caller did not obtain the
            claim (already claimed, no longer due, disabled or deleted) or
            the schedule was disabled because its workflow is gone.

        Raises:
            ExecutionDispatchError: If the run could not be handed to the
                execution engine. The occurrence stays due and is retried
                after a backoff. Any other error raised while the claim is
                held is recorded and retried the same way.
        """
        now = self.clock()
        token = await self.store.claim(schedule_id, now, self.claim_ttl)
        if token is None:
            return None

        schedule = await self.store.get(schedule_id)
        if schedule is None or schedule.claim_token != token:
            return None
        occurrence = schedule.next_run_at

        try:
            if self.workflows is not None:
                workflow = await self.workflows.find_workflow(schedule.workflow_id, schedule.organization_id)
                if workflow is None:
                    logger.warning(f"Workflow {schedule.workflow_id} missing, disabling schedule {schedule_id}")
                    try:
                        await self.store.disable(schedule_id)
                    except NotFoundError:
                        pass
                    return None
                if not workflow.is_enabled:
                    raise ExecutionDispatchError(f"Workflow {workflow.id} is not enabled")

            event = self._build_event(schedule, TriggerEventType.SCHEDULED_RUN, now, scheduled_for=occurrence)
            execution_id = await self._dispatch(
                schedule.workflow_id,
                event,
                dispatch_key=dispatch_key_for(schedule_id, occurrence),
            )
        except Exception as exc:
            error = exc.message if isinstance(exc, SchedulerError) else f"{type(exc).__name__}: {exc}"
            await self._record_failure(schedule, token, error, now)
            raise

        try:
            next_run_at = next_run_in_window(
                schedule.cron_expression, schedule.timezone, now, schedule.start_at, schedule.end_at
            )
        except ValueError as exc:
            logger.error(f"Cannot compute next run of schedule {schedule_id}: {exc}")
            next_run_at = None

        await self.store.complete_claim(schedule_id, token, last_run_at=now, next_run_at=next_run_at)
        logger.info(f"Schedule {schedule_id} dispatched execution {execution_id}, next run {next_run_at}")
        return execution_id
