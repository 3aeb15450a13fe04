"""Bridge between the scheduler and the workflow execution engine.

The engine itself runs elsewhere; the scheduler only needs
``execute_workflow(workflow_id, trigger_event) -> execution_id``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from core.constants import ExecutionStatus, TriggerEventType, TriggerType
from core.exceptions import ExecutionDispatchError
from services.execution_service import ExecutionService

logger = logging.getLogger(__name__)

# Rows the engine already took over; sending them again would start a second run
PICKED_UP_STATUSES = (ExecutionStatus.RUNNING.value, ExecutionStatus.COMPLETED.value)


@dataclass
class TriggerEvent:
    """Why and how a workflow execution was started.

    This is the payload handed from the scheduler to the workflow
    execution engine. ``payload`` is the schedule's opaque event data.
    """

    module: str
    entity_type: str
    event_type: str
    organization_id: str
    triggered_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    schedule_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "entity_type": self.entity_type,
            "event_type": self.event_type,
            "organization_id": self.organization_id,
            "payload": self.payload,
            "triggered_at": self.triggered_at.isoformat(),
            "user_id": self.user_id,
            "schedule_id": self.schedule_id,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
        }


class WorkflowExecutor(Protocol):
    """Entry point of the workflow execution engine."""

    async def execute_workflow(
        self,
        workflow_id: str,
        event: TriggerEvent,
        dispatch_key: Optional[str] = None,
    ) -> str:
        """Start a run and return its execution ID.

        ``dispatch_key`` identifies one scheduled occurrence; calling again
        with the same key must not start a second run.

        Raises:
            ExecutionDispatchError: If the engine did not accept the run.
        """
        ...

    async def wait_in_flight(self) -> None:
        """Wait for hand-overs still running after their caller gave up."""
        ...


class CeleryWorkflowExecutor:
    """Records the execution row, then publishes it to the engine's queue.

    The row is keyed by ``dispatch_key`` so a retried occurrence reuses it.
    A row that was already published, or that the engine picked up, is
    never sent again.

    ``send_task`` runs in a worker thread that cannot be interrupted. When
    the caller gives up waiting, the publish keeps going in the background
    and still records its outcome on the row, so a later retry sees it.
    """

    def __init__(
        self,
        executions: ExecutionService,
        task_name: str,
        queue: str,
        celery_app=None,
    ):
        self.executions = executions
        self.task_name = task_name
        self.queue = queue
        self._celery_app = celery_app
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def celery_app(self):
        if self._celery_app is None:
            from worker.celery_app import celery_app

            self._celery_app = celery_app
        return self._celery_app

    async def execute_workflow(
        self,
        workflow_id: str,
        event: TriggerEvent,
        dispatch_key: Optional[str] = None,
    ) -> str:
        trigger_type = (
            TriggerType.SCHEDULED
            if event.event_type == TriggerEventType.SCHEDULED_RUN.value
            else TriggerType.SCHEDULE_MANUAL
        )
        execution, created = await self.executions.record_dispatch(
            organization_id=event.organization_id,
            workflow_id=workflow_id,
            trigger_type=trigger_type.value,
            trigger=event.to_dict(),
            schedule_id=event.schedule_id,
            dispatch_key=dispatch_key,
        )

        if not created:
            if execution.published_at is not None or execution.status in PICKED_UP_STATUSES:
                logger.info(f"Occurrence {dispatch_key} already handed over as execution {execution.id}")
                return execution.id
            in_flight = self._in_flight.get(execution.id)
            if in_flight is not None:
                # An earlier caller timed out while its publish was still running
                await asyncio.shield(in_flight)
                return execution.id
            await self.executions.mark_pending(execution.id)

        publish = asyncio.ensure_future(self._publish(execution.id, workflow_id, event))
        self._in_flight[execution.id] = publish
        publish.add_done_callback(lambda task: self._finish_publish(execution.id, task))
        # A cancelled caller must not cancel the publish itself
        await asyncio.shield(publish)
        return execution.id

    async def wait_in_flight(self) -> None:
        """Wait for publishes whose callers stopped waiting."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    def _finish_publish(self, execution_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(execution_id, None)
        # Retrieve the error so a publish nobody awaited any more is not reported as lost
        if not task.cancelled():
            task.exception()

    async def _publish(self, execution_id: str, workflow_id: str, event: TriggerEvent) -> None:
        try:
            await asyncio.to_thread(
                self.celery_app.send_task,
                self.task_name,
                kwargs={
                    "execution_id": execution_id,
                    "workflow_id": workflow_id,
                    "trigger_event": event.to_dict(),
                },
                queue=self.queue,
                task_id=execution_id,
            )
        except Exception as exc:
            logger.error(f"Failed to publish execution {execution_id}: {exc}")
            await self.executions.mark_failed(execution_id, str(exc))
            raise ExecutionDispatchError(
                f"Could not publish execution {execution_id}: {exc}"
            ) from exc

        await self.executions.mark_published(execution_id)
        logger.info(f"Published execution {execution_id} for workflow {workflow_id} ({event.event_type})")
