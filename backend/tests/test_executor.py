"""Tests for the Celery-backed execution engine adapter."""

import asyncio
import time
from datetime import datetime, timedelta

import pytest

from core.constants import ExecutionStatus
from core.exceptions import ExecutionDispatchError
from scheduler.engine import ScheduleInput, SchedulerEngine, dispatch_key_for
from scheduler.executor import CeleryWorkflowExecutor, TriggerEvent


class FakeCelery:
    """Stands in for ``Celery.send_task``."""

    def __init__(self):
        self.sent: list[dict] = []
        self.error: Exception | None = None

    def send_task(self, name, kwargs=None, queue=None, task_id=None):
        if self.error is not None:
            raise self.error
        self.sent.append({"name": name, "kwargs": kwargs, "queue": queue, "task_id": task_id})


@pytest.fixture
def celery():
    return FakeCelery()


@pytest.fixture
def adapter(executions, celery):
    return CeleryWorkflowExecutor(
        executions,
        task_name="worker.tasks.workflow.execute_workflow",
        queue="workflows",
        celery_app=celery,
    )


@pytest.fixture
def event(test_org):
    def _event(event_type: str = "scheduled_run", **kwargs):
        return TriggerEvent(
            module="scheduler",
            entity_type="schedule",
            event_type=event_type,
            organization_id=test_org.id,
            triggered_at=datetime(2024, 1, 1, 0, 15),
            payload={"k": "v"},
            **kwargs,
        )

    return _event


@pytest.mark.unit
def test_trigger_event_to_dict():
    event = TriggerEvent(
        module="scheduler",
        entity_type="schedule",
        event_type="scheduled_run",
        organization_id="org-1",
        triggered_at=datetime(2024, 1, 1, 0, 15, 2),
        schedule_id="s-1",
        scheduled_for=datetime(2024, 1, 1, 0, 15),
    )
    assert event.to_dict() == {
        "module": "scheduler",
        "entity_type": "schedule",
        "event_type": "scheduled_run",
        "organization_id": "org-1",
        "payload": {},
        "triggered_at": "2024-01-01T00:15:02",
        "user_id": None,
        "schedule_id": "s-1",
        "scheduled_for": "2024-01-01T00:15:00",
    }


@pytest.mark.integration
class TestCeleryWorkflowExecutor:

    async def test_records_and_publishes(self, adapter, celery, executions, event, test_workflow):
        execution_id = await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")

        execution = await executions.get_by_id(execution_id)
        assert execution.status == ExecutionStatus.PENDING.value
        assert execution.trigger_type == "scheduled"
        assert execution.dispatch_key == "s-1:t1"
        assert execution.trigger["payload"] == {"k": "v"}

        assert len(celery.sent) == 1
        sent = celery.sent[0]
        assert sent["name"] == "worker.tasks.workflow.execute_workflow"
        assert sent["queue"] == "workflows"
        assert sent["task_id"] == execution_id
        assert sent["kwargs"]["workflow_id"] == test_workflow.id
        assert sent["kwargs"]["trigger_event"]["event_type"] == "scheduled_run"

    async def test_manual_runs_are_marked_as_such(self, adapter, executions, event, test_workflow):
        execution_id = await adapter.execute_workflow(test_workflow.id, event("manual_trigger", user_id="u-1"))
        execution = await executions.get_by_id(execution_id)
        assert execution.trigger_type == "schedule_manual"
        assert execution.dispatch_key is None

    async def test_published_row_is_not_sent_again(self, adapter, celery, executions, event, test_workflow):
        first = await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")
        assert (await executions.get_by_id(first)).published_at is not None

        second = await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")
        assert second == first
        assert [s["task_id"] for s in celery.sent] == [first]

    async def test_recorded_but_unpublished_row_is_sent(self, adapter, celery, executions, event, test_org, test_workflow):
        recorded, _ = await executions.record_dispatch(
            organization_id=test_org.id,
            workflow_id=test_workflow.id,
            trigger_type="scheduled",
            trigger=event().to_dict(),
            dispatch_key="s-1:t1",
        )

        assert await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1") == recorded.id
        assert [s["task_id"] for s in celery.sent] == [recorded.id]

    @pytest.mark.parametrize("status", [ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED])
    async def test_picked_up_run_is_not_republished(
        self, adapter, celery, executions, event, test_workflow, status
    ):
        first = await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")
        # The engine took the run over before the publish was recorded
        await executions.update(first, {"status": status.value, "published_at": None})

        assert await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1") == first
        assert len(celery.sent) == 1

    async def test_publish_failure_marks_execution_failed(self, adapter, celery, executions, event, test_workflow):
        celery.error = ConnectionError("broker unreachable")

        with pytest.raises(ExecutionDispatchError, match="broker unreachable"):
            await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")

        execution = await executions.get_by_dispatch_key("s-1:t1")
        assert execution.status == ExecutionStatus.FAILED.value
        assert "broker unreachable" in execution.error
        assert execution.published_at is None

    async def test_retry_after_failure_reuses_row(self, adapter, celery, executions, event, test_workflow):
        celery.error = ConnectionError("broker unreachable")
        with pytest.raises(ExecutionDispatchError):
            await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")

        celery.error = None
        execution_id = await adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")

        execution = await executions.get_by_id(execution_id)
        assert execution.status == ExecutionStatus.PENDING.value
        assert execution.error is None
        assert len(celery.sent) == 1


class SlowCelery(FakeCelery):
    """A broker that accepts the task only after ``delay`` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def send_task(self, name, kwargs=None, queue=None, task_id=None):
        time.sleep(self.delay)
        super().send_task(name, kwargs=kwargs, queue=queue, task_id=task_id)


@pytest.mark.integration
class TestPublishOutlivingTimeout:
    """The publish thread cannot be interrupted; it must still count once."""

    @pytest.fixture
    def slow_celery(self):
        return SlowCelery(delay=0.4)

    @pytest.fixture
    def slow_adapter(self, executions, slow_celery):
        return CeleryWorkflowExecutor(executions, task_name="run", queue="workflows", celery_app=slow_celery)

    @pytest.fixture
    def slow_engine(self, store, slow_adapter, workflows, clock):
        return SchedulerEngine(
            store,
            slow_adapter,
            workflows=workflows,
            clock=clock,
            dispatch_timeout=0.1,
            claim_ttl=timedelta(minutes=5),
        )

    async def test_retry_after_late_publish_does_not_resend(
        self, slow_engine, slow_adapter, slow_celery, store, executions, clock, test_org, test_workflow
    ):
        schedule_id = await slow_engine.register_schedule(
            ScheduleInput(test_org.id, test_workflow.id, "*/15 * * * *")
        )
        clock.set(datetime(2024, 1, 1, 0, 15))

        with pytest.raises(ExecutionDispatchError, match="did not answer within"):
            await slow_engine.trigger_scheduled(schedule_id)
        await slow_adapter.wait_in_flight()

        execution = await executions.get_by_dispatch_key(f"{schedule_id}:2024-01-01T00:15:00")
        assert execution.published_at is not None
        assert len(slow_celery.sent) == 1

        clock.set(datetime(2024, 1, 1, 0, 16))
        assert await slow_engine.trigger_scheduled(schedule_id) == execution.id
        assert len(slow_celery.sent) == 1

        schedule = await store.get(schedule_id)
        assert schedule.next_run_at == datetime(2024, 1, 1, 0, 30)
        assert schedule.retry_count == 0

    async def test_caller_joins_publish_still_in_flight(self, slow_adapter, slow_celery, event, test_workflow):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                slow_adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1"),
                timeout=0.05,
            )

        execution_id = await slow_adapter.execute_workflow(test_workflow.id, event(), dispatch_key="s-1:t1")

        assert [s["task_id"] for s in slow_celery.sent] == [execution_id]


@pytest.mark.integration
async def test_reclaim_after_crash_does_not_resend(
    adapter, celery, store, workflows, clock, event, test_org, test_workflow
):
    engine = SchedulerEngine(store, adapter, workflows=workflows, clock=clock, claim_ttl=timedelta(minutes=5))
    schedule_id = await engine.register_schedule(ScheduleInput(test_org.id, test_workflow.id, "*/15 * * * *"))
    occurrence = datetime(2024, 1, 1, 0, 15)
    clock.set(occurrence)

    # A dispatcher claims and publishes, then dies before completing its claim
    assert await store.claim(schedule_id, occurrence, timedelta(minutes=5))
    published = await adapter.execute_workflow(
        test_workflow.id,
        event(schedule_id=schedule_id, scheduled_for=occurrence),
        dispatch_key=dispatch_key_for(schedule_id, occurrence),
    )

    clock.set(datetime(2024, 1, 1, 0, 21))
    assert await engine.trigger_scheduled(schedule_id) == published
    assert [s["task_id"] for s in celery.sent] == [published]
    assert (await store.get(schedule_id)).next_run_at == datetime(2024, 1, 1, 0, 30)
