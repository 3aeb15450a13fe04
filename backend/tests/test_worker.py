"""Tests for the Celery wiring of the dispatch tick."""

from contextlib import asynccontextmanager
from datetime import datetime

import pytest

from scheduler.engine import ScheduleInput


@pytest.mark.unit
class TestCeleryConfig:

    def test_beat_runs_poller_every_minute(self):
        from worker.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["poll-schedules"]
        assert entry["task"] == "worker.tasks.schedule_poller.poll_schedules"
        assert entry["options"] == {"queue": "triggers"}

    def test_execution_task_routed_to_engine_queue(self):
        from app.config import get_settings
        from worker.celery_app import celery_app

        settings = get_settings()
        assert celery_app.conf.task_routes[settings.EXECUTION_TASK_NAME] == {"queue": settings.EXECUTION_QUEUE}


@pytest.mark.integration
async def test_poll_runs_one_tick(monkeypatch, session_factory, executor, clock, engine, test_org, test_workflow):
    import app.dependencies
    import db.worker_session
    from worker.tasks.schedule_poller import _poll_and_dispatch

    @asynccontextmanager
    async def fake_session_factory():
        yield session_factory

    real_build = app.dependencies.build_container

    def build_with_fakes(factory, settings=None):
        return real_build(factory, settings, executor=executor, clock=clock)

    monkeypatch.setattr(db.worker_session, "worker_session_factory", fake_session_factory)
    monkeypatch.setattr(app.dependencies, "build_container", build_with_fakes)

    await engine.register_schedule(ScheduleInput(test_org.id, test_workflow.id, "*/15 * * * *"))
    clock.set(datetime(2024, 1, 1, 0, 15))

    assert await _poll_and_dispatch() == {"due": 1, "dispatched": 1, "skipped": 0, "failed": 0}
    assert len(executor.calls) == 1
