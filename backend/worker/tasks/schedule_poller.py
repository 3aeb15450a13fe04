"""Celery task to poll schedules and trigger workflow executions.

This task runs every minute via Celery Beat and performs one dispatch
tick: every enabled schedule whose next_run_at <= now is claimed and
handed to the execution engine. Claims make it safe to run this task
alongside the in-process dispatch loop or on several beat workers.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.schedule_poller.poll_schedules",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="triggers",
)
def poll_schedules(self):
    """Check for due schedules and trigger workflow executions."""
    logger.info("[schedule-poller] Polling schedules for due executions...")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_poll_and_dispatch())
        logger.info(f"[schedule-poller] Done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[schedule-poller] Polling failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _poll_and_dispatch() -> dict:
    """Run one dispatch tick against a worker-local engine."""
    from app.config import get_settings
    from app.dependencies import build_container
    from db.worker_session import worker_session_factory

    settings = get_settings()
    async with worker_session_factory() as session_factory:
        container = build_container(session_factory, settings)
        result = await container.dispatch_loop().tick()
        await container.drain()
    return result.as_dict()
