"""FastAPI dependency injection functions.

The application owns one ``ServiceContainer`` built at startup and kept on
``app.state``; routes reach the engine and services through it instead
of module-level singletons.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from scheduler.dispatcher import DispatchLoop
from scheduler.engine import Clock, SchedulerEngine
from scheduler.executor import CeleryWorkflowExecutor, WorkflowExecutor
from services.execution_service import ExecutionService
from services.schedule_store import ScheduleStore
from services.workflow_service import WorkflowService

if TYPE_CHECKING:
    from core.rbac import Authorizer

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request or the dispatch loop needs, wired once."""

    store: ScheduleStore
    executions: ExecutionService
    workflows: WorkflowService
    engine: SchedulerEngine
    authorizer: "Authorizer"
    settings: Settings

    def dispatch_loop(self) -> DispatchLoop:
        return DispatchLoop(
            self.engine,
            self.store,
            interval=self.settings.SCHEDULER_POLL_INTERVAL_SECONDS,
            batch_size=self.settings.SCHEDULER_BATCH_SIZE,
            max_concurrency=self.settings.SCHEDULER_MAX_CONCURRENCY,
        )

    async def drain(self) -> None:
        """Let publishes that outlived their dispatch timeout record themselves."""
        await self.engine.executor.wait_in_flight()


def build_container(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    executor: Optional[WorkflowExecutor] = None,
    authorizer: Optional["Authorizer"] = None,
    clock: Optional[Clock] = None,
) -> ServiceContainer:
    """Wire the scheduler services on top of one session factory.

    ``executor``, ``authorizer`` and ``clock`` default to the production
    implementations; tests pass fakes.
    """
    from core.rbac import TokenAuthorizer

    settings = settings or get_settings()
    store = ScheduleStore(session_factory)
    executions = ExecutionService(session_factory)
    workflows = WorkflowService(session_factory)

    if executor is None:
        executor = CeleryWorkflowExecutor(
            executions,
            task_name=settings.EXECUTION_TASK_NAME,
            queue=settings.EXECUTION_QUEUE,
        )

    engine_kwargs = {}
    if clock is not None:
        engine_kwargs["clock"] = clock
    engine = SchedulerEngine(
        store,
        executor,
        workflows=workflows,
        dispatch_timeout=settings.EXECUTION_DISPATCH_TIMEOUT_SECONDS,
        claim_ttl=timedelta(seconds=settings.SCHEDULER_CLAIM_TTL_SECONDS),
        **engine_kwargs,
    )

    return ServiceContainer(
        store=store,
        executions=executions,
        workflows=workflows,
        engine=engine,
        authorizer=authorizer or TokenAuthorizer(),
        settings=settings,
    )


def get_container(request: Request) -> ServiceContainer:
    """Provide the application's service container to endpoints."""
    return request.app.state.container
