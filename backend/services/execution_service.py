"""Execution records for scheduler-originated workflow runs."""

from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import SCHEDULER_TRIGGER_TYPES, ExecutionStatus
from db.base import utcnow_naive
from db.models.execution import Execution
from services.base import BaseService


class ExecutionService(BaseService[Execution]):
    """Records runs handed to the execution engine and pages through them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(Execution, session_factory)

    async def record_dispatch(
        self,
        organization_id: str,
        workflow_id: str,
        trigger_type: str,
        trigger: dict[str, Any],
        schedule_id: Optional[str] = None,
        dispatch_key: Optional[str] = None,
    ) -> tuple[Execution, bool]:
        """Insert the pending execution for a run, once per dispatch key.

        Returns:
            ``(execution, created)``. When ``dispatch_key`` was already
            recorded the existing row is returned with ``created=False``.
        """
        if dispatch_key:
            existing = await self.get_by_dispatch_key(dispatch_key)
            if existing is not None:
                return existing, False

        try:
            execution = await self.create({
                "organization_id": organization_id,
                "workflow_id": workflow_id,
                "schedule_id": schedule_id,
                "trigger_type": trigger_type,
                "trigger": trigger,
                "dispatch_key": dispatch_key,
                "status": ExecutionStatus.PENDING.value,
            })
        except IntegrityError:
            # Another dispatcher recorded the same occurrence first
            if not dispatch_key:
                raise
            existing = await self.get_by_dispatch_key(dispatch_key)
            if existing is None:
                raise
            return existing, False
        return execution, True

    async def get_by_dispatch_key(self, dispatch_key: str) -> Optional[Execution]:
        async with self.transaction() as session:
            result = await session.execute(
                select(Execution).where(Execution.dispatch_key == dispatch_key)
            )
            return result.scalar_one_or_none()

    async def mark_failed(self, execution_id: str, error: str) -> None:
        await self.update(execution_id, {
            "status": ExecutionStatus.FAILED.value,
            "error": error[:2000],
            "completed_at": utcnow_naive(),
        })

    async def mark_published(self, execution_id: str) -> None:
        await self.update(execution_id, {"published_at": utcnow_naive()})

    async def mark_pending(self, execution_id: str) -> None:
        await self.update(execution_id, {
            "status": ExecutionStatus.PENDING.value,
            "error": None,
            "completed_at": None,
        })

    async def list_schedule_history(
        self,
        organization_id: str,
        schedule_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Execution], int]:
        """Scheduler-originated executions of a tenant, newest first."""
        async with self.transaction() as session:
            query = select(Execution).where(
                Execution.organization_id == organization_id,
                Execution.trigger_type.in_(SCHEDULER_TRIGGER_TYPES),
            )
            if schedule_id:
                query = query.where(Execution.schedule_id == schedule_id)
            if workflow_id:
                query = query.where(Execution.workflow_id == workflow_id)

            total = (
                await session.execute(select(func.count()).select_from(query.subquery()))
            ).scalar() or 0
            items = (
                await session.execute(
                    query.order_by(Execution.created_at.desc(), Execution.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
        return items, total
