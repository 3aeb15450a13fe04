"""Workflow lookups used by the scheduler."""

from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.workflow import Workflow
from services.base import BaseService


class WorkflowService(BaseService[Workflow]):
    """Read access to workflows owned by the execution engine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(Workflow, session_factory)

    async def find_workflow(self, workflow_id: str, organization_id: str) -> Optional[Workflow]:
        """Workflow with that ID inside the organization, or None."""
        return await self.get_by_id_and_org(workflow_id, organization_id)

    async def workflow_names(self, workflow_ids: Iterable[str]) -> dict[str, str]:
        """Map of workflow ID to name for the given IDs (missing ones omitted)."""
        ids = set(workflow_ids)
        if not ids:
            return {}
        async with self.transaction() as session:
            result = await session.execute(
                select(Workflow.id, Workflow.name).where(Workflow.id.in_(ids))
            )
            return {row.id: row.name for row in result}
