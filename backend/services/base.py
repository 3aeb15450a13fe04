"""Base CRUD service with organization-scoped queries.

Every method runs in its own short transaction opened from the session
factory, so the API process and the dispatch loop never share a session
and every write is visible to other dispatcher instances as soon as the
call returns.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Generic, Optional, Type, TypeVar
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import NotFoundError
from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class WorkflowService(BaseService[Workflow]):
            def __init__(self, session_factory):
                super().__init__(Workflow, session_factory)
    """

    def __init__(self, model: Type[ModelType], session_factory: async_sessionmaker[AsyncSession]):
        self.model = model
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session committed on success, rolled back on error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by ID."""
        async with self.transaction() as session:
            return await session.get(self.model, id)

    async def get_by_id_and_org(self, id: str, organization_id: str) -> Optional[ModelType]:
        """Get a single record scoped to an organization."""
        async with self.transaction() as session:
            result = await session.execute(
                select(self.model).where(
                    self.model.id == id,
                    self.model.organization_id == organization_id,
                )
            )
            return result.scalar_one_or_none()

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record.

        Args:
            data: Dict of field values

        Returns:
            Created model instance
        """
        if "id" not in data:
            data["id"] = str(uuid4())

        instance = self.model(**data)
        async with self.transaction() as session:
            session.add(instance)
            await session.flush()
        return instance

    # ─── Update ────────────────────────────────────────────

    async def update(self, id: str, data: dict[str, Any]) -> None:
        """Apply ``data`` to the record with ``id``.

        Unlike a PATCH helper, None values are written: clearing
        ``next_run_at`` is a real update.

        Raises:
            NotFoundError: If no record has that ID.
        """
        async with self.transaction() as session:
            result = await session.execute(
                update(self.model).where(self.model.id == id).values(**data)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"{self.model.__name__} {id} not found")

    # ─── Delete ────────────────────────────────────────────

    async def hard_delete(self, id: str) -> None:
        """Permanently delete a record.

        Raises:
            NotFoundError: If no record has that ID.
        """
        async with self.transaction() as session:
            result = await session.execute(delete(self.model).where(self.model.id == id))
            if result.rowcount == 0:
                raise NotFoundError(f"{self.model.__name__} {id} not found")
