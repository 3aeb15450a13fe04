"""Schedule persistence, including the dispatch claim protocol.

Claiming is a single conditional UPDATE: a dispatcher owns a due
schedule only if its statement matched the row while ``next_run_at`` was
still due and no unexpired claim existed. Two dispatchers racing on the
same occurrence therefore cannot both win.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.schedule import Schedule
from services.base import BaseService

logger = logging.getLogger(__name__)


class ScheduleStore(BaseService[Schedule]):
    """CRUD and due-queries for schedules."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(Schedule, session_factory)

    async def create(self, data: dict[str, Any]) -> str:
        """Persist a schedule whose expression was already validated."""
        schedule = await super().create(data)
        return schedule.id

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        return await self.get_by_id(schedule_id)

    async def delete(self, schedule_id: str) -> None:
        await self.hard_delete(schedule_id)

    async def update_if_unchanged(
        self,
        schedule_id: str,
        expected: Mapping[str, Any],
        values: dict[str, Any],
    ) -> bool:
        """Write ``values`` only if the columns in ``expected`` still hold those values.

        Returns:
            False when the schedule is gone or another writer changed one
            of the expected columns first.
        """
        query = update(Schedule).where(Schedule.id == schedule_id)
        for name, value in expected.items():
            column = getattr(Schedule, name)
            query = query.where(column.is_(None) if value is None else column == value)
        async with self.transaction() as session:
            result = await session.execute(
                query.values(**values).execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def list_for_organization(
        self,
        organization_id: str,
        workflow_id: Optional[str] = None,
    ) -> list[Schedule]:
        """All schedules of a tenant, soonest ``next_run_at`` first."""
        query = select(Schedule).where(Schedule.organization_id == organization_id)
        if workflow_id:
            query = query.where(Schedule.workflow_id == workflow_id)
        query = query.order_by(
            Schedule.next_run_at.is_(None),
            Schedule.next_run_at.asc(),
            Schedule.created_at.asc(),
        )
        async with self.transaction() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_due(self, now: datetime, limit: Optional[int] = None) -> list[Schedule]:
        """Enabled schedules of every tenant with ``next_run_at <= now``.

        Served by the ``(enabled, next_run_at)`` index; read-only.
        """
        query = (
            select(Schedule)
            .where(Schedule.enabled == True)  # noqa: E712
            .where(Schedule.next_run_at != None)  # noqa: E711
            .where(Schedule.next_run_at <= now)
            .order_by(Schedule.next_run_at.asc(), Schedule.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        async with self.transaction() as session:
            return list((await session.execute(query)).scalars().all())

    # ─── Dispatch claims ───────────────────────────────────

    async def claim(self, schedule_id: str, now: datetime, ttl: timedelta) -> Optional[str]:
        """Atomically take ownership of a due schedule.

        Returns:
            The claim token, or None when the schedule is gone, disabled,
            no longer due, or held by an unexpired claim.
        """
        token = uuid4().hex
        async with self.transaction() as session:
            result = await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id)
                .where(Schedule.enabled == True)  # noqa: E712
                .where(Schedule.next_run_at != None)  # noqa: E711
                .where(Schedule.next_run_at <= now)
                .where(or_(Schedule.claimed_until == None, Schedule.claimed_until <= now))  # noqa: E711
                .values(claim_token=token, claimed_until=now + ttl)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return None
        return token

    async def complete_claim(
        self,
        schedule_id: str,
        token: str,
        last_run_at: datetime,
        next_run_at: Optional[datetime],
    ) -> bool:
        """Record a successful dispatch and release the claim.

        If the claim was lost (schedule updated or deleted mid-dispatch),
        only ``last_run_at`` is recorded and ``next_run_at`` is left to
        whoever changed it.

        Returns:
            True if the claim was still held.
        """
        async with self.transaction() as session:
            result = await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id, Schedule.claim_token == token)
                .values(
                    last_run_at=last_run_at,
                    next_run_at=next_run_at,
                    claim_token=None,
                    claimed_until=None,
                    retry_count=0,
                    last_error=None,
                    last_error_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id)
                .values(last_run_at=last_run_at)
                .execution_options(synchronize_session=False)
            )
        logger.warning(f"Claim on schedule {schedule_id} was lost before completion")
        return False

    async def release_claim(
        self,
        schedule_id: str,
        token: str,
        error: str,
        failed_at: datetime,
        retry_at: datetime,
    ) -> bool:
        """Record a failed dispatch; the due occurrence stays pending.

        ``next_run_at`` is untouched and ``claimed_until`` becomes the
        earliest retry instant.
        """
        async with self.transaction() as session:
            result = await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id, Schedule.claim_token == token)
                .values(
                    claim_token=None,
                    claimed_until=retry_at,
                    retry_count=Schedule.retry_count + 1,
                    last_error=error[:2000],
                    last_error_at=failed_at,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def disable(self, schedule_id: str) -> None:
        """Turn a schedule off and drop any claim on it."""
        await self.update(
            schedule_id,
            {"enabled": False, "next_run_at": None, "claim_token": None, "claimed_until": None},
        )
