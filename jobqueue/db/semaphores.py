"""
Semaphore repository.
Implements the per-key concurrency slots shared by every process through the
semaphores table.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import Insert, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.db.models import ClaimedExecution, Job, ReadyExecution, Semaphore

logger = logging.getLogger(__name__)


class SemaphoreRepository:
    """
    Repository for concurrency semaphores.

    Every mutation is a single conditional UPDATE (or an INSERT that ignores
    conflicts), so two processes racing on the last free slot of a key produce
    exactly one winner under READ COMMITTED on PostgreSQL and under the
    IMMEDIATE transactions used on SQLite.
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            clock: Source of the current time. Defaults to UTC wall clock.
        """
        self._session = session
        self._clock = clock or utc_now

    async def get(self, key: str) -> Semaphore | None:
        """
        Get the semaphore for a concurrency key.

        Args:
            key: The concurrency key.

        Returns:
            The Semaphore or None if the key has never been acquired.
        """
        stmt = (
            select(Semaphore)
            .where(Semaphore.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_acquire(self, key: str, limit: int, duration: timedelta) -> bool:
        """
        Take one slot of the key's semaphore.

        Creates the semaphore with `limit` slots on first use. A semaphore with
        no free slots whose lease has run out is assumed to belong to crashed
        holders and is reset, handing one of the reclaimed slots to the caller.

        Args:
            key: The concurrency key.
            limit: Slots for the key, used only when the semaphore is created.
            duration: Lease duration granted to the acquired slot.

        Returns:
            True if a slot was acquired.
        """
        now = self._clock()
        expires_at = now + duration

        if await self._attempt_creation(key, limit, expires_at, now):
            return True

        decrement = (
            update(Semaphore)
            .where(Semaphore.key == key, Semaphore.value > 0)
            .values(value=Semaphore.value - 1, expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(decrement)
        if result.rowcount == 1:
            return True

        reclaim = (
            update(Semaphore)
            .where(
                Semaphore.key == key,
                Semaphore.value == 0,
                or_(Semaphore.expires_at.is_(None), Semaphore.expires_at < now),
            )
            .values(value=Semaphore.limit - 1, expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(reclaim)
        if result.rowcount == 1:
            logger.info(
                "Reclaimed expired semaphore lease",
                extra={"concurrency_key": key},
            )
            return True

        return False

    async def release(self, key: str) -> bool:
        """
        Return one slot to the key's semaphore.

        The value is never raised above the semaphore's limit. Afterwards the
        lease expiry is cleared if every slot is free, otherwise it becomes the
        soonest lease among jobs that still hold a slot.

        Callers must remove or clear the releasing job's own lease first so it
        is not counted as a remaining holder.

        Args:
            key: The concurrency key.

        Returns:
            True if a slot was returned, False if the semaphore was missing or
            already fully free.
        """
        now = self._clock()

        increment = (
            update(Semaphore)
            .where(Semaphore.key == key, Semaphore.value < Semaphore.limit)
            .values(value=Semaphore.value + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(increment)
        released = result.rowcount == 1

        row = (
            await self._session.execute(
                select(Semaphore.value, Semaphore.limit).where(Semaphore.key == key)
            )
        ).one_or_none()
        if row is None:
            return False

        if row.value >= row.limit:
            expires_at = None
        else:
            expires_at = await self._soonest_remaining_lease(key)

        await self._session.execute(
            update(Semaphore)
            .where(Semaphore.key == key)
            .values(expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )

        if not released:
            logger.debug(
                "Semaphore already fully released",
                extra={"concurrency_key": key},
            )

        return released

    async def release_expired(self, batch_size: int = 500) -> list[str]:
        """
        Free every slot of semaphores whose lease has run out.

        Used by maintenance to recover keys whose holders crashed, without
        waiting for the next acquisition attempt.

        Args:
            batch_size: Maximum number of semaphores to reset.

        Returns:
            The concurrency keys that were reset.
        """
        now = self._clock()

        stmt = (
            select(Semaphore)
            .where(
                Semaphore.value < Semaphore.limit,
                or_(Semaphore.expires_at.is_(None), Semaphore.expires_at < now),
            )
            .order_by(Semaphore.expires_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        semaphores = (await self._session.execute(stmt)).scalars().all()

        keys = []
        for semaphore in semaphores:
            overdue = now - semaphore.expires_at if semaphore.expires_at else None
            logger.warning(
                "Releasing expired semaphore",
                extra={
                    "concurrency_key": semaphore.key,
                    "held_slots": semaphore.limit - semaphore.value,
                    "overdue_seconds": overdue.total_seconds() if overdue else None,
                },
            )
            keys.append(semaphore.key)

        if keys:
            await self._session.execute(
                update(Semaphore)
                .where(Semaphore.key.in_(keys))
                .values(value=Semaphore.limit, expires_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )

        return keys

    async def _attempt_creation(
        self,
        key: str,
        limit: int,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """
        Create the semaphore with one slot already taken.

        Returns:
            True if this call created the row.
        """
        values = {
            "key": key,
            "value": limit - 1,
            "limit": limit,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }

        stmt = self._insert_ignoring_conflicts(values)
        if stmt is not None:
            result = await self._session.execute(stmt)
            return result.scalar_one_or_none() is not None

        # Dialects without ON CONFLICT: look first, then rely on the unique key
        if await self.get(key) is not None:
            return False
        try:
            async with self._session.begin_nested():
                self._session.add(Semaphore(**values))
        except IntegrityError:
            return False
        return True

    def _insert_ignoring_conflicts(self, values: dict) -> Insert | None:
        """INSERT ... ON CONFLICT (key) DO NOTHING RETURNING id, where supported."""
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            return None

        return (
            insert(Semaphore)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["key"])
            .returning(Semaphore.id)
        )

    async def _soonest_remaining_lease(self, key: str) -> datetime | None:
        """Earliest lease expiry among jobs of the key holding a slot."""
        holders = or_(
            Job.id.in_(select(ReadyExecution.job_id)),
            Job.id.in_(select(ClaimedExecution.job_id)),
        )
        stmt = select(func.min(Job.lease_expires_at)).where(
            Job.concurrency_key == key,
            Job.lease_expires_at.is_not(None),
            holders,
        )
        result = await self._session.execute(stmt)
        return result.scalar()
