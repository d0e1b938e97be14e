"""Named advisory locks with TTL expiry, stored in the ``locks`` table.

Acquisition is a single conditional UPDATE that only matches an expired
row, so two processes racing for the same name can never both succeed.
A busy lock is an ordinary ``False`` result, not an exception.
"""

from __future__ import annotations

import os
import socket
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from src.kaspi_amo.core.database import SessionFactory
from src.kaspi_amo.sync.models import LockModel
from src.kaspi_amo.sync.repository import as_utc, utcnow

logger = structlog.get_logger(__name__)

POLL_LOCK = "poll"
RECONCILE_LOCK = "reconcile"


def default_holder_identity() -> str:
    return f"{os.getpid()}@{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class LockManager:
    """Acquire and release named locks.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        holder_identity: Identity written to held rows. Defaults to
            ``pid@host:<random>``, unique per manager instance.
        clock: Returns the current UTC time, injectable for tests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        holder_identity: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.holder_identity = holder_identity or default_holder_identity()
        self._clock = clock

    async def acquire(self, name: str, ttl: timedelta) -> bool:
        """Try to take lock ``name`` for ``ttl``.

        Returns:
            True if this manager now holds the lock, False if another
            holder's lock has not expired yet.
        """
        if await self._try_update(name, ttl):
            logger.info("lock.acquired", lock=name, ttl_s=int(ttl.total_seconds()))
            return True

        existing = await self._get(name)
        if existing is None:
            acquired = await self._try_insert(name, ttl)
        elif as_utc(existing.locked_until) < self._clock():
            # Expired between our UPDATE and the re-read
            acquired = await self._try_update(name, ttl)
        else:
            acquired = False

        if acquired:
            logger.info("lock.acquired", lock=name, ttl_s=int(ttl.total_seconds()))
        else:
            logger.info(
                "lock.busy",
                lock=name,
                holder=existing.holder_identity if existing else None,
                locked_until=as_utc(existing.locked_until).isoformat() if existing else None,
            )
        return acquired

    async def release(self, name: str) -> None:
        """Expire lock ``name`` if this manager holds it. Safe to call twice."""
        now = self._clock()
        async for session in self._session_factory():
            stmt = (
                update(LockModel)
                .where(
                    LockModel.name == name,
                    LockModel.holder_identity == self.holder_identity,
                )
                .values(locked_until=now - timedelta(seconds=60), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount:
                logger.info("lock.released", lock=name)

    async def _try_update(self, name: str, ttl: timedelta) -> bool:
        now = self._clock()
        async for session in self._session_factory():
            stmt = (
                update(LockModel)
                .where(LockModel.name == name, LockModel.locked_until < now)
                .values(
                    locked_until=now + ttl,
                    holder_identity=self.holder_identity,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def _try_insert(self, name: str, ttl: timedelta) -> bool:
        now = self._clock()
        async for session in self._session_factory():
            session.add(
                LockModel(
                    name=name,
                    locked_until=now + ttl,
                    holder_identity=self.holder_identity,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def _get(self, name: str) -> LockModel | None:
        async for session in self._session_factory():
            result = await session.execute(select(LockModel).where(LockModel.name == name))
            return result.scalar_one_or_none()
