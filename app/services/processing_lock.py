"""Row-based processing lock for webhook deliveries.

Mutual exclusion between deliveries of the same submission token comes from
the primary key on ``processing_locks.lock_id``, so it holds across worker
processes. A lock older than the staleness threshold is reclaimed by the
next delivery; a lock-table failure other than a key conflict fails open.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.base import utc_now
from app.models.processing_lock import ProcessingLock

logger = logging.getLogger(__name__)

LOCK_PREFIX = "typeform_"


def lock_id_for_token(token: str) -> str:
    """Build the lock id for a submission token."""
    return f"{LOCK_PREFIX}{token}"


def token_from_lock_id(lock_id: str) -> str:
    """Recover the submission token from a lock id."""
    return lock_id[len(LOCK_PREFIX):] if lock_id.startswith(LOCK_PREFIX) else lock_id


@dataclass
class LockAcquisition:
    """Outcome of an acquisition attempt."""

    acquired: bool
    lock_id: str
    reclaimed: bool = False
    failed_open: bool = False


class ProcessingLockService:
    """Acquire and release per-token processing locks."""

    def __init__(
        self,
        session: AsyncSession,
        stale_after: timedelta | None = None,
    ):
        self.session = session
        self.stale_after = stale_after or timedelta(seconds=settings.lock_stale_after_seconds)

    async def acquire(self, token: str, tracking_id: str) -> LockAcquisition:
        """Try to take the lock for ``token``.

        Insert-if-absent; on key conflict, reclaim only when the existing
        lock is stale (conditional update on its timestamp).
        """
        lock_id = lock_id_for_token(token)
        now = utc_now()

        try:
            await self.session.execute(
                insert(ProcessingLock).values(
                    lock_id=lock_id,
                    tracking_id=tracking_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self.session.commit()
            logger.info(f"Lock acquired: {lock_id} tracking={tracking_id}")
            return LockAcquisition(acquired=True, lock_id=lock_id)
        except IntegrityError:
            await self.session.rollback()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Lock table error for {lock_id}, proceeding without lock: {e}")
            return LockAcquisition(acquired=True, lock_id=lock_id, failed_open=True)

        # Lock exists: reclaim only if it has gone stale
        cutoff = now - self.stale_after
        try:
            result = await self.session.execute(
                update(ProcessingLock)
                .where(
                    ProcessingLock.lock_id == lock_id,
                    ProcessingLock.updated_at < cutoff,
                )
                .values(tracking_id=tracking_id, created_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Lock reclaim error for {lock_id}, proceeding without lock: {e}")
            return LockAcquisition(acquired=True, lock_id=lock_id, failed_open=True)

        if result.rowcount == 1:
            logger.warning(f"Reclaimed stale lock {lock_id} for tracking={tracking_id}")
            return LockAcquisition(acquired=True, lock_id=lock_id, reclaimed=True)

        logger.info(f"Lock {lock_id} is held by another delivery")
        return LockAcquisition(acquired=False, lock_id=lock_id)

    async def release(self, token: str) -> None:
        """Delete the lock row for ``token``. Errors are logged, not raised."""
        lock_id = lock_id_for_token(token)
        try:
            await self.session.execute(
                delete(ProcessingLock)
                .where(ProcessingLock.lock_id == lock_id)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            logger.info(f"Lock released: {lock_id}")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error releasing lock {lock_id}: {e}")

    async def get_lock(self, token: str) -> ProcessingLock | None:
        """Return the current lock row for ``token``, if any."""
        result = await self.session.execute(
            select(ProcessingLock).where(ProcessingLock.lock_id == lock_id_for_token(token))
        )
        return result.scalar_one_or_none()

    async def find_locks_older_than(self, age: timedelta) -> Sequence[ProcessingLock]:
        """Return pipeline locks created before ``now - age``."""
        cutoff = utc_now() - age
        result = await self.session.execute(
            select(ProcessingLock)
            .where(
                ProcessingLock.created_at <= cutoff,
                ProcessingLock.lock_id.startswith(LOCK_PREFIX, autoescape=True),
            )
            .order_by(ProcessingLock.created_at)
        )
        return result.scalars().all()
