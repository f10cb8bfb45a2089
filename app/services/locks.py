"""PostgreSQL advisory locks for job mutual exclusion.

Each job type owns one fixed integer key. The lock is session-level and is
held on a dedicated connection for the whole run, so a second trigger of
the same job sees it held and skips instead of waiting.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

# Fixed registry. Never reuse a key for a different job.
LOCK_KEYS: dict[str, int] = {
    "sync": 9001,
    "compute": 9002,
    "sync-live": 9003,
    "compute-markets": 9004,
}

REAP_STALE_SQL = text(
    """
    SELECT pg_terminate_backend(a.pid)
    FROM pg_locks l
    JOIN pg_stat_activity a ON a.pid = l.pid
    WHERE l.locktype = 'advisory'
      AND l.objid = :key
      AND a.state = 'idle'
      AND a.pid <> pg_backend_pid()
      AND a.query_start < now() - make_interval(secs => :stale_seconds)
    """
)


class AdvisoryLocks:
    """Non-blocking advisory locks with a stale-holder reaper."""

    def __init__(self, engine: AsyncEngine, stale_seconds: int = 120):
        self.engine = engine
        self.stale_seconds = stale_seconds

    async def _reap_stale(self, conn, key: int) -> None:
        """Terminate idle sessions that have sat on this lock too long. Best effort."""
        try:
            result = await conn.execute(
                REAP_STALE_SQL, {"key": key, "stale_seconds": self.stale_seconds}
            )
            reaped = len(result.all())
            if reaped:
                logger.warning("stale_lock_holders_terminated", key=key, sessions=reaped)
        except SQLAlchemyError as e:
            logger.warning("stale_lock_reap_failed", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: int) -> AsyncIterator[bool]:
        """
        Try to take the lock without waiting.

        Yields True if acquired. The lock is released on exit whatever
        happens inside the block.
        """
        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await self._reap_stale(conn, key)
            locked = bool(
                await conn.scalar(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
            )
            try:
                yield locked
            finally:
                if locked:
                    try:
                        await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    except SQLAlchemyError as e:
                        # Drop the connection from the pool; its session ends with it.
                        logger.error("advisory_unlock_failed", key=key, error=str(e))
                        await conn.invalidate()
