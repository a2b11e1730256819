"""
System-wide build lock.

Only the holder of the lock may dequeue and process a deployment. On
PostgreSQL the lock is a session-level advisory lock held on a dedicated
connection, so it is shared by every worker process against the same
database and disappears with the connection if a worker dies.

The same property means a holder whose lock connection drops mid-build
silently loses the lock, and another worker may then fail its deployment as
orphaned. Holders call `check()` before acting on their claim again.
"""
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from shipyard.core.config import settings
from shipyard.core.exceptions import DatabaseError

logger = logging.getLogger(__name__)


def build_lock_key(name: str) -> int:
    """
    Derive a deterministic advisory lock key from a resource name.

    Args:
        name: Lock resource name (e.g. "build")

    Returns:
        Signed 64-bit key for pg_try_advisory_lock(bigint)
    """
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[0:8], byteorder="big", signed=True)


class AdvisoryBuildLock:
    """Non-blocking PostgreSQL advisory lock keyed to a named resource."""

    def __init__(self, engine: Optional[AsyncEngine] = None, name: Optional[str] = None):
        if engine is None:
            from shipyard.core.database import engine as default_engine
            engine = default_engine
        self._engine = engine
        self.name = name or settings.BUILD_LOCK_NAME
        self.key = build_lock_key(self.name)
        self._conn = None

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """
        Try to take the lock for the duration of the block.

        Yields:
            True if this caller holds the lock, False if another holder has it

        Raises:
            DatabaseError: If the database cannot be reached
        """
        try:
            conn = await self._engine.connect()
        except SQLAlchemyError as e:
            raise DatabaseError("acquire_build_lock", str(e)) from e

        acquired = False
        try:
            try:
                result = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:key) AS lock_acquired"),
                    {"key": self.key},
                )
                acquired = bool(result.scalar())
                await conn.commit()
            except SQLAlchemyError as e:
                raise DatabaseError("acquire_build_lock", str(e)) from e

            if acquired:
                logger.debug(f"Acquired build lock '{self.name}' ({self.key})")
                self._conn = conn
            yield acquired
        finally:
            self._conn = None
            if acquired:
                await self._release(conn)
            await conn.close()

    async def check(self) -> bool:
        """
        Confirm the connection holding the lock is still open.

        Returns:
            False if the lock is not held or its connection was lost
        """
        if self._conn is None:
            return False
        try:
            await self._conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Build lock '{self.name}' connection lost: {e}")
            return False

    async def _release(self, conn) -> None:
        try:
            await conn.execute(
                text("SELECT pg_advisory_unlock(:key)"),
                {"key": self.key},
            )
            await conn.commit()
            logger.debug(f"Released build lock '{self.name}'")
        except SQLAlchemyError as e:
            # Dropping the server session releases every lock it holds
            logger.error(f"Failed to release build lock '{self.name}', invalidating connection: {e}")
            await conn.invalidate()


class InMemoryBuildLock:
    """
    Process-local stand-in for the advisory lock.

    Engines sharing one instance contend for it exactly like workers sharing a
    database. Used when the database has no advisory locks (e.g. SQLite).
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name or settings.BUILD_LOCK_NAME
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        if self._held:
            yield False
            return

        self._held = True
        try:
            yield True
        finally:
            self._held = False

    async def check(self) -> bool:
        # A process-local lock cannot be lost while its holder runs
        return True


def build_lock_for(engine: AsyncEngine, name: Optional[str] = None):
    """Pick the lock implementation the database supports."""
    if engine.dialect.name == "postgresql":
        return AdvisoryBuildLock(engine, name)
    logger.warning(
        f"Database dialect '{engine.dialect.name}' has no advisory locks; "
        "using a process-local build lock (single worker only)"
    )
    return InMemoryBuildLock(name)
