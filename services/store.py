import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class Store:
    """
    Repository seam shared by every engine component.

    Wraps an AsyncSession factory (any SQLAlchemy-supported database) and
    serializes writes: one writer transaction at a time, committed on success
    and rolled back on any error. Nothing inside a writer block may open
    another writer (the lock is not re-entrant).
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def writer(self):
        async with self._write_lock:
            async with self.session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    def reader(self):
        return self.session_factory()
