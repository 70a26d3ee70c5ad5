import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from recorder_manager.models import Recording

logger = logging.getLogger("recorder_manager.database")


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


class RecordingStore:
    """Reads and writes the recording fields this service owns.

    Each call opens its own session; nothing here spans a transaction across
    a read and the following write.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_status(self, recording_id: str) -> Optional[Tuple[str, Any]]:
        """Return ``(status, errorMetadata)`` or None if the recording does not exist."""
        async with self._session_factory() as db:
            recording = await db.get(Recording, recording_id)
            if recording is None:
                return None
            return recording.status, recording.error_metadata

    async def update(
        self,
        recording_id: str,
        status: Optional[str] = None,
        error_metadata: Optional[Dict[str, Any]] = None,
        file_name: Optional[str] = None,
    ) -> bool:
        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if error_metadata is not None:
            values["error_metadata"] = error_metadata
        if file_name is not None:
            values["file_name"] = file_name
        if not values:
            return False

        async with self._session_factory() as db:
            try:
                result = await db.execute(
                    update(Recording).where(Recording.id == recording_id).values(**values)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return result.rowcount > 0
