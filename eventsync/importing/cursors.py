"""
Import Cursor Store

Persists the externalized cursor of named import jobs between runs so a
scheduled backfill resumes where the last run stopped.
"""

from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventsync.database.models import ImportCursorRecord
from eventsync.exceptions import ImportCursorError, StorageError
from eventsync.importing.importer import ImportCursor

logger = structlog.get_logger(__name__)


class CursorStore:
    """
    Cursor persistence over the ``import_cursors`` table.

    Example:
        cursors = CursorStore(session_factory)
        cursor = await cursors.load("backfill-2024") or importer.start_cursor(start, end)
        result = await importer.advance(cursor)
        await cursors.save("backfill-2024", result.next_cursor)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], log=None):
        self._session_factory = session_factory
        self.log = log or logger

    async def load(self, job_name: str) -> Optional[ImportCursor]:
        try:
            async with self._session_factory() as session:
                record = await session.get(ImportCursorRecord, job_name)
        except SQLAlchemyError as e:
            raise StorageError("Failed to read import cursor", details={"job": job_name, "error": str(e)}) from e

        if record is None:
            return None
        try:
            return ImportCursor.model_validate(record.payload)
        except ValidationError as e:
            raise ImportCursorError(
                "Stored import cursor is malformed",
                details={"job": job_name, "error": str(e)},
            ) from e

    async def save(self, job_name: str, cursor: ImportCursor) -> None:
        payload = cursor.model_dump(mode="json")
        try:
            async with self._session_factory() as session:
                record = await session.get(ImportCursorRecord, job_name)
                if record is None:
                    session.add(ImportCursorRecord(job_name=job_name, payload=payload))
                else:
                    record.payload = payload
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to save import cursor", details={"job": job_name, "error": str(e)}) from e
        self.log.debug("Import cursor saved", job=job_name, position=cursor.position, source_index=cursor.source_index)

    async def clear(self, job_name: str) -> bool:
        """Forget a job's cursor; returns False when none was stored"""
        try:
            async with self._session_factory() as session:
                record = await session.get(ImportCursorRecord, job_name)
                if record is None:
                    return False
                await session.delete(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to clear import cursor", details={"job": job_name, "error": str(e)}) from e
        self.log.info("Import cursor cleared", job=job_name)
        return True
