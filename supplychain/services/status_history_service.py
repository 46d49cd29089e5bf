"""
Status History Recorder.

Append-only audit trail of status changes. Entries are written inside the
caller's transaction so a transition and its history entry commit together.
"""
import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import StorageUnavailable
from supplychain.models.status_history import StatusHistoryEntry

logger = logging.getLogger(__name__)


class StatusHistoryService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        old_status: Optional[str],
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> StatusHistoryEntry:
        """
        Append one entry and flush it.

        Does not commit. A storage failure is surfaced as StorageUnavailable
        and is not retried; the caller's transaction is expected to roll back.
        """
        entry = StatusHistoryEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            old_status=old_status,
            new_status=new_status,
            changed_by=changed_by,
            note=note,
        )
        self.db.add(entry)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record {entity_type} {entity_id} {old_status} -> {new_status}: {e}")
            raise StorageUnavailable("record_status_history") from e
        return entry

    async def history(self, entity_type: str, entity_id: uuid.UUID) -> List[StatusHistoryEntry]:
        """All transitions of one entity, oldest first."""
        result = await self.db.execute(
            select(StatusHistoryEntry)
            .where(
                StatusHistoryEntry.entity_type == entity_type,
                StatusHistoryEntry.entity_id == entity_id,
            )
            .order_by(StatusHistoryEntry.changed_at, StatusHistoryEntry.id)
        )
        return list(result.scalars().all())
