from datetime import datetime
from typing import Optional
from uuid import UUID

from supplychain.schemas.base import BaseResponseSchema


class StatusHistoryResponse(BaseResponseSchema):
    id: int
    entity_type: str
    entity_id: UUID
    old_status: Optional[str] = None
    new_status: str
    changed_by: Optional[UUID] = None
    changed_at: datetime
    note: Optional[str] = None
