import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from supplychain.api.deps import DB, Actor, Role, require_roles
from supplychain.schemas.history import StatusHistoryResponse
from supplychain.services.status_history_service import StatusHistoryService


router = APIRouter(tags=["Status History"])

ENTITY_TYPES = {"order", "payment", "shipment", "return", "production_order", "purchase_order"}


@router.get("/{entity_type}/{entity_id}", response_model=list[StatusHistoryResponse])
async def get_history(
    entity_type: str,
    entity_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE, Role.SUPPLIER, Role.CARRIER)),
):
    """Status transitions of any tracked entity, oldest first."""
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown entity type '{entity_type}'"
        )
    entries = await StatusHistoryService(db).history(entity_type, entity_id)
    return [StatusHistoryResponse.model_validate(entry) for entry in entries]
