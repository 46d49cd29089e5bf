"""Conditional status writes shared by every stateful entity."""
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value


async def current_status(db: AsyncSession, entity: Any) -> Optional[str]:
    """The status stored in the database, ignoring the loaded object."""
    model = type(entity)
    return await db.scalar(select(model.status).where(model.id == entity.id))


async def write_status(
    db: AsyncSession,
    entity: Any,
    expected_status: str,
    values: Dict[str, Any],
) -> bool:
    """
    Write `values` (which include the new status) onto the entity's row,
    matching only while its status is still `expected_status`.

    Does not commit. Returns False when another writer moved the row first;
    the loaded object is left untouched in that case.
    """
    model = type(entity)
    result = await db.execute(
        update(model)
        .where(model.id == entity.id, model.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    # Keep the loaded object in step without marking it dirty
    for key, value in values.items():
        set_committed_value(entity, key, value)
    return True
