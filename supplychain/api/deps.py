"""
Request dependencies: database session and caller identity.

Authentication happens upstream. The gateway forwards the authenticated
user as opaque headers, X-User-Id and X-User-Role, which are trusted here.
"""
from dataclasses import dataclass
from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.database import get_db


logger = logging.getLogger(__name__)


class Role:
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    WAREHOUSE = "warehouse"
    CARRIER = "carrier"
    ADMIN = "admin"

    @classmethod
    def all(cls) -> set:
        return {cls.CUSTOMER, cls.SUPPLIER, cls.WAREHOUSE, cls.CARRIER, cls.ADMIN}


@dataclass(frozen=True)
class Actor:
    """The authenticated caller."""
    user_id: uuid.UUID
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


async def get_current_actor(
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """Resolve the caller from the forwarded identity headers."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        logger.warning(f"Invalid X-User-Id header: {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header",
        )

    role = (x_user_role or Role.CUSTOMER).strip().lower()
    if role not in Role.all():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role '{role}'",
        )
    return Actor(user_id=user_id, role=role)


def require_roles(*roles: str):
    """
    Dependency factory to require one of the given roles. Admin always passes.

    Usage:
        @router.post("/", dependencies=[Depends(require_roles(Role.WAREHOUSE))])
        async def adjust_stock():
            ...
    """
    async def role_dependency(
        actor: Annotated[Actor, Depends(get_current_actor)]
    ) -> Actor:
        if actor.is_admin or actor.role in roles:
            return actor
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied. Required role: {', '.join(roles)}"
        )

    return role_dependency


# Type aliases for dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def conflict(error) -> HTTPException:
    """409 carrying a business error (or list of them) as structured detail."""
    errors = error if isinstance(error, list) else [error]
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=jsonable_encoder({
            "message": "; ".join(e.message for e in errors),
            "errors": [e.to_dict() for e in errors],
        }),
    )
