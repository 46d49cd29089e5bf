"""
Base schema classes.

Response schemas that read from ORM models inherit BaseResponseSchema so
UUIDs and datetimes serialize the same way everywhere.
"""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """Base for schemas built from ORM objects or service dataclasses."""
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Base for create/input schemas. Unknown fields are ignored."""
    model_config = ConfigDict(extra='ignore')
