from supplychain.schemas.base import BaseResponseSchema, BaseCreateSchema

__all__ = ["BaseResponseSchema", "BaseCreateSchema"]
