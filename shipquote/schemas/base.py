"""
Base Schema Classes for Pydantic Models

RULE: All schemas that read from ORM models MUST inherit from BaseResponseSchema.
"""
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - Serializes UUIDs as strings and datetimes as ISO strings in JSON
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class StrictSchema(BaseModel):
    """Schema that rejects unknown fields, used for tagged rule variants."""
    model_config = ConfigDict(extra="forbid", frozen=True)
