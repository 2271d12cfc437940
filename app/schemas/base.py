"""
Base Pydantic schemas with common fields.

These are templates that other schemas inherit from.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Base schema for the external (camelCase) shape.

    Accepts both camelCase and snake_case on input, and reads straight from
    SQLAlchemy models.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class UserScopedRead(CamelModel):
    """
    Base schema for reading user-owned data.

    Includes all the auto-generated fields like id, timestamps, etc.
    """

    id: UUID
    created_at: datetime
    updated_at: datetime
