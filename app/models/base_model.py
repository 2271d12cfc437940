"""
Base model with common fields.

All user-owned tables inherit from this to get:
- id (UUID primary key)
- user_id (owner, immutable)
- created_at (when the record was created)
- updated_at (when the record was last modified)
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.utils.time import utc_now


class UserScopedModel(Base):
    """
    Abstract base class for all user-owned models.

    This is not a real table - it's a template that other models inherit from.
    """

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owner as resolved by the upstream identity provider
    user_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Python-side defaults keep values loaded after flush (no expired attributes
    # to lazy-load under asyncio); server defaults cover raw SQL inserts.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        nullable=False,
    )
