"""
FastAPI dependencies for the application.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from app.db.session import get_db
from app.errors import AuthenticationError

__all__ = ["Principal", "get_current_principal", "get_db"]


@dataclass(frozen=True)
class Principal:
    """Identity resolved by the upstream gateway."""

    user_id: str
    tier: str = "free"


async def get_current_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_tier: Optional[str] = Header(None),
) -> Principal:
    """
    Read the resolved user from X-User-Id / X-User-Tier.

    Raises 401 if X-User-Id is missing. A missing tier means "free".
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("X-User-Id header is required")
    tier = (x_user_tier or "").strip().lower() or "free"
    return Principal(user_id=user_id[:100], tier=tier)
