"""
FastAPI dependencies for the database session and caller identity.

Box and coach ids come from request.state, populated by TenantMiddleware
from the verified JWT.
"""

import uuid

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.db.engine import get_db_session


async def get_db() -> AsyncSession:
    """Per-request session: committed when the handler returns, rolled back on error."""
    async with get_db_session() as session:
        yield session


def _state_uuid(request: Request, attr: str, detail: str) -> uuid.UUID:
    value = getattr(request.state, attr, None)
    if not value:
        raise HTTPException(status_code=401, detail=detail)
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(status_code=401, detail=detail)


def get_box_id(request: Request) -> uuid.UUID:
    """Extract box_id from request state (set by TenantMiddleware)."""
    return _state_uuid(request, "box_id", "Missing tenant context")


def get_coach_id(request: Request) -> uuid.UUID:
    """Extract the caller's membership id from request state."""
    return _state_uuid(request, "user_id", "Missing user context")
