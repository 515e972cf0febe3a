"""
FastAPI Dependencies

Provides dependency injection for database sessions.
"""

from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.exceptions import NotFoundError
from app.models.workspace import Workspace

# Type alias for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]


async def require_workspace(db: AsyncSession, workspace_id: str) -> Workspace:
    """Load a workspace or raise a 404 problem."""
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace", workspace_id)
    return workspace
