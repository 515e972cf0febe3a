"""
User Property API Endpoints
"""

from typing import Any

from fastapi import APIRouter, Query

from app.api.deps import DbSession, require_workspace
from app.exceptions import upsert_error_to_exception
from app.schemas.computed_properties import (
    UpsertUserPropertyRequest,
    UpsertValidationError,
    UserPropertyListResponse,
    UserPropertyResponse,
)
from app.services.computed_properties import (
    find_all_user_property_assignments,
    list_user_properties,
    upsert_user_property,
)

router = APIRouter()


@router.put("", response_model=UserPropertyResponse)
async def put_user_property(request: UpsertUserPropertyRequest, db: DbSession):
    await require_workspace(db, request.workspace_id)
    result = await upsert_user_property(
        db,
        workspace_id=request.workspace_id,
        name=request.name,
        definition=request.definition,
        user_property_id=request.id,
    )
    if isinstance(result, UpsertValidationError):
        raise upsert_error_to_exception(result)
    return result


@router.get("", response_model=UserPropertyListResponse)
async def get_user_properties(db: DbSession, workspace_id: str = Query(..., min_length=1)):
    user_properties = await list_user_properties(db, workspace_id)
    return UserPropertyListResponse(
        items=[UserPropertyResponse.model_validate(p) for p in user_properties],
        total=len(user_properties),
    )


@router.get("/assignments", response_model=dict[str, Any])
async def get_user_property_assignments(
    db: DbSession,
    workspace_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
):
    """Current value per user property name for one user."""
    return await find_all_user_property_assignments(db, workspace_id, user_id)
