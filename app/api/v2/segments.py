"""
Segment API Endpoints

Includes:
- Segment upsert and listing
- Manual segment membership updates
- Per-user assignment lookup
- Recently-updated membership feed for trigger consumers
- Bulk CSV export of assignments
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from app.api.deps import DbSession, require_workspace
from app.exceptions import ValidationError, upsert_error_to_exception
from app.schemas.computed_properties import (
    RecentlyUpdatedUsersResponse,
    SegmentListResponse,
    SegmentResponse,
    UpdateManualSegmentMembersRequest,
    UpsertSegmentRequest,
    UpsertValidationError,
)
from app.services.computed_properties import (
    build_segments_file,
    find_all_segment_assignments,
    find_recently_updated_users_in_segment,
    list_segments,
    update_manual_segment_members,
    upsert_segment,
)
from app.services.computed_properties.evaluator import parse_timestamp

router = APIRouter()


@router.put("", response_model=SegmentResponse)
async def put_segment(request: UpsertSegmentRequest, db: DbSession):
    """Create or update a segment. Status follows the entry node kind."""
    await require_workspace(db, request.workspace_id)
    result = await upsert_segment(
        db,
        workspace_id=request.workspace_id,
        name=request.name,
        definition=request.definition,
        segment_id=request.id,
    )
    if isinstance(result, UpsertValidationError):
        raise upsert_error_to_exception(result)
    return result


@router.get("", response_model=SegmentListResponse)
async def get_segments(
    db: DbSession,
    workspace_id: str = Query(..., min_length=1),
    resource_type: Optional[Literal["Declarative", "Manual"]] = None,
):
    """List segments in a workspace."""
    segments = await list_segments(db, workspace_id, resource_type=resource_type)
    return SegmentListResponse(
        items=[SegmentResponse.model_validate(s) for s in segments],
        total=len(segments),
    )


@router.get("/assignments", response_model=dict[str, bool])
async def get_segment_assignments(
    db: DbSession,
    workspace_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
):
    """Current membership per segment name for one user."""
    return await find_all_segment_assignments(db, workspace_id, user_id)


@router.get("/download")
async def download_segments(db: DbSession, workspace_id: str = Query(..., min_length=1)):
    """Export every user's segment and user property assignments as CSV."""
    file_name, content = await build_segments_file(db, workspace_id)
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={file_name}"},
    )


@router.get("/{segment_id}/recently-updated", response_model=RecentlyUpdatedUsersResponse)
async def get_recently_updated_users(
    segment_id: str,
    db: DbSession,
    workspace_id: str = Query(..., min_length=1),
    assigned_since: datetime = Query(..., description="ISO-8601 timestamp or epoch milliseconds"),
    page_size: int = Query(100, ge=1, le=1000),
):
    """Users who entered the segment after assigned_since, oldest first."""
    since = parse_timestamp(assigned_since)
    if since is None:
        raise ValidationError("assigned_since is not a valid timestamp")
    users = await find_recently_updated_users_in_segment(
        db,
        workspace_id=workspace_id,
        segment_id=segment_id,
        assigned_since=since,
        page_size=page_size,
    )
    return RecentlyUpdatedUsersResponse(
        users=users,
        next_assigned_since=users[-1].assigned_at if users else None,
    )


@router.put("/{segment_id}/manual-members", response_model=SegmentResponse)
async def put_manual_segment_members(
    segment_id: str,
    request: UpdateManualSegmentMembersRequest,
    db: DbSession,
):
    """Replace or extend a manual segment's members and bump its version."""
    result = await update_manual_segment_members(
        db,
        workspace_id=request.workspace_id,
        segment_id=segment_id,
        user_ids=request.user_ids,
        append=request.append,
    )
    if isinstance(result, UpsertValidationError):
        raise upsert_error_to_exception(result)
    return result
