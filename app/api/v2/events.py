"""
Event ingestion endpoint.
"""

from fastapi import APIRouter

from app.api.deps import DbSession, require_workspace
from app.middleware.correlation import bind_workspace
from app.schemas.computed_properties import EventBatchRequest, EventBatchResponse
from app.services.computed_properties import insert_user_events

router = APIRouter()


@router.post("/batch", response_model=EventBatchResponse)
async def post_event_batch(request: EventBatchRequest, db: DbSession):
    """Store identify/track events. Resubmitted message ids are skipped."""
    await require_workspace(db, request.workspace_id)
    with bind_workspace(request.workspace_id):
        accepted, skipped = await insert_user_events(db, request.workspace_id, request.batch)
    return EventBatchResponse(accepted=accepted, skipped=skipped)
