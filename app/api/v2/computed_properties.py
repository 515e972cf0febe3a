"""
Computed Property API Endpoints

Staleness status per pipeline step and manual recompute triggers.
"""

from typing import Optional

from fastapi import APIRouter, Query

from app.api.deps import DbSession, require_workspace
from app.middleware.correlation import bind_workspace
from app.schemas.computed_properties import (
    ComputeAssignmentsResponse,
    PeriodStatusResponse,
    TriggerRecomputeRequest,
)
from app.services.computed_properties import compute_assignments, get_computed_property_periods

router = APIRouter()


@router.get("/periods", response_model=PeriodStatusResponse)
async def get_periods(
    db: DbSession,
    workspace_id: str = Query(..., min_length=1),
    step: Optional[str] = None,
):
    """Last recompute time and freshness per step."""
    periods = await get_computed_property_periods(db, workspace_id, step=step)
    return PeriodStatusResponse(workspace_id=workspace_id, periods=periods)


@router.post("/trigger-recompute", response_model=ComputeAssignmentsResponse)
async def trigger_recompute(request: TriggerRecomputeRequest, db: DbSession):
    """Run the assignment engine for a workspace now.

    Queues behind any run already in progress for the workspace.
    """
    await require_workspace(db, request.workspace_id)
    with bind_workspace(request.workspace_id):
        result = await compute_assignments(db, request.workspace_id)
    return ComputeAssignmentsResponse(
        workspace_id=result.workspace_id,
        period_start=result.period_start,
        period_end=result.period_end,
        users_evaluated=result.users_evaluated,
        segment_changes=result.segment_changes,
        user_property_changes=result.user_property_changes,
        evaluation_errors=result.evaluation_errors,
    )
