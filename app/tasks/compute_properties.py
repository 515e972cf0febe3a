"""Computed Properties Scheduler - periodic incremental assignment runs.

Every COMPUTE_PROPERTIES_INTERVAL_SECONDS the scheduler runs the assignment
engine for every workspace. Workspaces run concurrently, each with its own
session. A failed workspace is logged and retried from the same watermark on
the next tick.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from app.config import settings
from app.database import async_session_maker
from app.middleware.correlation import bind_workspace
from app.models.workspace import Workspace
from app.services.computed_properties import ComputeAssignmentsResult, compute_assignments

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


async def compute_workspace(workspace_id: str) -> Optional[ComputeAssignmentsResult]:
    """Run one workspace in its own session. Returns None on failure."""
    try:
        with bind_workspace(workspace_id):
            async with async_session_maker() as db:
                return await compute_assignments(db, workspace_id)
    except Exception as e:
        logger.error(f"Compute assignments failed for workspace {workspace_id}: {e}", exc_info=True)
        return None


async def compute_all_workspaces() -> dict:
    """
    Main job: run the assignment engine for every workspace.

    Returns counts of workspaces processed and failed.
    """
    async with async_session_maker() as db:
        result = await db.execute(select(Workspace.id).order_by(Workspace.id))
        workspace_ids = list(result.scalars().all())

    if not workspace_ids:
        return {"workspaces": 0, "failed": 0}

    results = await asyncio.gather(*(compute_workspace(w) for w in workspace_ids))
    failed = sum(1 for r in results if r is None)
    if failed:
        logger.warning(f"Compute assignments tick finished with {failed}/{len(workspace_ids)} failed workspaces")
    else:
        logger.debug(f"Compute assignments tick finished for {len(workspace_ids)} workspaces")
    return {"workspaces": len(workspace_ids), "failed": failed}


def start_compute_properties_scheduler():
    """Start the compute properties scheduler."""
    global scheduler

    scheduler = get_scheduler()

    # Overlapping ticks are coalesced into one run
    scheduler.add_job(
        compute_all_workspaces,
        IntervalTrigger(seconds=settings.COMPUTE_PROPERTIES_INTERVAL_SECONDS),
        id="compute_properties",
        name="Compute segment and user property assignments",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info(
            f"Compute properties scheduler started (every {settings.COMPUTE_PROPERTIES_INTERVAL_SECONDS}s)"
        )


def stop_compute_properties_scheduler():
    """Stop the compute properties scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Compute properties scheduler stopped")


async def run_compute_now():
    """Manually trigger a compute run for all workspaces (for testing/admin use)."""
    logger.info("Manual compute properties run triggered")
    summary = await compute_all_workspaces()
    return {"status": "completed", **summary}
