"""
Tests for the compute properties scheduler.

Tests the periodic job that runs the assignment engine for every workspace.
"""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.models.assignment import SegmentAssignment
from app.models.user_event import UserEvent
from app.models.workspace import Workspace
from app.services.computed_properties import compute_assignments, upsert_segment
from app.tasks.compute_properties import (
    compute_all_workspaces,
    compute_workspace,
    get_scheduler,
    run_compute_now,
)
from tests.factories import IdentifyEventFactory, trait_definition


class TestSchedulerSetup:
    """Tests for scheduler initialization."""

    def test_get_scheduler_returns_scheduler(self):
        scheduler = get_scheduler()
        assert scheduler is not None

    def test_get_scheduler_singleton(self):
        scheduler1 = get_scheduler()
        scheduler2 = get_scheduler()
        assert scheduler1 is scheduler2


class TestComputeAllWorkspaces:
    @pytest.mark.asyncio
    async def test_runs_every_workspace(self, session_factory, workspace: Workspace, other_workspace: Workspace):
        workspace_id = workspace.id
        async with session_factory() as db:
            segment = await upsert_segment(db, workspace_id, "testers", trait_definition())
            segment_id = segment.id
            now = datetime.utcnow()
            db.add(UserEvent(**IdentifyEventFactory(
                workspace_id=workspace_id, user_id="u1", traits={"name": "test"},
                event_time=now, processing_time=now,
            )))
            await db.commit()

        with patch("app.tasks.compute_properties.async_session_maker", session_factory):
            summary = await compute_all_workspaces()

        assert summary == {"workspaces": 2, "failed": 0}
        async with session_factory() as db:
            rows = (
                await db.execute(select(SegmentAssignment).where(SegmentAssignment.segment_id == segment_id))
            ).scalars().all()
        assert [(r.user_id, r.in_segment) for r in rows] == [("u1", True)]

    @pytest.mark.asyncio
    async def test_failed_workspace_is_counted_not_raised(
        self, session_factory, workspace: Workspace, other_workspace: Workspace
    ):
        failing_id = workspace.id
        real_compute = compute_assignments

        async def flaky(db, workspace_id, *args, **kwargs):
            if workspace_id == failing_id:
                raise RuntimeError("database went away")
            return await real_compute(db, workspace_id, *args, **kwargs)

        with patch("app.tasks.compute_properties.async_session_maker", session_factory), \
                patch("app.tasks.compute_properties.compute_assignments", side_effect=flaky):
            summary = await compute_all_workspaces()

        assert summary == {"workspaces": 2, "failed": 1}

    @pytest.mark.asyncio
    async def test_no_workspaces(self, session_factory):
        with patch("app.tasks.compute_properties.async_session_maker", session_factory):
            summary = await compute_all_workspaces()

        assert summary == {"workspaces": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_compute_workspace_returns_none_on_error(self, session_factory):
        with patch("app.tasks.compute_properties.async_session_maker", session_factory), \
                patch(
                    "app.tasks.compute_properties.compute_assignments",
                    AsyncMock(side_effect=RuntimeError("boom")),
                ):
            assert await compute_workspace("ws") is None

    @pytest.mark.asyncio
    async def test_run_compute_now(self):
        with patch(
            "app.tasks.compute_properties.compute_all_workspaces",
            AsyncMock(return_value={"workspaces": 3, "failed": 0}),
        ):
            result = await run_compute_now()

        assert result == {"status": "completed", "workspaces": 3, "failed": 0}
