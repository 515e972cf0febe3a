"""
Tests for the computed property API endpoints (/api/v2/computed-properties)
and user property endpoints (/api/v2/user-properties).
"""

from datetime import datetime
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user_event import UserEvent
from app.models.workspace import Workspace
from tests.factories import IdentifyEventFactory, trait_definition

PREFIX = "/api/v2/computed-properties"
USER_PROPERTIES_PREFIX = "/api/v2/user-properties"


class TestPeriods:
    @pytest.mark.asyncio
    async def test_not_computed_before_first_run(self, client: AsyncClient, workspace: Workspace):
        response = await client.get(
            f"{PREFIX}/periods",
            params={"workspace_id": workspace.id, "step": "ComputeAssignments"},
        )

        assert response.status_code == 200
        periods = response.json()["periods"]
        assert periods == [
            {
                "step": "ComputeAssignments",
                "period_start": None,
                "period_end": None,
                "last_recomputed": None,
                "freshness": "not_computed",
            }
        ]

    @pytest.mark.asyncio
    async def test_trigger_recompute_then_up_to_date(
        self, client: AsyncClient, test_db: AsyncSession, workspace: Workspace
    ):
        workspace_id = workspace.id
        await client.put(
            "/api/v2/segments",
            json={"workspace_id": workspace_id, "name": "testers", "definition": trait_definition()},
        )
        now = datetime.utcnow()
        test_db.add(UserEvent(**IdentifyEventFactory(
            workspace_id=workspace_id, user_id="u1", traits={"name": "test"},
            event_time=now, processing_time=now,
        )))
        await test_db.commit()

        triggered = await client.post(f"{PREFIX}/trigger-recompute", json={"workspace_id": workspace_id})
        assert triggered.status_code == 200
        assert triggered.json()["segment_changes"] == 1
        assert triggered.json()["period_start"] is None

        response = await client.get(f"{PREFIX}/periods", params={"workspace_id": workspace_id})
        periods = response.json()["periods"]
        assert len(periods) == 1
        assert periods[0]["freshness"] == "up_to_date"

    @pytest.mark.asyncio
    async def test_trigger_unknown_workspace_is_404(self, client: AsyncClient):
        response = await client.post(f"{PREFIX}/trigger-recompute", json={"workspace_id": "missing"})

        assert response.status_code == 404
        assert response.headers["content-type"].startswith("application/problem+json")


class TestUserPropertiesApi:
    @pytest.mark.asyncio
    async def test_upsert_and_list(self, client: AsyncClient, workspace: Workspace):
        response = await client.put(
            USER_PROPERTIES_PREFIX,
            json={"workspace_id": workspace.id, "name": "email", "definition": {"type": "Trait", "path": "email"}},
        )
        assert response.status_code == 200
        assert response.json()["definition"]["type"] == "Trait"

        listed = await client.get(USER_PROPERTIES_PREFIX, params={"workspace_id": workspace.id})
        assert listed.json()["total"] == 1
        assert listed.json()["items"][0]["name"] == "email"

    @pytest.mark.asyncio
    async def test_invalid_definition_is_422(self, client: AsyncClient, workspace: Workspace):
        response = await client.put(
            USER_PROPERTIES_PREFIX,
            json={"workspace_id": workspace.id, "name": "bad", "definition": {"type": "Nope"}},
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VAL_002"

    @pytest.mark.asyncio
    async def test_assignments_after_recompute(
        self, client: AsyncClient, test_db: AsyncSession, workspace: Workspace
    ):
        workspace_id = workspace.id
        await client.put(
            USER_PROPERTIES_PREFIX,
            json={"workspace_id": workspace_id, "name": "plan", "definition": {"type": "Trait", "path": "plan"}},
        )
        now = datetime.utcnow()
        test_db.add(UserEvent(**IdentifyEventFactory(
            workspace_id=workspace_id, user_id="u1", traits={"plan": "pro"},
            event_time=now, processing_time=now,
        )))
        await test_db.commit()
        await client.post(f"{PREFIX}/trigger-recompute", json={"workspace_id": workspace_id})

        response = await client.get(
            f"{USER_PROPERTIES_PREFIX}/assignments", params={"workspace_id": workspace_id, "user_id": "u1"}
        )

        assert response.json() == {"plan": "pro"}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient, test_engine):
        with patch("app.main.engine", test_engine):
            response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "ok"
        assert body["scheduler"] == "stopped"
