"""
Tests for the segment service

Tests upserts and the status state machine, name/id uniqueness, manual
membership updates, and the query/export read paths.
"""

import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.computed_property import ComputedPropertyAssignment
from app.models.manual_segment import ManualSegmentMember
from app.models.segment import Segment, SegmentStatus, UserProperty
from app.models.workspace import Workspace
from app.schemas.computed_properties import UpsertValidationError, UpsertValidationErrorType
from app.services.computed_properties.segments import (
    build_segments_file,
    find_all_segment_assignments,
    find_recently_updated_users_in_segment,
    insert_segment_assignments,
    list_segments,
    update_manual_segment_members,
    upsert_segment,
)
from app.services.computed_properties.user_properties import insert_user_property_assignments
from tests.factories import manual_definition, trait_definition


# ============================================
# Fixtures
# ============================================


@pytest_asyncio.fixture
async def trait_segment(test_db: AsyncSession, workspace: Workspace) -> Segment:
    """A rule-driven segment named "test"."""
    segment = await upsert_segment(test_db, workspace.id, "test", trait_definition())
    assert isinstance(segment, Segment)
    return segment


@pytest_asyncio.fixture
async def identifier_properties(test_db: AsyncSession, workspace: Workspace) -> list[UserProperty]:
    properties = [
        UserProperty(id=str(uuid.uuid4()), workspace_id=workspace.id, name="id", definition={"type": "Id"}),
        UserProperty(
            id=str(uuid.uuid4()), workspace_id=workspace.id, name="email",
            definition={"type": "Trait", "path": "email"},
        ),
        UserProperty(
            id=str(uuid.uuid4()), workspace_id=workspace.id, name="phone",
            definition={"type": "Trait", "path": "phone"},
        ),
    ]
    test_db.add_all(properties)
    await test_db.commit()
    return properties


# ============================================
# Upsert
# ============================================


class TestUpsertSegment:
    """Tests for upsert_segment."""

    @pytest.mark.asyncio
    async def test_rename_in_place(self, test_db: AsyncSession, workspace: Workspace):
        segment_id = str(uuid.uuid4())
        definition = trait_definition()

        segment = await upsert_segment(test_db, workspace.id, "test1", definition, segment_id=segment_id)
        assert segment.name == "test1"

        updated = await upsert_segment(test_db, workspace.id, "test2", definition, segment_id=segment_id)
        assert updated.id == segment_id
        assert updated.name == "test2"

    @pytest.mark.asyncio
    async def test_id_reused_in_second_workspace(
        self, test_db: AsyncSession, workspace: Workspace, other_workspace: Workspace
    ):
        segment_id = str(uuid.uuid4())
        first = await upsert_segment(test_db, workspace.id, str(uuid.uuid4()), trait_definition(), segment_id)
        assert isinstance(first, Segment)

        second = await upsert_segment(
            test_db, other_workspace.id, str(uuid.uuid4()), trait_definition(), segment_id
        )
        assert isinstance(second, UpsertValidationError)
        assert second.type == UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION

    @pytest.mark.asyncio
    async def test_name_taken_by_another_id(self, test_db: AsyncSession, workspace: Workspace):
        await upsert_segment(test_db, workspace.id, "vip", trait_definition())
        result = await upsert_segment(test_db, workspace.id, "vip", trait_definition())

        assert isinstance(result, UpsertValidationError)
        assert result.type == UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION

    @pytest.mark.asyncio
    async def test_same_name_in_other_workspace_is_allowed(
        self, test_db: AsyncSession, workspace: Workspace, other_workspace: Workspace
    ):
        await upsert_segment(test_db, workspace.id, "vip", trait_definition())
        result = await upsert_segment(test_db, other_workspace.id, "vip", trait_definition())
        assert isinstance(result, Segment)

    @pytest.mark.asyncio
    async def test_invalid_definition_is_returned(self, test_db: AsyncSession, workspace: Workspace):
        result = await upsert_segment(
            test_db, workspace.id, "broken",
            {"entry_node": {"id": "root", "type": "Not", "child": "missing"}, "nodes": []},
        )
        assert isinstance(result, UpsertValidationError)
        assert result.type == UpsertValidationErrorType.INVALID_DEFINITION
        assert result.details[0]["type"] == "DanglingReference"

        count = await test_db.execute(select(Segment).where(Segment.workspace_id == workspace.id))
        assert count.scalars().all() == []

    @pytest.mark.asyncio
    async def test_new_rule_segment_is_running(self, trait_segment: Segment):
        assert trait_segment.status == SegmentStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_new_manual_segment_is_not_started(self, test_db: AsyncSession, workspace: Workspace):
        segment = await upsert_segment(test_db, workspace.id, "manual", manual_definition(version=1))
        assert segment.status == SegmentStatus.NOT_STARTED.value

    @pytest.mark.asyncio
    async def test_manual_to_rule_sets_running(self, test_db: AsyncSession, workspace: Workspace):
        segment_id = str(uuid.uuid4())
        await upsert_segment(test_db, workspace.id, "test", manual_definition(version=1), segment_id)

        segment = await upsert_segment(test_db, workspace.id, "test", trait_definition(), segment_id)
        assert segment.status == SegmentStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_rule_to_manual_sets_not_started(self, test_db: AsyncSession, workspace: Workspace):
        segment_id = str(uuid.uuid4())
        await upsert_segment(test_db, workspace.id, "test", trait_definition(), segment_id)

        segment = await upsert_segment(test_db, workspace.id, "test", manual_definition(version=1), segment_id)
        assert segment.status == SegmentStatus.NOT_STARTED.value

    @pytest.mark.asyncio
    async def test_definition_updated_at_only_moves_on_change(self, test_db: AsyncSession, workspace: Workspace):
        segment_id = str(uuid.uuid4())
        definition = trait_definition()
        first = await upsert_segment(test_db, workspace.id, "a", definition, segment_id)
        stamp = first.definition_updated_at

        renamed = await upsert_segment(test_db, workspace.id, "b", definition, segment_id)
        assert renamed.definition_updated_at == stamp

        changed = await upsert_segment(test_db, workspace.id, "b", trait_definition(value="other"), segment_id)
        assert changed.definition_updated_at >= stamp
        assert changed.definition["entry_node"]["operator"]["value"] == "other"


class TestListSegments:
    @pytest.mark.asyncio
    async def test_filters_by_resource_type(self, test_db: AsyncSession, workspace: Workspace):
        await upsert_segment(test_db, workspace.id, "rule", trait_definition())
        await upsert_segment(test_db, workspace.id, "manual", manual_definition())

        assert [s.name for s in await list_segments(test_db, workspace.id)] == ["manual", "rule"]
        assert [s.name for s in await list_segments(test_db, workspace.id, "Manual")] == ["manual"]
        assert [s.name for s in await list_segments(test_db, workspace.id, "Declarative")] == ["rule"]

    @pytest.mark.asyncio
    async def test_scoped_to_workspace(
        self, test_db: AsyncSession, workspace: Workspace, other_workspace: Workspace
    ):
        await upsert_segment(test_db, workspace.id, "mine", trait_definition())
        assert await list_segments(test_db, other_workspace.id) == []


# ============================================
# Manual membership
# ============================================


class TestUpdateManualSegmentMembers:
    @pytest.mark.asyncio
    async def test_replace_bumps_version(self, test_db: AsyncSession, workspace: Workspace):
        segment = await upsert_segment(test_db, workspace.id, "manual", manual_definition(version=0))

        updated = await update_manual_segment_members(test_db, workspace.id, segment.id, ["u1", "u2"])

        assert updated.definition["entry_node"]["version"] == 1
        assert updated.status == SegmentStatus.NOT_STARTED.value
        rows = await test_db.execute(
            select(ManualSegmentMember.user_id).where(
                ManualSegmentMember.segment_id == segment.id, ManualSegmentMember.version == 1
            )
        )
        assert sorted(rows.scalars().all()) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_append_keeps_current_members(self, test_db: AsyncSession, workspace: Workspace):
        segment = await upsert_segment(test_db, workspace.id, "manual", manual_definition(version=0))
        await update_manual_segment_members(test_db, workspace.id, segment.id, ["u1"])

        await update_manual_segment_members(test_db, workspace.id, segment.id, ["u2"], append=True)

        rows = await test_db.execute(
            select(ManualSegmentMember.user_id).where(
                ManualSegmentMember.segment_id == segment.id, ManualSegmentMember.version == 2
            )
        )
        assert sorted(rows.scalars().all()) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_rule_segment_is_rejected(self, test_db: AsyncSession, trait_segment: Segment):
        result = await update_manual_segment_members(
            test_db, trait_segment.workspace_id, trait_segment.id, ["u1"]
        )
        assert isinstance(result, UpsertValidationError)
        assert result.type == UpsertValidationErrorType.INVALID_DEFINITION

    @pytest.mark.asyncio
    async def test_unknown_segment(self, test_db: AsyncSession, workspace: Workspace):
        result = await update_manual_segment_members(test_db, workspace.id, str(uuid.uuid4()), ["u1"])
        assert result.type == UpsertValidationErrorType.NOT_FOUND


# ============================================
# Query / export
# ============================================


class TestFindAllSegmentAssignments:
    @pytest.mark.asyncio
    async def test_returns_assignments_by_name(
        self, test_db: AsyncSession, workspace: Workspace, trait_segment: Segment
    ):
        user_id = str(uuid.uuid4())
        await insert_segment_assignments(
            test_db,
            [
                {"workspace_id": workspace.id, "user_id": user_id, "segment_id": trait_segment.id, "in_segment": True},
                {
                    "workspace_id": workspace.id, "user_id": str(uuid.uuid4()),
                    "segment_id": trait_segment.id, "in_segment": False,
                },
            ],
        )

        assignments = await find_all_segment_assignments(test_db, workspace.id, user_id)
        assert assignments == {trait_segment.name: True}

    @pytest.mark.asyncio
    async def test_unevaluated_user_is_empty(self, test_db: AsyncSession, workspace: Workspace, trait_segment):
        assert await find_all_segment_assignments(test_db, workspace.id, "nobody") == {}

    @pytest.mark.asyncio
    async def test_other_workspace_not_visible(
        self, test_db: AsyncSession, workspace: Workspace, other_workspace: Workspace, trait_segment: Segment
    ):
        await insert_segment_assignments(
            test_db,
            [{"workspace_id": workspace.id, "user_id": "u1", "segment_id": trait_segment.id, "in_segment": True}],
        )
        assert await find_all_segment_assignments(test_db, other_workspace.id, "u1") == {}


class TestFindRecentlyUpdatedUsersInSegment:
    @pytest_asyncio.fixture
    async def segment_id(self, test_db: AsyncSession, workspace: Workspace) -> str:
        segment_id = str(uuid.uuid4())
        now = datetime.utcnow()
        ten_days_ago = now - timedelta(days=10)

        def row(user_id, computed_property_id, value, at):
            return ComputedPropertyAssignment(
                workspace_id=workspace.id,
                type="segment",
                computed_property_id=computed_property_id,
                user_id=user_id,
                segment_value=value,
                user_property_value="",
                max_event_time=at,
                definition_version="v1",
                assigned_at=at,
            )

        test_db.add_all([
            row("1", segment_id, True, now),
            row("2", str(uuid.uuid4()), True, now),
            row("3", segment_id, True, ten_days_ago),
            row("4", segment_id, False, now),
        ])
        await test_db.commit()
        return segment_id

    @pytest.mark.asyncio
    async def test_returns_users_recently_added(self, test_db: AsyncSession, workspace: Workspace, segment_id: str):
        users = await find_recently_updated_users_in_segment(
            test_db,
            workspace.id,
            segment_id,
            assigned_since=datetime.utcnow() - timedelta(seconds=5),
            page_size=10,
        )
        assert [u.user_id for u in users] == ["1"]

    @pytest.mark.asyncio
    async def test_latest_row_per_user_wins(self, test_db: AsyncSession, workspace: Workspace, segment_id: str):
        # User 1 left the segment after joining
        test_db.add(ComputedPropertyAssignment(
            workspace_id=workspace.id, type="segment", computed_property_id=segment_id, user_id="1",
            revision=2, segment_value=False, user_property_value="", max_event_time=datetime.utcnow(),
            definition_version="v1", assigned_at=datetime.utcnow() + timedelta(seconds=1),
        ))
        await test_db.commit()

        users = await find_recently_updated_users_in_segment(
            test_db, workspace.id, segment_id, datetime.utcnow() - timedelta(seconds=5), 10
        )
        assert users == []

    @pytest.mark.asyncio
    async def test_pages_with_assigned_at_cursor(self, test_db: AsyncSession, workspace: Workspace):
        segment_id = str(uuid.uuid4())
        base = datetime.utcnow()
        test_db.add_all([
            ComputedPropertyAssignment(
                workspace_id=workspace.id, type="segment", computed_property_id=segment_id,
                user_id=f"user-{i}", segment_value=True, user_property_value="",
                max_event_time=base, definition_version="v1",
                assigned_at=base + timedelta(microseconds=i),
            )
            for i in range(5)
        ])
        await test_db.commit()

        cursor = base - timedelta(seconds=1)
        seen = []
        while True:
            page = await find_recently_updated_users_in_segment(test_db, workspace.id, segment_id, cursor, 2)
            if not page:
                break
            seen.extend(u.user_id for u in page)
            cursor = page[-1].assigned_at
        assert seen == [f"user-{i}" for i in range(5)]


class TestBuildSegmentsFile:
    @pytest.mark.asyncio
    async def test_generates_file_with_contents(
        self,
        test_db: AsyncSession,
        workspace: Workspace,
        trait_segment: Segment,
        identifier_properties: list[UserProperty],
    ):
        user_id = str(uuid.uuid4())
        await insert_segment_assignments(
            test_db,
            [{"workspace_id": workspace.id, "user_id": user_id, "segment_id": trait_segment.id, "in_segment": True}],
        )
        id_prop, email_prop, phone_prop = identifier_properties
        await insert_user_property_assignments(
            test_db,
            [
                {"workspace_id": workspace.id, "user_id": user_id, "user_property_id": id_prop.id, "value": "123"},
                {
                    "workspace_id": workspace.id, "user_id": user_id,
                    "user_property_id": email_prop.id, "value": "test@test.com",
                },
                {
                    "workspace_id": workspace.id, "user_id": user_id,
                    "user_property_id": phone_prop.id, "value": "1234567890",
                },
            ],
        )

        file_name, content = await build_segments_file(test_db, workspace.id)

        assert file_name == f"segment-assignments-{workspace.id}.csv"
        lines = content.splitlines()
        assert lines[0] == "user_id,property:email,property:id,property:phone,segment:test"
        assert lines[1] == f"{user_id},test@test.com,123,1234567890,true"

    @pytest.mark.asyncio
    async def test_rows_ordered_and_byte_identical(
        self, test_db: AsyncSession, workspace: Workspace, trait_segment: Segment
    ):
        await insert_segment_assignments(
            test_db,
            [
                {"workspace_id": workspace.id, "user_id": user_id, "segment_id": trait_segment.id,
                 "in_segment": user_id != "b"}
                for user_id in ("c", "a", "b")
            ],
        )

        _, first = await build_segments_file(test_db, workspace.id)
        _, second = await build_segments_file(test_db, workspace.id)

        assert first == second
        assert first.splitlines()[1:] == ["a,true", "b,false", "c,true"]
