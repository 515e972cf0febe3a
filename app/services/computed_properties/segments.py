"""
Segment Service

Upserts (with the NotStarted/Running status rule and name/id uniqueness),
manual membership updates, and the read paths downstream consumers use:
per-user assignment lookup, the recently-updated feed and the bulk export.

Every function takes workspace_id explicitly and filters on it.
"""

import csv
import io
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import dialect_insert
from app.models.assignment import SegmentAssignment, UserPropertyAssignment
from app.models.computed_property import ComputedPropertyAssignment, ComputedPropertyType
from app.models.manual_segment import ManualSegmentMember
from app.models.segment import Segment, SegmentStatus, UserProperty
from app.schemas.computed_properties import (
    RecentlyUpdatedUser,
    UpsertValidationError,
    UpsertValidationErrorType,
)
from app.schemas.definitions import (
    DefinitionValidationError,
    ManualSegmentNode,
    SegmentDefinition,
)
from app.services.computed_properties.definitions import entry_is_manual, parse_segment_definition
from app.services.computed_properties.evaluator import NO_EVENTS_WATERMARK
from app.services.computed_properties.history import upsert_segment_assignments

logger = logging.getLogger(__name__)


def status_for_definition(definition: SegmentDefinition) -> SegmentStatus:
    """Manual membership is operator-driven; everything else is recomputed continuously."""
    if entry_is_manual(definition):
        return SegmentStatus.NOT_STARTED
    return SegmentStatus.RUNNING


async def find_uniqueness_violation(
    db: AsyncSession,
    model: type,
    workspace_id: str,
    resource_id: str,
    name: str,
) -> Optional[UpsertValidationError]:
    """Ids are a global primary key; names are unique per workspace."""
    existing = await db.get(model, resource_id)
    if existing is not None and existing.workspace_id != workspace_id:
        return UpsertValidationError(
            type=UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION,
            message=f"{model.__name__} id {resource_id} already exists in another workspace",
        )

    clash = await db.execute(
        select(model.id).where(
            model.workspace_id == workspace_id,
            model.name == name,
            model.id != resource_id,
        )
    )
    if clash.scalar_one_or_none() is not None:
        return UpsertValidationError(
            type=UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION,
            message=f"{model.__name__} name '{name}' is already used in this workspace",
        )
    return None


def _invalid_definition(error: DefinitionValidationError) -> UpsertValidationError:
    return UpsertValidationError(
        type=UpsertValidationErrorType.INVALID_DEFINITION,
        message=error.message,
        details=[error.model_dump(mode="json", exclude_none=True)],
    )


async def upsert_segment(
    db: AsyncSession,
    workspace_id: str,
    name: str,
    definition: Any,
    segment_id: Optional[str] = None,
) -> Union[Segment, UpsertValidationError]:
    """
    Create or update a segment.

    Validation problems are returned, not raised. The resulting status is
    derived from the new entry node alone: Manual -> NotStarted, anything
    else -> Running.
    """
    parsed = parse_segment_definition(definition)
    if isinstance(parsed, DefinitionValidationError):
        return _invalid_definition(parsed)

    segment_id = segment_id or str(uuid.uuid4())
    violation = await find_uniqueness_violation(db, Segment, workspace_id, segment_id, name)
    if violation is not None:
        return violation

    definition_json = parsed.model_dump(mode="json")
    status = status_for_definition(parsed).value
    now = datetime.utcnow()

    segment = await db.get(Segment, segment_id)
    if segment is None:
        segment = Segment(
            id=segment_id,
            workspace_id=workspace_id,
            name=name,
            definition=definition_json,
            status=status,
            definition_updated_at=now,
        )
        db.add(segment)
    else:
        if segment.definition != definition_json:
            segment.definition = definition_json
            segment.definition_updated_at = now
        segment.name = name
        segment.status = status

    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent upsert of the same name or id
        await db.rollback()
        return UpsertValidationError(
            type=UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION,
            message=f"Segment '{name}' conflicts with an existing segment",
        )

    await db.refresh(segment)
    logger.info("Upserted segment %s (%s) in workspace %s status=%s", segment.id, name, workspace_id, status)
    return segment


async def list_segments(
    db: AsyncSession,
    workspace_id: str,
    resource_type: Optional[str] = None,
) -> list[Segment]:
    """List segments; resource_type "Manual" or "Declarative" filters by entry node kind."""
    result = await db.execute(
        select(Segment).where(Segment.workspace_id == workspace_id).order_by(Segment.name, Segment.id)
    )
    segments = list(result.scalars().all())
    if resource_type is None:
        return segments
    manual = resource_type == "Manual"
    return [s for s in segments if (s.definition.get("entry_node", {}).get("type") == "Manual") == manual]


async def get_segment(db: AsyncSession, workspace_id: str, segment_id: str) -> Optional[Segment]:
    result = await db.execute(
        select(Segment).where(Segment.workspace_id == workspace_id, Segment.id == segment_id)
    )
    return result.scalar_one_or_none()


async def update_manual_segment_members(
    db: AsyncSession,
    workspace_id: str,
    segment_id: str,
    user_ids: Sequence[str],
    append: bool = False,
) -> Union[Segment, UpsertValidationError]:
    """
    Replace (or extend) a manual segment's membership list.

    Members are written at version + 1 and the entry node's version is bumped
    in the same transaction, which is what tells the assignment engine to
    re-evaluate the segment.
    """
    segment = await get_segment(db, workspace_id, segment_id)
    if segment is None:
        return UpsertValidationError(
            type=UpsertValidationErrorType.NOT_FOUND,
            message=f"Segment {segment_id} was not found",
        )

    definition = SegmentDefinition.model_validate(segment.definition)
    entry = definition.entry_node
    if not isinstance(entry, ManualSegmentNode):
        return UpsertValidationError(
            type=UpsertValidationErrorType.INVALID_DEFINITION,
            message=f"Segment {segment_id} is not a manual segment",
        )

    current_version = entry.version
    new_version = current_version + 1
    members = set(user_ids)

    if append:
        existing = await db.execute(
            select(ManualSegmentMember.user_id).where(
                ManualSegmentMember.workspace_id == workspace_id,
                ManualSegmentMember.segment_id == segment_id,
                ManualSegmentMember.version >= current_version,
            )
        )
        members.update(existing.scalars().all())

    if members:
        stmt = dialect_insert(db, ManualSegmentMember).values(
            [
                {
                    "workspace_id": workspace_id,
                    "segment_id": segment_id,
                    "user_id": user_id,
                    "version": new_version,
                }
                for user_id in sorted(members)
            ]
        )
        await db.execute(stmt.on_conflict_do_nothing())

    # Versions below the one being replaced can no longer satisfy the node
    await db.execute(
        delete(ManualSegmentMember).where(
            ManualSegmentMember.workspace_id == workspace_id,
            ManualSegmentMember.segment_id == segment_id,
            ManualSegmentMember.version < current_version,
        )
    )

    bumped = definition.model_copy(update={"entry_node": entry.model_copy(update={"version": new_version})})
    segment.definition = bumped.model_dump(mode="json")
    segment.definition_updated_at = datetime.utcnow()
    segment.status = SegmentStatus.NOT_STARTED.value

    await db.commit()
    await db.refresh(segment)
    logger.info(
        "Manual segment %s now has %d members at version %d", segment_id, len(members), new_version
    )
    return segment


# ============================================
# Assignments
# ============================================


async def insert_segment_assignments(db: AsyncSession, assignments: Sequence[dict[str, Any]]) -> None:
    """Write current-state segment assignments directly (seeding and backfills).

    Each item needs workspace_id, user_id, segment_id and in_segment;
    max_event_time and assigned_at default to the epoch watermark and now.
    """
    now = datetime.utcnow()
    rows = [
        {
            "workspace_id": a["workspace_id"],
            "user_id": a["user_id"],
            "segment_id": a["segment_id"],
            "in_segment": bool(a["in_segment"]),
            "max_event_time": a.get("max_event_time") or NO_EVENTS_WATERMARK,
            "assigned_at": a.get("assigned_at") or now,
        }
        for a in assignments
    ]
    await upsert_segment_assignments(db, rows)
    await db.commit()


async def find_all_segment_assignments(db: AsyncSession, workspace_id: str, user_id: str) -> dict[str, bool]:
    """Latest membership per segment name. Segments never evaluated for the user are omitted."""
    result = await db.execute(
        select(Segment.name, SegmentAssignment.in_segment)
        .join(
            Segment,
            and_(
                Segment.id == SegmentAssignment.segment_id,
                Segment.workspace_id == SegmentAssignment.workspace_id,
            ),
        )
        .where(
            SegmentAssignment.workspace_id == workspace_id,
            SegmentAssignment.user_id == user_id,
        )
    )
    return {name: bool(in_segment) for name, in_segment in result.all()}


async def find_recently_updated_users_in_segment(
    db: AsyncSession,
    workspace_id: str,
    segment_id: str,
    assigned_since: datetime,
    page_size: int,
) -> list[RecentlyUpdatedUser]:
    """
    Users whose latest history row for the segment was written after
    assigned_since and put them in the segment.

    Ordered by assigned_at ascending; callers persist the last assigned_at as
    their next assigned_since.
    """
    cpa = ComputedPropertyAssignment
    scope = (
        cpa.workspace_id == workspace_id,
        cpa.type == ComputedPropertyType.SEGMENT.value,
        cpa.computed_property_id == segment_id,
    )
    latest = (
        select(cpa.user_id.label("user_id"), func.max(cpa.assigned_at).label("assigned_at"))
        .where(*scope, cpa.assigned_at > assigned_since)
        .group_by(cpa.user_id)
        .subquery()
    )
    result = await db.execute(
        select(cpa.user_id, cpa.assigned_at)
        .join(
            latest,
            and_(cpa.user_id == latest.c.user_id, cpa.assigned_at == latest.c.assigned_at),
        )
        .where(*scope, cpa.segment_value.is_(True))
        .distinct()
        .order_by(cpa.assigned_at, cpa.user_id)
        .limit(page_size)
    )
    return [RecentlyUpdatedUser(user_id=user_id, assigned_at=assigned_at) for user_id, assigned_at in result.all()]


# ============================================
# Export
# ============================================


def _export_value(encoded: str) -> str:
    try:
        value = json.loads(encoded)
    except ValueError:
        return encoded
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


async def build_segments_file(db: AsyncSession, workspace_id: str) -> tuple[str, str]:
    """
    CSV export of every known user in the workspace, one row per user.

    Columns: user_id, one "property:<name>" column per user property, one
    "segment:<name>" column per segment. Rows are ordered by user_id and
    columns by name so identical state produces identical bytes.
    """
    segments = (
        await db.execute(
            select(Segment.id, Segment.name).where(Segment.workspace_id == workspace_id).order_by(Segment.name, Segment.id)
        )
    ).all()
    properties = (
        await db.execute(
            select(UserProperty.id, UserProperty.name)
            .where(UserProperty.workspace_id == workspace_id)
            .order_by(UserProperty.name, UserProperty.id)
        )
    ).all()

    segment_values: dict[tuple[str, str], bool] = {}
    for user_id, seg_id, in_segment in (
        await db.execute(
            select(SegmentAssignment.user_id, SegmentAssignment.segment_id, SegmentAssignment.in_segment).where(
                SegmentAssignment.workspace_id == workspace_id
            )
        )
    ).all():
        segment_values[(user_id, seg_id)] = bool(in_segment)

    property_values: dict[tuple[str, str], str] = {}
    for user_id, prop_id, value in (
        await db.execute(
            select(
                UserPropertyAssignment.user_id,
                UserPropertyAssignment.user_property_id,
                UserPropertyAssignment.value,
            ).where(UserPropertyAssignment.workspace_id == workspace_id)
        )
    ).all():
        property_values[(user_id, prop_id)] = value

    user_ids = sorted({key[0] for key in segment_values} | {key[0] for key in property_values})

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(
        ["user_id"]
        + [f"property:{name}" for _, name in properties]
        + [f"segment:{name}" for _, name in segments]
    )
    for user_id in user_ids:
        row = [user_id]
        for prop_id, _ in properties:
            encoded = property_values.get((user_id, prop_id))
            row.append("" if encoded is None else _export_value(encoded))
        for seg_id, _ in segments:
            in_segment = segment_values.get((user_id, seg_id))
            row.append("" if in_segment is None else ("true" if in_segment else "false"))
        writer.writerow(row)

    file_name = f"segment-assignments-{workspace_id}.csv"
    logger.info("Built segments file for workspace %s with %d users", workspace_id, len(user_ids))
    return file_name, buffer.getvalue()
