"""
Incremental Assignment Engine

Computes segment and user property assignments for one workspace over the
window (last recorded period end, now]. Only users with events ingested in
the window are evaluated, except for definitions that must be recomputed for
the whole population:

- definitions whose version token differs from the one recorded with the
  last period (new, edited, or manual version bumped)
- time-dependent definitions (Within operators, Performed with a window),
  whose result can change without new events

Manual-entry segments are evaluated only when their token changes.

Changed assignments, their history rows and the new period are written in a
single transaction. If anything fails the transaction is rolled back and the
period is not advanced, so the next run retries the same window.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.assignment import SegmentAssignment, UserPropertyAssignment
from app.models.computed_property import (
    ComputedPropertyAssignment,
    ComputedPropertyStep,
    ComputedPropertyType,
)
from app.models.manual_segment import ManualSegmentMember
from app.models.segment import Segment, UserProperty
from app.models.user_event import UserEvent
from app.schemas.definitions import DefinitionValidationError
from app.services.computed_properties.definitions import (
    definition_version,
    entry_is_manual,
    is_time_dependent,
    parse_segment_definition,
    parse_user_property_definition,
)
from app.services.computed_properties.evaluator import (
    build_user_snapshot,
    evaluate_segment,
    evaluate_user_property,
)
from app.services.computed_properties.history import (
    insert_computed_property_assignments,
    upsert_segment_assignments,
    upsert_user_property_assignments,
)
from app.services.computed_properties.periods import get_latest_period, record_period
from app.services.computed_properties.user_properties import encode_value

logger = logging.getLogger(__name__)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


_compute_locks: dict[tuple[str, str], _LockEntry] = {}


@asynccontextmanager
async def compute_lock(workspace_id: str, step: str) -> AsyncIterator[None]:
    """Serialize runs for one (workspace, step).

    The entry is dropped once no run holds or waits on it, so the registry
    only ever holds keys with a run in flight.
    """
    key = (workspace_id, step)
    entry = _compute_locks.get(key)
    if entry is None:
        entry = _compute_locks[key] = _LockEntry()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0:
            del _compute_locks[key]


@dataclass
class ComputeAssignmentsResult:
    workspace_id: str
    period_start: Optional[datetime]
    period_end: datetime
    users_evaluated: int = 0
    segment_changes: int = 0
    user_property_changes: int = 0
    evaluation_errors: int = 0


@dataclass
class _ActiveDefinition:
    id: str
    type: ComputedPropertyType
    definition: Any
    version: str
    full: bool
    time_dependent: bool = False


@dataclass
class _PendingWrites:
    segments: list[dict[str, Any]] = field(default_factory=list)
    user_properties: list[dict[str, Any]] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)


async def _load_definitions(
    db: AsyncSession,
    workspace_id: str,
    previous_versions: dict[str, str],
) -> tuple[list[_ActiveDefinition], dict[str, str]]:
    """Parse every stored definition and decide whether it needs a full recompute.

    Returns the definitions to evaluate this run and the version tokens to
    record with the new period. Invalid stored definitions are skipped and
    not recorded, so they are picked up again once fixed.
    """
    active: list[_ActiveDefinition] = []
    versions: dict[str, str] = {}

    segments = (await db.execute(select(Segment).where(Segment.workspace_id == workspace_id))).scalars().all()
    for segment in segments:
        parsed = parse_segment_definition(segment.definition)
        if isinstance(parsed, DefinitionValidationError):
            logger.warning("Skipping segment %s with invalid definition: %s", segment.id, parsed.message)
            continue
        version = definition_version(parsed)
        versions[segment.id] = version
        changed = previous_versions.get(segment.id) != version
        if entry_is_manual(parsed):
            if changed:
                active.append(_ActiveDefinition(segment.id, ComputedPropertyType.SEGMENT, parsed, version, full=True))
            continue
        time_dependent = is_time_dependent(parsed)
        active.append(
            _ActiveDefinition(
                segment.id,
                ComputedPropertyType.SEGMENT,
                parsed,
                version,
                full=changed or time_dependent,
                time_dependent=time_dependent,
            )
        )

    user_properties = (
        await db.execute(select(UserProperty).where(UserProperty.workspace_id == workspace_id))
    ).scalars().all()
    for user_property in user_properties:
        parsed = parse_user_property_definition(user_property.definition)
        if isinstance(parsed, DefinitionValidationError):
            logger.warning(
                "Skipping user property %s with invalid definition: %s", user_property.id, parsed.message
            )
            continue
        version = definition_version(parsed)
        versions[user_property.id] = version
        active.append(
            _ActiveDefinition(
                user_property.id,
                ComputedPropertyType.USER_PROPERTY,
                parsed,
                version,
                full=previous_versions.get(user_property.id) != version,
            )
        )

    return active, versions


async def _changed_user_ids(
    db: AsyncSession,
    workspace_id: str,
    period_start: Optional[datetime],
    period_end: datetime,
) -> set[str]:
    """Users with events ingested inside the window.

    The lower bound is pulled back by the ingest lag: an event stamped just
    before the previous period end may only have been committed after that
    run read the table. Users seen twice are re-evaluated, and unchanged
    results write nothing.
    """
    query = select(UserEvent.user_id).where(
        UserEvent.workspace_id == workspace_id,
        UserEvent.processing_time <= period_end,
    )
    if period_start is not None:
        lag = timedelta(seconds=settings.COMPUTE_PROPERTIES_INGEST_LAG_SECONDS)
        query = query.where(UserEvent.processing_time > period_start - lag)
    return set((await db.execute(query.distinct())).scalars().all())


async def _all_user_ids(db: AsyncSession, workspace_id: str, period_end: datetime) -> set[str]:
    """Every user the workspace knows about: event authors, manual members and existing assignees."""
    users: set[str] = set()
    for query in (
        select(UserEvent.user_id).where(
            UserEvent.workspace_id == workspace_id,
            UserEvent.processing_time <= period_end,
        ),
        select(ManualSegmentMember.user_id).where(ManualSegmentMember.workspace_id == workspace_id),
        select(SegmentAssignment.user_id).where(SegmentAssignment.workspace_id == workspace_id),
        select(UserPropertyAssignment.user_id).where(UserPropertyAssignment.workspace_id == workspace_id),
    ):
        users.update((await db.execute(query.distinct())).scalars().all())
    return users


async def _load_batch(
    db: AsyncSession,
    workspace_id: str,
    user_ids: list[str],
    period_end: datetime,
) -> tuple[dict, dict, dict, dict, dict]:
    events: dict[str, list[UserEvent]] = defaultdict(list)
    result = await db.execute(
        select(UserEvent).where(
            UserEvent.workspace_id == workspace_id,
            UserEvent.user_id.in_(user_ids),
            UserEvent.processing_time <= period_end,
        )
    )
    for row in result.scalars().all():
        events[row.user_id].append(row)

    manual_versions: dict[str, dict[str, int]] = defaultdict(dict)
    result = await db.execute(
        select(
            ManualSegmentMember.user_id,
            ManualSegmentMember.segment_id,
            func.max(ManualSegmentMember.version),
        )
        .where(
            ManualSegmentMember.workspace_id == workspace_id,
            ManualSegmentMember.user_id.in_(user_ids),
        )
        .group_by(ManualSegmentMember.user_id, ManualSegmentMember.segment_id)
    )
    for user_id, segment_id, version in result.all():
        manual_versions[user_id][segment_id] = version

    segment_state: dict[tuple[str, str], bool] = {}
    result = await db.execute(
        select(SegmentAssignment.user_id, SegmentAssignment.segment_id, SegmentAssignment.in_segment).where(
            SegmentAssignment.workspace_id == workspace_id,
            SegmentAssignment.user_id.in_(user_ids),
        )
    )
    for user_id, segment_id, in_segment in result.all():
        segment_state[(user_id, segment_id)] = bool(in_segment)

    property_state: dict[tuple[str, str], str] = {}
    result = await db.execute(
        select(
            UserPropertyAssignment.user_id,
            UserPropertyAssignment.user_property_id,
            UserPropertyAssignment.value,
        ).where(
            UserPropertyAssignment.workspace_id == workspace_id,
            UserPropertyAssignment.user_id.in_(user_ids),
        )
    )
    for user_id, user_property_id, value in result.all():
        property_state[(user_id, user_property_id)] = value

    # Latest history revision per (user, definition); the next write takes +1
    revisions: dict[tuple[str, str], int] = {}
    result = await db.execute(
        select(
            ComputedPropertyAssignment.user_id,
            ComputedPropertyAssignment.computed_property_id,
            func.max(ComputedPropertyAssignment.revision),
        )
        .where(
            ComputedPropertyAssignment.workspace_id == workspace_id,
            ComputedPropertyAssignment.user_id.in_(user_ids),
        )
        .group_by(ComputedPropertyAssignment.user_id, ComputedPropertyAssignment.computed_property_id)
    )
    for user_id, computed_property_id, revision in result.all():
        revisions[(user_id, computed_property_id)] = revision

    return events, manual_versions, segment_state, property_state, revisions


def _evaluate_user(
    workspace_id: str,
    user_id: str,
    definitions: list[_ActiveDefinition],
    snapshot,
    period_end: datetime,
    segment_state: dict[tuple[str, str], bool],
    property_state: dict[tuple[str, str], str],
    revisions: dict[tuple[str, str], int],
    pending: _PendingWrites,
    result: ComputeAssignmentsResult,
) -> None:
    for active in definitions:
        # Time-dependent results change with the clock, so they are stamped
        # with the evaluation instant rather than the last event time.
        max_event_time = period_end if active.time_dependent else snapshot.max_event_time
        try:
            if active.type == ComputedPropertyType.SEGMENT:
                in_segment = evaluate_segment(active.id, active.definition, snapshot)
                previous = segment_state.get((user_id, active.id))
                if previous is not None and previous == in_segment:
                    continue
                pending.segments.append(
                    {
                        "workspace_id": workspace_id,
                        "user_id": user_id,
                        "segment_id": active.id,
                        "in_segment": in_segment,
                        "max_event_time": max_event_time,
                    }
                )
                pending.history.append(
                    {
                        "workspace_id": workspace_id,
                        "type": active.type.value,
                        "computed_property_id": active.id,
                        "user_id": user_id,
                        "revision": revisions.get((user_id, active.id), 0) + 1,
                        "segment_value": in_segment,
                        "user_property_value": "",
                        "max_event_time": max_event_time,
                        "definition_version": active.version,
                    }
                )
                result.segment_changes += 1
            else:
                value = evaluate_user_property(active.definition, snapshot)
                previous = property_state.get((user_id, active.id))
                if previous is None and value is None:
                    continue
                encoded = encode_value(value)
                if previous == encoded:
                    continue
                pending.user_properties.append(
                    {
                        "workspace_id": workspace_id,
                        "user_id": user_id,
                        "user_property_id": active.id,
                        "value": encoded,
                        "max_event_time": max_event_time,
                    }
                )
                pending.history.append(
                    {
                        "workspace_id": workspace_id,
                        "type": active.type.value,
                        "computed_property_id": active.id,
                        "user_id": user_id,
                        "revision": revisions.get((user_id, active.id), 0) + 1,
                        "segment_value": False,
                        "user_property_value": encoded,
                        "max_event_time": max_event_time,
                        "definition_version": active.version,
                    }
                )
                result.user_property_changes += 1
        except Exception:
            result.evaluation_errors += 1
            logger.exception(
                "Failed to evaluate %s %s for user %s in workspace %s",
                active.type.value, active.id, user_id, workspace_id,
            )


def _stamp_assigned_at(pending: _PendingWrites) -> None:
    """Give every history row a distinct assigned_at.

    Rows are spaced one microsecond apart so a consumer paging with a strict
    assigned_at > cursor never skips rows written in the same batch.
    """
    base = datetime.utcnow()
    current_rows = {
        (row["user_id"], row["segment_id"]): row for row in pending.segments
    } | {
        (row["user_id"], row["user_property_id"]): row for row in pending.user_properties
    }
    for offset, row in enumerate(pending.history):
        assigned_at = base + timedelta(microseconds=offset)
        row["assigned_at"] = assigned_at
        current_rows[(row["user_id"], row["computed_property_id"])]["assigned_at"] = assigned_at


async def compute_assignments(
    db: AsyncSession,
    workspace_id: str,
    now: Optional[datetime] = None,
    step: str = ComputedPropertyStep.COMPUTE_ASSIGNMENTS.value,
) -> ComputeAssignmentsResult:
    """Run one incremental recompute for a workspace and advance its period."""
    async with compute_lock(workspace_id, step):
        latest = await get_latest_period(db, workspace_id, step)
        period_start = latest.period_end if latest is not None else None
        period_end = now or datetime.utcnow()
        if period_start is not None and period_end < period_start:
            # Clock went backwards; never move the watermark back
            logger.warning(
                "Period end %s precedes last period end %s for workspace %s, clamping",
                period_end, period_start, workspace_id,
            )
            period_end = period_start

        result = ComputeAssignmentsResult(
            workspace_id=workspace_id,
            period_start=period_start,
            period_end=period_end,
        )
        previous_versions = dict(latest.definition_versions or {}) if latest is not None else {}

        try:
            definitions, versions = await _load_definitions(db, workspace_id, previous_versions)
            changed_users = await _changed_user_ids(db, workspace_id, period_start, period_end)
            full_definitions = [d for d in definitions if d.full]
            incremental_definitions = [d for d in definitions if not d.full]

            users = set(changed_users) if incremental_definitions else set()
            if full_definitions:
                users |= await _all_user_ids(db, workspace_id, period_end)

            pending = _PendingWrites()
            ordered_users = sorted(users)
            batch_size = settings.ASSIGNMENT_SNAPSHOT_BATCH_SIZE
            for i in range(0, len(ordered_users), batch_size):
                batch = ordered_users[i:i + batch_size]
                events, manual_versions, segment_state, property_state, revisions = await _load_batch(
                    db, workspace_id, batch, period_end
                )
                for user_id in batch:
                    applicable = full_definitions + (
                        incremental_definitions if user_id in changed_users else []
                    )
                    if not applicable:
                        continue
                    try:
                        snapshot = build_user_snapshot(
                            user_id, events.get(user_id, []), period_end, manual_versions.get(user_id)
                        )
                    except Exception:
                        result.evaluation_errors += 1
                        logger.exception("Failed to build snapshot for user %s in workspace %s", user_id, workspace_id)
                        continue
                    result.users_evaluated += 1
                    _evaluate_user(
                        workspace_id, user_id, applicable, snapshot, period_end,
                        segment_state, property_state, revisions, pending, result,
                    )

            _stamp_assigned_at(pending)
            await upsert_segment_assignments(db, pending.segments)
            await upsert_user_property_assignments(db, pending.user_properties)
            await insert_computed_property_assignments(db, pending.history)
            await record_period(db, workspace_id, step, period_start, period_end, versions)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Compute assignments failed for workspace %s; period not advanced", workspace_id)
            raise

        logger.info(
            "Computed assignments for workspace %s: %d users, %d segment changes, "
            "%d user property changes, %d errors",
            workspace_id,
            result.users_evaluated,
            result.segment_changes,
            result.user_property_changes,
            result.evaluation_errors,
        )
        return result
