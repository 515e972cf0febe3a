"""
Assignment store writes.

Current-state rows are upserted on their (workspace, user, definition) key;
the engine holds the per-workspace lock while writing, so the last write is
the freshest. History rows are append-only and keyed
by (workspace, type, definition, user, revision); ON CONFLICT DO NOTHING
makes re-applying a batch with the same revisions a no-op.

None of these helpers commit; callers own the transaction.
"""

from typing import Any, Iterator, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.database import dialect_insert
from app.models.assignment import SegmentAssignment, UserPropertyAssignment
from app.models.computed_property import ComputedPropertyAssignment

# Keeps multi-row VALUES under SQLite's bound-parameter limit
WRITE_CHUNK_SIZE = 500


def _chunks(rows: Sequence[dict[str, Any]], size: int = WRITE_CHUNK_SIZE) -> Iterator[Sequence[dict[str, Any]]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


async def upsert_segment_assignments(db: AsyncSession, rows: Sequence[dict[str, Any]]) -> None:
    for chunk in _chunks(rows):
        stmt = dialect_insert(db, SegmentAssignment).values(list(chunk))
        stmt = stmt.on_conflict_do_update(
            index_elements=["workspace_id", "user_id", "segment_id"],
            set_={
                "in_segment": stmt.excluded.in_segment,
                "max_event_time": stmt.excluded.max_event_time,
                "assigned_at": stmt.excluded.assigned_at,
            },
        )
        await db.execute(stmt)


async def upsert_user_property_assignments(db: AsyncSession, rows: Sequence[dict[str, Any]]) -> None:
    for chunk in _chunks(rows):
        stmt = dialect_insert(db, UserPropertyAssignment).values(list(chunk))
        stmt = stmt.on_conflict_do_update(
            index_elements=["workspace_id", "user_id", "user_property_id"],
            set_={
                "value": stmt.excluded.value,
                "max_event_time": stmt.excluded.max_event_time,
                "assigned_at": stmt.excluded.assigned_at,
            },
        )
        await db.execute(stmt)


async def insert_computed_property_assignments(db: AsyncSession, rows: Sequence[dict[str, Any]]) -> None:
    for chunk in _chunks(rows):
        stmt = dialect_insert(db, ComputedPropertyAssignment).values(list(chunk))
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["workspace_id", "type", "computed_property_id", "user_id", "revision"],
        )
        await db.execute(stmt)
