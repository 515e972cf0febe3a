"""
Event ingestion.

Events are append-only and deduplicated on (workspace_id, message_id), so
clients may safely resubmit a batch.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import dialect_insert
from app.models.user_event import UserEvent
from app.schemas.computed_properties import UserEventInput
from app.services.computed_properties.evaluator import parse_timestamp

logger = logging.getLogger(__name__)


async def insert_user_events(
    db: AsyncSession,
    workspace_id: str,
    events: Sequence[UserEventInput],
    processing_time: Optional[datetime] = None,
) -> tuple[int, int]:
    """
    Store a batch of identify/track events.

    Events without a user_id fall back to their anonymous_id; events with
    neither are skipped. Returns (accepted, skipped), where skipped also counts
    duplicates of already stored message ids.
    """
    rows = []
    skipped = 0
    for event in events:
        user_id = event.user_id or event.anonymous_id
        if not user_id:
            skipped += 1
            continue
        if event.type == "track" and not event.event:
            skipped += 1
            continue
        event_time = parse_timestamp(event.timestamp) if event.timestamp is not None else None
        rows.append(
            {
                "workspace_id": workspace_id,
                "message_id": event.message_id,
                "user_id": user_id,
                "anonymous_id": event.anonymous_id,
                "event_type": event.type,
                "event": event.event,
                "traits": event.traits if event.type == "identify" else None,
                "properties": event.properties if event.type == "track" else None,
                "event_time": event_time,
            }
        )

    if not rows:
        return 0, skipped

    existing = set(
        (
            await db.execute(
                select(UserEvent.message_id).where(
                    UserEvent.workspace_id == workspace_id,
                    UserEvent.message_id.in_([row["message_id"] for row in rows]),
                )
            )
        ).scalars().all()
    )
    fresh: dict[str, dict] = {}
    for row in rows:
        if row["message_id"] in existing or row["message_id"] in fresh:
            skipped += 1
            continue
        fresh[row["message_id"]] = row

    if fresh:
        # Stamped as late as possible; the engine rescans a short lag before
        # each period end for rows committed after the stamp
        stamp = processing_time or datetime.utcnow()
        for row in fresh.values():
            row["processing_time"] = stamp
            row["event_time"] = row["event_time"] or stamp
        stmt = dialect_insert(db, UserEvent).values(list(fresh.values()))
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["workspace_id", "message_id"]))
        await db.commit()

    logger.info("Ingested %d events for workspace %s (%d skipped)", len(fresh), workspace_id, skipped)
    return len(fresh), skipped
