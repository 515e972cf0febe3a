"""
User Property Service

Upserts and assignment reads for user properties. Values are stored
JSON-encoded in user_property_assignments.value and decoded on read.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import UserPropertyAssignment
from app.models.segment import UserProperty
from app.schemas.computed_properties import UpsertValidationError, UpsertValidationErrorType
from app.schemas.definitions import DefinitionValidationError
from app.services.computed_properties.definitions import parse_user_property_definition
from app.services.computed_properties.evaluator import NO_EVENTS_WATERMARK
from app.services.computed_properties.history import upsert_user_property_assignments
from app.services.computed_properties.segments import find_uniqueness_violation

logger = logging.getLogger(__name__)


def encode_value(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def decode_value(encoded: str) -> Any:
    try:
        return json.loads(encoded)
    except ValueError:
        # Rows written outside the engine may hold a bare string
        return encoded


async def upsert_user_property(
    db: AsyncSession,
    workspace_id: str,
    name: str,
    definition: Any,
    user_property_id: Optional[str] = None,
) -> Union[UserProperty, UpsertValidationError]:
    parsed = parse_user_property_definition(definition)
    if isinstance(parsed, DefinitionValidationError):
        return UpsertValidationError(
            type=UpsertValidationErrorType.INVALID_DEFINITION,
            message=parsed.message,
            details=parsed.details,
        )

    user_property_id = user_property_id or str(uuid.uuid4())
    violation = await find_uniqueness_violation(db, UserProperty, workspace_id, user_property_id, name)
    if violation is not None:
        return violation

    definition_json = parsed.model_dump(mode="json")
    now = datetime.utcnow()

    user_property = await db.get(UserProperty, user_property_id)
    if user_property is None:
        user_property = UserProperty(
            id=user_property_id,
            workspace_id=workspace_id,
            name=name,
            definition=definition_json,
            definition_updated_at=now,
        )
        db.add(user_property)
    else:
        if user_property.definition != definition_json:
            user_property.definition = definition_json
            user_property.definition_updated_at = now
        user_property.name = name

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return UpsertValidationError(
            type=UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION,
            message=f"User property '{name}' conflicts with an existing user property",
        )

    await db.refresh(user_property)
    logger.info("Upserted user property %s (%s) in workspace %s", user_property.id, name, workspace_id)
    return user_property


async def list_user_properties(db: AsyncSession, workspace_id: str) -> list[UserProperty]:
    result = await db.execute(
        select(UserProperty)
        .where(UserProperty.workspace_id == workspace_id)
        .order_by(UserProperty.name, UserProperty.id)
    )
    return list(result.scalars().all())


async def insert_user_property_assignments(db: AsyncSession, assignments: Sequence[dict[str, Any]]) -> None:
    """Write current-state user property values directly (seeding and backfills)."""
    now = datetime.utcnow()
    rows = [
        {
            "workspace_id": a["workspace_id"],
            "user_id": a["user_id"],
            "user_property_id": a["user_property_id"],
            "value": encode_value(a["value"]),
            "max_event_time": a.get("max_event_time") or NO_EVENTS_WATERMARK,
            "assigned_at": a.get("assigned_at") or now,
        }
        for a in assignments
    ]
    await upsert_user_property_assignments(db, rows)
    await db.commit()


async def find_all_user_property_assignments(
    db: AsyncSession,
    workspace_id: str,
    user_id: str,
) -> dict[str, Any]:
    """Current value per user property name for one user."""
    result = await db.execute(
        select(UserProperty.name, UserPropertyAssignment.value)
        .join(
            UserProperty,
            and_(
                UserProperty.id == UserPropertyAssignment.user_property_id,
                UserProperty.workspace_id == UserPropertyAssignment.workspace_id,
            ),
        )
        .where(
            UserPropertyAssignment.workspace_id == workspace_id,
            UserPropertyAssignment.user_id == user_id,
        )
    )
    return {name: decode_value(value) for name, value in result.all()}
