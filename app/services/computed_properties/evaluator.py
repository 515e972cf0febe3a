"""
Computed Property Evaluator

Pure evaluation of segment and user property definitions against a snapshot
of one user's traits and events. No I/O happens here; the assignment engine
builds snapshots and persists results.

Missing or malformed data never raises: segment predicates evaluate to False
and user properties evaluate to None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from app.schemas.definitions import (
    AndSegmentNode,
    AnonymousIdUserPropertyDefinition,
    EqualsOperator,
    EveryoneSegmentNode,
    ExistsOperator,
    GreaterThanOrEqualOperator,
    IdUserPropertyDefinition,
    LessThanOperator,
    ManualSegmentNode,
    NotEqualsOperator,
    NotExistsOperator,
    NotSegmentNode,
    OrSegmentNode,
    PerformedSegmentNode,
    PerformedUserPropertyDefinition,
    SegmentDefinition,
    SegmentNode,
    TraitSegmentNode,
    TraitUserPropertyDefinition,
    UserPropertyDefinition,
    WithinOperator,
)
from app.services.computed_properties.definitions import SegmentArena, build_arena

logger = logging.getLogger(__name__)

# max_event_time recorded for users that have no events (manual-only members)
NO_EVENTS_WATERMARK = datetime(1970, 1, 1)

_MISSING = object()


@dataclass(frozen=True)
class SnapshotEvent:
    event_type: str
    event: Optional[str]
    properties: Mapping[str, Any]
    event_time: datetime


@dataclass(frozen=True)
class UserSnapshot:
    """Everything the evaluator may look at for one user, as of one instant."""

    user_id: str
    as_of: datetime
    traits: Mapping[str, Any] = field(default_factory=dict)
    events: tuple[SnapshotEvent, ...] = ()
    anonymous_id: Optional[str] = None
    # segment_id -> highest manual membership version the user holds
    manual_versions: Mapping[str, int] = field(default_factory=dict)

    @property
    def max_event_time(self) -> datetime:
        if not self.events:
            return NO_EVENTS_WATERMARK
        return max(e.event_time for e in self.events)


def build_user_snapshot(
    user_id: str,
    events: Iterable[Any],
    as_of: datetime,
    manual_versions: Optional[Mapping[str, int]] = None,
) -> UserSnapshot:
    """Fold a user's stored events into a snapshot.

    Identify traits are merged in event-time order so later values win.
    """
    ordered = sorted(events, key=lambda e: (e.event_time, e.processing_time, e.message_id))
    traits: dict[str, Any] = {}
    anonymous_id = None
    snapshot_events = []
    for row in ordered:
        if row.anonymous_id:
            anonymous_id = row.anonymous_id
        if row.event_type == "identify" and row.traits:
            traits.update(row.traits)
        snapshot_events.append(
            SnapshotEvent(
                event_type=row.event_type,
                event=row.event,
                properties=row.properties or {},
                event_time=row.event_time,
            )
        )
    return UserSnapshot(
        user_id=user_id,
        as_of=as_of,
        traits=traits,
        events=tuple(snapshot_events),
        anonymous_id=anonymous_id,
        manual_versions=dict(manual_versions or {}),
    )


# ============================================
# Value helpers
# ============================================


def lookup_path(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns _MISSING when any segment is absent."""
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _is_present(value: Any) -> bool:
    return value is not _MISSING and value is not None


def _exact_equals(actual: Any, expected: Any) -> bool:
    # bool is an int subclass; True must not equal 1
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch milliseconds -> naive UTC datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ============================================
# Segment evaluation
# ============================================


def _evaluate_trait(node: TraitSegmentNode, snapshot: UserSnapshot) -> bool:
    value = lookup_path(snapshot.traits, node.path)
    match node.operator:
        case EqualsOperator(value=expected):
            return _is_present(value) and _exact_equals(value, expected)
        case NotEqualsOperator(value=expected):
            return _is_present(value) and not _exact_equals(value, expected)
        case ExistsOperator():
            return _is_present(value)
        case NotExistsOperator():
            return not _is_present(value)
        case WithinOperator(window_seconds=window):
            timestamp = parse_timestamp(value) if _is_present(value) else None
            if timestamp is None:
                return False
            return snapshot.as_of - timedelta(seconds=window) <= timestamp <= snapshot.as_of
        case GreaterThanOrEqualOperator(value=threshold):
            number = _as_number(value) if _is_present(value) else None
            return number is not None and number >= threshold
        case LessThanOperator(value=threshold):
            number = _as_number(value) if _is_present(value) else None
            return number is not None and number < threshold
    raise TypeError(f"Unhandled trait operator {node.operator!r}")


def _event_matches(node: PerformedSegmentNode, event: SnapshotEvent, as_of: datetime) -> bool:
    if event.event_type != "track" or event.event != node.event:
        return False
    if event.event_time > as_of:
        return False
    if node.within_seconds is not None and event.event_time < as_of - timedelta(seconds=node.within_seconds):
        return False
    for prop in node.properties:
        value = lookup_path(event.properties, prop.path)
        match prop.operator:
            case EqualsOperator(value=expected):
                if not (_is_present(value) and _exact_equals(value, expected)):
                    return False
            case ExistsOperator():
                if not _is_present(value):
                    return False
    return True


def _evaluate_performed(node: PerformedSegmentNode, snapshot: UserSnapshot) -> bool:
    count = sum(1 for event in snapshot.events if _event_matches(node, event, snapshot.as_of))
    match node.times_operator:
        case "Equals":
            return count == node.times
        case "GreaterThanOrEqual":
            return count >= node.times
        case "LessThan":
            return count < node.times
    raise TypeError(f"Unhandled times operator {node.times_operator!r}")


def _evaluate_node(
    segment_id: str,
    arena: SegmentArena,
    node: SegmentNode,
    snapshot: UserSnapshot,
) -> bool:
    match node:
        case TraitSegmentNode():
            return _evaluate_trait(node, snapshot)
        case PerformedSegmentNode():
            return _evaluate_performed(node, snapshot)
        case ManualSegmentNode(version=version):
            member_version = snapshot.manual_versions.get(segment_id)
            return member_version is not None and member_version >= version
        case EveryoneSegmentNode():
            return True
        case AndSegmentNode(children=children):
            return all(_evaluate_node(segment_id, arena, arena.get(c), snapshot) for c in children)
        case OrSegmentNode(children=children):
            return any(_evaluate_node(segment_id, arena, arena.get(c), snapshot) for c in children)
        case NotSegmentNode(child=child):
            return not _evaluate_node(segment_id, arena, arena.get(child), snapshot)
    raise TypeError(f"Unhandled segment node {node!r}")


def evaluate_segment(
    segment_id: str,
    definition: SegmentDefinition,
    snapshot: UserSnapshot,
) -> bool:
    """Evaluate a validated segment definition for one user."""
    arena = build_arena(definition)
    return _evaluate_node(segment_id, arena, arena.entry, snapshot)


# ============================================
# User property evaluation
# ============================================


def evaluate_user_property(definition: UserPropertyDefinition, snapshot: UserSnapshot) -> Any:
    """Evaluate a user property for one user; None when there is no value."""
    match definition:
        case IdUserPropertyDefinition():
            return snapshot.user_id
        case AnonymousIdUserPropertyDefinition():
            return snapshot.anonymous_id
        case TraitUserPropertyDefinition(path=path):
            value = lookup_path(snapshot.traits, path)
            return None if value is _MISSING else value
        case PerformedUserPropertyDefinition(event=event_name, path=path):
            for event in reversed(snapshot.events):
                if event.event_type == "track" and event.event == event_name and event.event_time <= snapshot.as_of:
                    value = lookup_path(event.properties, path)
                    if value is not _MISSING:
                        return value
            return None
    raise TypeError(f"Unhandled user property definition {definition!r}")
