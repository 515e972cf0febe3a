# Models module
from app.models.workspace import Workspace
from app.models.segment import Segment, SegmentStatus, UserProperty
from app.models.assignment import SegmentAssignment, UserPropertyAssignment
from app.models.computed_property import (
    ComputedPropertyAssignment,
    ComputedPropertyPeriod,
    ComputedPropertyStep,
    ComputedPropertyType,
)
from app.models.manual_segment import ManualSegmentMember
from app.models.user_event import UserEvent, UserEventType

__all__ = [
    "Workspace",
    "Segment",
    "SegmentStatus",
    "UserProperty",
    "SegmentAssignment",
    "UserPropertyAssignment",
    "ComputedPropertyAssignment",
    "ComputedPropertyPeriod",
    "ComputedPropertyStep",
    "ComputedPropertyType",
    "ManualSegmentMember",
    "UserEvent",
    "UserEventType",
]
