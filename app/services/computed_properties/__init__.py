"""
Computed Properties Services

Segment and user property evaluation, incremental assignment computation,
assignment history and staleness tracking.
"""

from app.services.computed_properties.assignment_engine import (
    ComputeAssignmentsResult,
    compute_assignments,
)
from app.services.computed_properties.events import insert_user_events
from app.services.computed_properties.periods import (
    STALENESS_THRESHOLD,
    get_computed_property_periods,
)
from app.services.computed_properties.segments import (
    build_segments_file,
    find_all_segment_assignments,
    find_recently_updated_users_in_segment,
    insert_segment_assignments,
    list_segments,
    update_manual_segment_members,
    upsert_segment,
)
from app.services.computed_properties.user_properties import (
    find_all_user_property_assignments,
    insert_user_property_assignments,
    list_user_properties,
    upsert_user_property,
)

__all__ = [
    "ComputeAssignmentsResult",
    "compute_assignments",
    "insert_user_events",
    "STALENESS_THRESHOLD",
    "get_computed_property_periods",
    "build_segments_file",
    "find_all_segment_assignments",
    "find_recently_updated_users_in_segment",
    "insert_segment_assignments",
    "list_segments",
    "update_manual_segment_members",
    "upsert_segment",
    "find_all_user_property_assignments",
    "insert_user_property_assignments",
    "list_user_properties",
    "upsert_user_property",
]
