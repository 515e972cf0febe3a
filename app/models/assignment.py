"""
Current assignment state.

One row per (workspace, user, definition). Written only by the assignment
engine (and seeding helpers); read by the query/export layer.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Text, Index
from app.database import Base


class SegmentAssignment(Base):
    __tablename__ = "segment_assignments"
    __table_args__ = (
        Index("ix_segment_assignments_workspace_segment", "workspace_id", "segment_id"),
    )

    workspace_id = Column(String(36), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    segment_id = Column(String(36), primary_key=True)

    in_segment = Column(Boolean, nullable=False)
    max_event_time = Column(DateTime, nullable=False)
    assigned_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SegmentAssignment user={self.user_id} segment={self.segment_id} in={self.in_segment}>"


class UserPropertyAssignment(Base):
    __tablename__ = "user_property_assignments"
    __table_args__ = (
        Index("ix_user_property_assignments_workspace_property", "workspace_id", "user_property_id"),
    )

    workspace_id = Column(String(36), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    user_property_id = Column(String(36), primary_key=True)

    # JSON-encoded value
    value = Column(Text, nullable=False)
    max_event_time = Column(DateTime, nullable=False)
    assigned_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<UserPropertyAssignment user={self.user_id} property={self.user_property_id}>"
