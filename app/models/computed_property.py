"""
Computed property history and period bookkeeping.

computed_property_assignments is append-only: each write of a
(workspace, type, definition, user) gets the next revision number, and rows
are inserted with ON CONFLICT DO NOTHING on that key, never updated or
deleted in the normal path. computed_property_periods records each
successfully committed recompute window per workspace and step.
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, Index, UniqueConstraint
)
from sqlalchemy.sql import func
from app.database import Base


class ComputedPropertyType(str, enum.Enum):
    SEGMENT = "segment"
    USER_PROPERTY = "user_property"


class ComputedPropertyStep(str, enum.Enum):
    COMPUTE_ASSIGNMENTS = "ComputeAssignments"


class ComputedPropertyAssignment(Base):
    """History row mirroring an assignment write."""

    __tablename__ = "computed_property_assignments"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "type", "computed_property_id", "user_id", "revision",
            name="uq_computed_property_assignments_revision",
        ),
        Index(
            "ix_computed_property_assignments_recent",
            "workspace_id", "type", "computed_property_id", "assigned_at",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String(36), nullable=False)
    type = Column(String(20), nullable=False)
    computed_property_id = Column(String(36), nullable=False)
    user_id = Column(String(255), nullable=False)
    # 1 for the first write of this user and definition, +1 per later write
    revision = Column(Integer, nullable=False, default=1)

    segment_value = Column(Boolean, nullable=False, default=False)
    user_property_value = Column(Text, nullable=False, default="")

    max_event_time = Column(DateTime, nullable=False)
    definition_version = Column(String(64), nullable=False)
    assigned_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return (
            f"<ComputedPropertyAssignment {self.type} {self.computed_property_id} "
            f"user={self.user_id} at={self.assigned_at}>"
        )


class ComputedPropertyPeriod(Base):
    """A committed [period_start, period_end] window for one workspace and step."""

    __tablename__ = "computed_property_periods"
    __table_args__ = (
        Index("ix_computed_property_periods_workspace_step", "workspace_id", "step", "period_end"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String(36), nullable=False)
    step = Column(String(50), nullable=False)

    # None for the first period of a workspace
    period_start = Column(DateTime)
    period_end = Column(DateTime, nullable=False)

    # {definition_id: version token} covered by this period
    definition_versions = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<ComputedPropertyPeriod {self.step} {self.period_start} -> {self.period_end}>"
