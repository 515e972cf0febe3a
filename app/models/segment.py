"""
Segment and user property definitions.

Both are identified by a global id and carry a JSON definition tree whose
shape is described by app.schemas.definitions. Names are unique per
workspace per resource kind.
"""

import enum

from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class SegmentStatus(str, enum.Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"


class Segment(Base):
    """Named rule producing a boolean membership per user."""

    __tablename__ = "segments"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_segments_workspace_name"),
    )

    id = Column(String(36), primary_key=True)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # {"entry_node": {...}, "nodes": [...]}
    definition = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=SegmentStatus.RUNNING.value)

    definition_updated_at = Column(DateTime, server_default=func.now())
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Segment id={self.id} name='{self.name}' status={self.status}>"


class UserProperty(Base):
    """Named rule producing a derived JSON value per user."""

    __tablename__ = "user_properties"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_user_properties_workspace_name"),
    )

    id = Column(String(36), primary_key=True)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # {"type": "Trait", "path": "email"}
    definition = Column(JSON, nullable=False)

    definition_updated_at = Column(DateTime, server_default=func.now())
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<UserProperty id={self.id} name='{self.name}'>"
