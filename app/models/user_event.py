"""
Append-only user event store.

identify events carry traits, track events carry an event name and
properties. event_time is when the event happened on the client;
processing_time is when it landed here and is what recompute windows scan.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint
from app.database import Base


class UserEventType(str, enum.Enum):
    IDENTIFY = "identify"
    TRACK = "track"


class UserEvent(Base):
    __tablename__ = "user_events"
    __table_args__ = (
        UniqueConstraint("workspace_id", "message_id", name="uq_user_events_workspace_message"),
        Index("ix_user_events_workspace_processing_time", "workspace_id", "processing_time"),
        Index("ix_user_events_workspace_user", "workspace_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String(36), nullable=False)
    message_id = Column(String(255), nullable=False)

    user_id = Column(String(255), nullable=False)
    anonymous_id = Column(String(255))

    event_type = Column(String(20), nullable=False)
    event = Column(String(255))
    traits = Column(JSON)
    properties = Column(JSON)

    event_time = Column(DateTime, nullable=False)
    processing_time = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<UserEvent {self.event_type} {self.event or ''} user={self.user_id}>"
