from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from app.database import Base


class ManualSegmentMember(Base):
    """Externally supplied membership of a manual segment at a given version."""

    __tablename__ = "manual_segment_members"

    workspace_id = Column(String(36), primary_key=True)
    segment_id = Column(String(36), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    version = Column(Integer, primary_key=True)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<ManualSegmentMember segment={self.segment_id} user={self.user_id} v{self.version}>"
