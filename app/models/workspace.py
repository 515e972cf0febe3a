from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from app.database import Base


class Workspace(Base):
    """Tenant boundary. Every computed-property row is scoped by workspace_id."""

    __tablename__ = "workspaces"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    def __repr__(self):
        return f"<Workspace id={self.id} name='{self.name}'>"
