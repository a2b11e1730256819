"""
App model: a user-owned deployable unit tied to a Git repository.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from shipyard.core.database import Base

DEFAULT_BRANCH = "main"


class AppStatus(str, enum.Enum):
    """Display labels written to apps.status."""

    PENDING = "Pending"
    BUILDING = "Building"
    HEALTHY = "Healthy"
    FAILED = "Failed"


class App(Base):
    """Deployable app."""

    __tablename__ = "apps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=False, unique=True)
    repo_url = Column(Text, nullable=False)
    branch = Column(String(255), nullable=True)
    url = Column(String(255), nullable=True)
    # Free-text label; the vocabulary is enforced in code, not by the schema
    status = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    deployments = relationship(
        "Deployment",
        back_populates="app",
        cascade="all, delete-orphan",
        order_by="Deployment.id",
    )

    @property
    def effective_branch(self) -> str:
        """Branch to check out; empty means the default branch."""
        branch = (self.branch or "").strip()
        return branch or DEFAULT_BRANCH
