"""
Deployment model: one build-and-run attempt for an app.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from shipyard.core.database import Base
from shipyard.core.exceptions import InvalidStatusError


class DeploymentStatus(str, enum.Enum):
    """Deployment state machine labels."""

    PENDING = "pending"
    BUILDING = "building"
    RUNNING = "running"
    FAILED = "failed"


# Forward-only moves; running and failed are terminal
ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.BUILDING}),
    DeploymentStatus.BUILDING: frozenset({DeploymentStatus.RUNNING, DeploymentStatus.FAILED}),
    DeploymentStatus.RUNNING: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
}


def validate_status(status) -> DeploymentStatus:
    """
    Coerce a raw status label into a DeploymentStatus.

    Raises:
        InvalidStatusError: If the label is not a known status
    """
    try:
        return DeploymentStatus(status)
    except ValueError:
        raise InvalidStatusError(str(status), [s.value for s in DeploymentStatus])


def can_transition(current, new) -> bool:
    """Check whether a deployment may move from `current` to `new`."""
    return validate_status(new) in ALLOWED_TRANSITIONS[validate_status(current)]


class Deployment(Base):
    """Deployment record."""

    __tablename__ = "deployments"
    __table_args__ = (
        # Queue order for dequeue_next_pending
        Index("ix_deployments_status_created_at", "status", "created_at", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=DeploymentStatus.PENDING.value, index=True)
    image_name = Column(String(255), nullable=True)
    container_id = Column(String(255), nullable=True)
    subdomain = Column(String(255), nullable=True, index=True)
    build_log = Column(Text, nullable=True)
    runtime_log = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    app = relationship("App", back_populates="deployments")

    @property
    def is_running(self) -> bool:
        """Check if the deployment is currently running."""
        return self.status == DeploymentStatus.RUNNING.value and bool(self.container_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeploymentStatus.RUNNING.value, DeploymentStatus.FAILED.value)
