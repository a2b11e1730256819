"""
Repository for Deployment entity database operations.

Also carries the queue semantics: `dequeue_next_pending` claims the oldest
pending row for the caller that holds the global build lock.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from shipyard.core.exceptions import DeploymentNotFoundError, InvalidStatusTransitionError
from shipyard.models.deployment import Deployment, DeploymentStatus, can_transition, validate_status
from shipyard.repositories.base import BaseRepository


class DeploymentRepository(BaseRepository[Deployment]):
    """Repository for Deployment database operations."""

    model = Deployment

    async def get_by_id_or_raise(self, id: int) -> Deployment:
        """Get a deployment by ID, raising exception if not found."""
        deployment = await self.get_by_id(id)
        if not deployment:
            raise DeploymentNotFoundError(str(id))
        return deployment

    async def list_pending(self) -> List[Deployment]:
        """
        List pending deployments, oldest first.

        Only the deprecated non-locking poller reads the queue this way;
        the engine claims work through dequeue_next_pending().
        """
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.status == DeploymentStatus.PENDING.value)
            .order_by(Deployment.created_at, Deployment.id)
        )
        return list(result.scalars().all())

    async def list_for_app(self, app_id: int) -> List[Deployment]:
        """List every deployment of an app in creation order."""
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.app_id == app_id)
            .order_by(Deployment.created_at, Deployment.id)
        )
        return list(result.scalars().all())

    async def create_pending(self, app_id: int) -> Deployment:
        """Insert a new deployment in the pending state."""
        deployment = Deployment(app_id=app_id, status=DeploymentStatus.PENDING.value)
        return await self.create(deployment)

    async def dequeue_next_pending(self) -> Optional[Deployment]:
        """
        Claim the oldest pending deployment and move it to building.

        Ordering is created_at, then id for equal timestamps. The row is read
        with FOR UPDATE SKIP LOCKED, so even without the advisory lock two
        callers can never claim the same row.

        Returns:
            The claimed deployment, or None when the queue is empty
        """
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.status == DeploymentStatus.PENDING.value)
            .order_by(Deployment.created_at, Deployment.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            await self.db.rollback()
            return None

        deployment.status = DeploymentStatus.BUILDING.value
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_status(self, deployment_id: int, status: str) -> Deployment:
        """
        Update deployment status.

        Args:
            deployment_id: Deployment ID
            status: New status value

        Returns:
            Updated deployment

        Raises:
            DeploymentNotFoundError: If deployment not found
            InvalidStatusError: If status is not a known label
            InvalidStatusTransitionError: If the move is not forward
        """
        new_status = validate_status(status)
        deployment = await self.get_by_id_or_raise(deployment_id)
        self._check_transition(deployment, new_status)
        deployment.status = new_status.value
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_error(self, deployment_id: int, message: str) -> Deployment:
        """
        Record a failure: sets error_message and status=failed in one commit.

        Raises:
            DeploymentNotFoundError: If deployment not found
            InvalidStatusTransitionError: If the deployment is already terminal
        """
        deployment = await self.get_by_id_or_raise(deployment_id)
        self._check_transition(deployment, DeploymentStatus.FAILED)
        deployment.status = DeploymentStatus.FAILED.value
        deployment.error_message = message or "Unknown error"
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_image(self, deployment_id: int, image_name: str) -> Deployment:
        """Store the built image reference."""
        deployment = await self.get_by_id_or_raise(deployment_id)
        deployment.image_name = image_name
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_container(
        self,
        deployment_id: int,
        container_id: str,
        subdomain: str,
    ) -> Deployment:
        """Store container ID and subdomain together."""
        deployment = await self.get_by_id_or_raise(deployment_id)
        deployment.container_id = container_id
        deployment.subdomain = subdomain
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_build_log(self, deployment_id: int, build_log: str) -> Deployment:
        """Store the captured build output."""
        deployment = await self.get_by_id_or_raise(deployment_id)
        deployment.build_log = build_log
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def update_runtime_log(self, deployment_id: int, runtime_log: str) -> Deployment:
        """Store the latest demultiplexed container output."""
        deployment = await self.get_by_id_or_raise(deployment_id)
        deployment.runtime_log = runtime_log
        deployment.updated_at = datetime.utcnow()
        await self.db.commit()
        return deployment

    async def fail_orphaned(self, message: str) -> List[Deployment]:
        """
        Mark every deployment left in building as failed.

        Only safe while holding the global build lock: at that point no
        other worker can be processing a deployment.

        Returns:
            The deployments that were recovered
        """
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.status == DeploymentStatus.BUILDING.value)
            .order_by(Deployment.id)
            .with_for_update(skip_locked=True)
        )
        orphaned = list(result.scalars().all())
        if not orphaned:
            await self.db.rollback()
            return []

        now = datetime.utcnow()
        for deployment in orphaned:
            deployment.status = DeploymentStatus.FAILED.value
            deployment.error_message = message
            deployment.updated_at = now
        await self.db.commit()
        return orphaned

    def _check_transition(self, deployment: Deployment, new_status: DeploymentStatus) -> None:
        if not can_transition(deployment.status, new_status):
            raise InvalidStatusTransitionError(str(deployment.id), deployment.status, new_status.value)
