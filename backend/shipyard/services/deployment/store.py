"""
Deployment store: the durable record of deployment state.

Every call runs in its own short-lived session so that a failed write never
leaves a half-open transaction behind for the next pipeline step. Storage
failures surface as DatabaseError; domain errors (not found, invalid
transition) pass through unchanged.
"""
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipyard.core.exceptions import DatabaseError
from shipyard.models.app import App, AppStatus
from shipyard.models.deployment import Deployment
from shipyard.repositories.app_repository import AppRepository
from shipyard.repositories.deployment_repository import DeploymentRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeploymentStore:
    """
    Session-per-call facade over the app and deployment repositories.

    Responsibilities:
    - Queue semantics (enqueue, dequeue_next_pending)
    - Single-field deployment updates
    - App status bookkeeping driven by the engine
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        """
        Initialize the store.

        Args:
            session_maker: Session factory; defaults to the process-wide one
        """
        if session_maker is None:
            from shipyard.core.database import async_session_maker
            session_maker = async_session_maker
        self._session_maker = session_maker

    async def _run(self, operation: str, func: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_maker() as db:
            try:
                return await func(db)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Database error during {operation}: {e}")
                raise DatabaseError(operation, str(e)) from e

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    async def enqueue(self, app_id: int) -> Deployment:
        """Create a pending deployment for an app and mark the app Pending."""
        async def op(db: AsyncSession) -> Deployment:
            await AppRepository(db).get_by_id_or_raise(app_id)
            deployment = await DeploymentRepository(db).create_pending(app_id)
            await AppRepository(db).update_status(app_id, AppStatus.PENDING)
            return deployment

        deployment = await self._run("enqueue", op)
        logger.info(f"Enqueued deployment {deployment.id} for app {app_id}")
        return deployment

    async def dequeue_next_pending(self) -> Optional[Deployment]:
        """
        Claim the oldest pending deployment (now building).

        Returns None when the queue is empty; that is not an error.
        """
        return await self._run(
            "dequeue_next_pending",
            lambda db: DeploymentRepository(db).dequeue_next_pending(),
        )

    async def list_pending(self) -> List[Deployment]:
        return await self._run("list_pending", lambda db: DeploymentRepository(db).list_pending())

    async def recover_orphaned(self, message: str) -> List[Deployment]:
        """Fail deployments stuck in building and mark their apps Failed."""
        async def op(db: AsyncSession) -> List[Deployment]:
            orphaned = await DeploymentRepository(db).fail_orphaned(message)
            apps = AppRepository(db)
            for app_id in sorted({d.app_id for d in orphaned}):
                app = await apps.get_by_id(app_id)
                if app is not None:
                    await apps.update_status(app_id, AppStatus.FAILED)
            return orphaned

        return await self._run("recover_orphaned", op)

    # -------------------------------------------------------------------------
    # Deployment reads and updates
    # -------------------------------------------------------------------------

    async def get_by_id(self, deployment_id: int) -> Deployment:
        """Point lookup; raises DeploymentNotFoundError if absent."""
        return await self._run(
            "get_deployment",
            lambda db: DeploymentRepository(db).get_by_id_or_raise(deployment_id),
        )

    async def list_for_app(self, app_id: int) -> List[Deployment]:
        return await self._run(
            "list_deployments_for_app",
            lambda db: DeploymentRepository(db).list_for_app(app_id),
        )

    async def update_status(self, deployment_id: int, status: str) -> Deployment:
        return await self._run(
            "update_status",
            lambda db: DeploymentRepository(db).update_status(deployment_id, status),
        )

    async def update_error(self, deployment_id: int, message: str) -> Deployment:
        return await self._run(
            "update_error",
            lambda db: DeploymentRepository(db).update_error(deployment_id, message),
        )

    async def update_image(self, deployment_id: int, image_name: str) -> Deployment:
        return await self._run(
            "update_image",
            lambda db: DeploymentRepository(db).update_image(deployment_id, image_name),
        )

    async def update_container(self, deployment_id: int, container_id: str, subdomain: str) -> Deployment:
        return await self._run(
            "update_container",
            lambda db: DeploymentRepository(db).update_container(deployment_id, container_id, subdomain),
        )

    async def update_build_log(self, deployment_id: int, build_log: str) -> Deployment:
        return await self._run(
            "update_build_log",
            lambda db: DeploymentRepository(db).update_build_log(deployment_id, build_log),
        )

    async def update_runtime_log(self, deployment_id: int, runtime_log: str) -> Deployment:
        return await self._run(
            "update_runtime_log",
            lambda db: DeploymentRepository(db).update_runtime_log(deployment_id, runtime_log),
        )

    # -------------------------------------------------------------------------
    # Apps
    # -------------------------------------------------------------------------

    async def get_app(self, app_id: int) -> App:
        """Point lookup; raises AppNotFoundError if absent."""
        return await self._run("get_app", lambda db: AppRepository(db).get_by_id_or_raise(app_id))

    async def update_app_status(self, app_id: int, status: AppStatus) -> App:
        return await self._run(
            "update_app_status",
            lambda db: AppRepository(db).update_status(app_id, status),
        )

    async def mark_app_healthy(self, app_id: int, url: str) -> App:
        """Set the app Healthy and publish its URL."""
        return await self._run(
            "mark_app_healthy",
            lambda db: AppRepository(db).update_status_and_url(app_id, AppStatus.HEALTHY, url),
        )
