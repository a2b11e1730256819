"""
Service for refreshing the runtime log stored on a deployment.
"""
import logging
from typing import Optional

from shipyard.core.exceptions import (
    ContainerNotFoundError,
    DatabaseError,
    DockerAPIError,
    DockerDaemonError,
)
from shipyard.services.docker.launcher_service import ContainerLauncher

logger = logging.getLogger(__name__)


class RuntimeLogService:
    """Pulls recent container output into deployments.runtime_log."""

    def __init__(self, store, launcher: ContainerLauncher, tail: Optional[int] = None):
        self.store = store
        self.launcher = launcher
        self.tail = tail

    async def refresh(self, deployment_id: int) -> str:
        """
        Fetch, demultiplex and store the latest runtime output.

        Only running deployments have a container to read from; for any other
        deployment, or when the runtime cannot be read, the stored text is
        returned unchanged.

        Args:
            deployment_id: Deployment to refresh

        Returns:
            Runtime log text

        Raises:
            DeploymentNotFoundError: If the deployment does not exist
        """
        deployment = await self.store.get_by_id(deployment_id)
        if not deployment.is_running:
            return deployment.runtime_log or ""

        try:
            runtime_log = await self.launcher.get_runtime_logs(deployment.container_id, tail=self.tail)
        except (ContainerNotFoundError, DockerAPIError, DockerDaemonError) as e:
            logger.warning(f"Could not read runtime logs for deployment {deployment_id}: {e.message}")
            return deployment.runtime_log or ""

        text = runtime_log.text
        try:
            await self.store.update_runtime_log(deployment_id, text)
        except DatabaseError as e:
            logger.warning(f"Could not store runtime logs for deployment {deployment_id}: {e.message}")
        return text
