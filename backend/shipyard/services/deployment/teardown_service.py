"""
Service for tearing down everything an app's deployments left behind.

Handles:
- Stopping and removing containers (by ID, falling back to container name)
- Removing built images
- Removing leftover checkouts
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from shipyard.core.exceptions import (
    ContainerNotFoundError,
    DockerAPIError,
    DockerDaemonError,
)
from shipyard.models.deployment import Deployment
from shipyard.services.docker.builder_service import ImageBuilder
from shipyard.services.docker.launcher_service import ContainerLauncher
from shipyard.services.repository.fetcher import RepositoryFetcher

logger = logging.getLogger(__name__)

_RUNTIME_ERRORS = (ContainerNotFoundError, DockerAPIError, DockerDaemonError)


@dataclass
class TeardownSummary:
    """Counts of what a teardown removed."""

    app_id: int
    deployments: int = 0
    containers_stopped: int = 0
    containers_removed: int = 0
    images_removed: int = 0
    workspaces_removed: int = 0
    failures: List[str] = field(default_factory=list)


class AppTeardownService:
    """
    Releases runtime resources of an app before it is deleted.

    Every per-item failure is logged and counted; teardown never raises for
    a single container or image so that one stale reference cannot block
    deleting the app.
    """

    def __init__(
        self,
        store,
        launcher: ContainerLauncher,
        builder: ImageBuilder,
        fetcher: RepositoryFetcher,
    ):
        self.store = store
        self.launcher = launcher
        self.builder = builder
        self.fetcher = fetcher

    async def _on_container(self, action, deployment: Deployment, summary: TeardownSummary, verb: str) -> bool:
        targets = [t for t in (deployment.container_id, deployment.subdomain) if t]
        if not targets:
            logger.debug(f"Deployment {deployment.id} never had a container")
            return False

        last_error: Optional[Exception] = None
        for target in dict.fromkeys(targets):
            try:
                await action(target)
                logger.info(f"{verb.capitalize()} container {target} (deployment {deployment.id})")
                return True
            except _RUNTIME_ERRORS as e:
                logger.warning(f"Failed to {verb} container {target}: {e.message}")
                last_error = e

        summary.failures.append(f"{verb} deployment {deployment.id}: {last_error.message}")
        return False

    async def teardown(self, app_id: int) -> TeardownSummary:
        """
        Stop and remove an app's containers, images and checkouts.

        Args:
            app_id: App being deleted

        Returns:
            TeardownSummary with per-resource counts and failure notes

        Raises:
            DatabaseError: If the app's deployments cannot be listed
        """
        deployments = await self.store.list_for_app(app_id)
        summary = TeardownSummary(app_id=app_id, deployments=len(deployments))
        logger.info(f"Tearing down app {app_id}: {len(deployments)} deployment(s)")

        for deployment in deployments:
            if deployment.container_id and await self._on_container(
                self.launcher.stop, deployment, summary, "stop"
            ):
                summary.containers_stopped += 1

        for deployment in deployments:
            if await self._on_container(self.launcher.remove, deployment, summary, "remove"):
                summary.containers_removed += 1

        for deployment in deployments:
            if not deployment.image_name:
                continue
            try:
                await self.builder.remove(deployment.image_name)
                summary.images_removed += 1
            except _RUNTIME_ERRORS as e:
                logger.warning(f"Failed to remove image {deployment.image_name}: {e.message}")
                summary.failures.append(f"remove image {deployment.image_name}: {e.message}")

        for deployment in deployments:
            if await asyncio.to_thread(self.fetcher.cleanup, deployment.id):
                summary.workspaces_removed += 1

        logger.info(
            f"Teardown of app {app_id}: {summary.containers_removed} container(s), "
            f"{summary.images_removed} image(s), {summary.workspaces_removed} workspace(s) removed, "
            f"{len(summary.failures)} failure(s)"
        )
        return summary
