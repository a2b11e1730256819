"""
Service for building application images.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from shipyard.core.config import settings
from shipyard.core.exceptions import BuildError, DockerAPIError, DockerDaemonError
from shipyard.services.docker.client import DockerEngineClient
from shipyard.services.docker.context_service import BuildContextService, context_service
from shipyard.services.logs.interpreter import BuildLogCollector

logger = logging.getLogger(__name__)


def image_name_for(app_name: str, deployment_id: int, namespace: Optional[str] = None) -> str:
    """
    Deterministic image reference for a deployment.

    Args:
        app_name: Display name of the app
        deployment_id: Deployment identifier, used as the tag
        namespace: Image name prefix (defaults to IMAGE_NAMESPACE)

    Returns:
        Image reference of the form "{namespace}-{app name}:{deployment id}"
    """
    namespace = namespace or settings.IMAGE_NAMESPACE
    return f"{namespace}-{app_name.lower()}:{deployment_id}"


@dataclass
class BuildResult:
    """Result of a successful image build."""

    image_name: str
    build_log: str
    image_id: Optional[str] = None
    malformed_lines: int = 0


class ImageBuilder:
    """
    Builds images through the runtime's build API.

    The build output is collected even when the build fails so that it can
    be stored on the deployment.
    """

    def __init__(
        self,
        client: DockerEngineClient,
        contexts: Optional[BuildContextService] = None,
        dockerfile: Optional[str] = None,
    ):
        self.client = client
        self.contexts = contexts or context_service
        self.dockerfile = dockerfile or settings.BUILD_DESCRIPTOR

    async def build(self, repo_path: str, image_name: str) -> BuildResult:
        """
        Build and tag an image from a checkout.

        Args:
            repo_path: Checkout directory used as build context
            image_name: Tag for the resulting image

        Returns:
            BuildResult with the collected build log

        Raises:
            BuildError: If the context cannot be archived, the daemon is
                unreachable, or a build instruction fails. `build_log` holds
                whatever output was received.
        """
        logger.info(f"Building image {image_name} from {repo_path}")

        try:
            context = await asyncio.to_thread(self.contexts.create_context, repo_path)
        except OSError as e:
            raise BuildError(image_name, f"failed to create build context: {e}") from e

        collector = BuildLogCollector()
        try:
            async for line in self.client.build_image(context, image_name, self.dockerfile):
                collector.feed_line(line)
        except (DockerDaemonError, DockerAPIError) as e:
            logger.error(f"Build of {image_name} interrupted: {e.message}")
            raise BuildError(image_name, e.reason, build_log=collector.text) from e

        if collector.error:
            logger.error(f"Build of {image_name} failed: {collector.error}")
            raise BuildError(image_name, collector.error, build_log=collector.text)

        if collector.decode_errors:
            logger.warning(f"Build of {image_name}: {collector.decode_errors} unparseable log line(s) kept verbatim")

        logger.info(f"Built image {image_name}")
        return BuildResult(
            image_name=image_name,
            build_log=collector.text,
            image_id=collector.image_id,
            malformed_lines=collector.decode_errors,
        )

    async def remove(self, image_name: str) -> None:
        await self.client.remove_image(image_name, force=True)
