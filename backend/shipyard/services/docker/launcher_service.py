"""
Service for launching application containers behind the reverse proxy.
"""
import logging
from typing import Any, Dict, Optional

from shipyard.core.config import settings
from shipyard.core.exceptions import (
    ContainerLaunchError,
    ContainerNotFoundError,
    DockerAPIError,
    DockerDaemonError,
)
from shipyard.services.docker.client import DockerEngineClient
from shipyard.services.logs.interpreter import RuntimeLog, demux_runtime_log

logger = logging.getLogger(__name__)

RESTART_POLICY = "unless-stopped"


def subdomain_for(app_name: str, deployment_id: int) -> str:
    """Deterministic routing subdomain, also used as the container name."""
    return f"{app_name.lower()}-{deployment_id}"


class ContainerLauncher:
    """
    Creates and starts containers carrying Traefik routing labels.

    Applications must listen on CONTAINER_PORT; the proxy reaches them over
    PROXY_NETWORK and terminates TLS with CERT_RESOLVER.
    """

    def __init__(
        self,
        client: DockerEngineClient,
        base_domain: Optional[str] = None,
        network: Optional[str] = None,
        cert_resolver: Optional[str] = None,
        port: Optional[int] = None,
    ):
        self.client = client
        self.base_domain = base_domain or settings.BASE_DOMAIN
        self.network = network or settings.PROXY_NETWORK
        self.cert_resolver = cert_resolver or settings.CERT_RESOLVER
        self.port = port or settings.CONTAINER_PORT

    def url_for(self, subdomain: str) -> str:
        return f"https://{subdomain}.{self.base_domain}"

    def routing_labels(self, subdomain: str) -> Dict[str, str]:
        """
        Build the reverse-proxy labels for a container.

        Args:
            subdomain: Router and service name, and host prefix

        Returns:
            Label mapping for the container create body
        """
        router = f"traefik.http.routers.{subdomain}"
        return {
            "traefik.enable": "true",
            f"{router}.rule": f"Host(`{subdomain}.{self.base_domain}`)",
            f"{router}.tls": "true",
            f"{router}.tls.certresolver": self.cert_resolver,
            f"traefik.http.services.{subdomain}.loadbalancer.server.port": str(self.port),
            "traefik.docker.network": self.network,
        }

    def container_config(self, image_name: str, subdomain: str) -> Dict[str, Any]:
        return {
            "Image": image_name,
            "Labels": self.routing_labels(subdomain),
            "ExposedPorts": {f"{self.port}/tcp": {}},
            "HostConfig": {
                "AutoRemove": False,
                "RestartPolicy": {"Name": RESTART_POLICY},
                "NetworkMode": self.network,
            },
            "NetworkingConfig": {
                "EndpointsConfig": {self.network: {}},
            },
        }

    async def launch(self, image_name: str, subdomain: str) -> str:
        """
        Create and start a container for an image.

        Args:
            image_name: Image reference to run
            subdomain: Routing subdomain; also the container name

        Returns:
            Container ID

        Raises:
            ContainerLaunchError: With the runtime's error text
        """
        logger.info(f"Launching {image_name} as {subdomain}.{self.base_domain}")

        try:
            container_id = await self.client.create_container(
                subdomain, self.container_config(image_name, subdomain)
            )
        except (DockerAPIError, DockerDaemonError) as e:
            raise ContainerLaunchError(image_name, f"failed to create container: {e.reason}") from e

        try:
            await self.client.start_container(container_id)
        except (DockerAPIError, DockerDaemonError, ContainerNotFoundError) as e:
            reason = getattr(e, "reason", e.message)
            await self._discard(container_id)
            raise ContainerLaunchError(image_name, f"failed to start container: {reason}") from e

        logger.info(f"Container {container_id[:12]} started for {subdomain}")
        return container_id

    async def _discard(self, container_id: str) -> None:
        try:
            await self.client.remove_container(container_id, force=True)
        except (DockerAPIError, DockerDaemonError, ContainerNotFoundError) as e:
            logger.warning(f"Could not remove unstarted container {container_id[:12]}: {e.message}")

    async def stop(self, container_id: str) -> None:
        await self.client.stop_container(container_id)

    async def remove(self, container_id: str) -> None:
        await self.client.remove_container(container_id, force=True)

    async def get_runtime_logs(self, container_id: str, tail: Optional[int] = None) -> RuntimeLog:
        """
        Fetch and demultiplex recent container output.

        Args:
            container_id: Container ID or name
            tail: Number of lines (defaults to RUNTIME_LOG_TAIL)

        Returns:
            RuntimeLog; `error` is set when the stream was truncated
        """
        data = await self.client.container_logs(container_id, tail=tail or settings.RUNTIME_LOG_TAIL)
        result = demux_runtime_log(data)
        if result.error:
            logger.warning(f"Runtime log of {container_id[:12]} is damaged: {result.error}")
        return result
