"""
Async client for the Docker Engine API.

Talks HTTP to the daemon over its Unix socket (or TCP), so every call is a
coroutine and container logs arrive as the raw multiplexed byte stream.
"""
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from shipyard.core.config import settings
from shipyard.core.exceptions import (
    ContainerNotFoundError,
    DockerAPIError,
    DockerDaemonError,
)

logger = logging.getLogger(__name__)

# Host part is ignored when talking over a Unix socket
UNIX_SOCKET_BASE_URL = "http://docker"


def _resolve_base_url(host: str) -> str:
    if host.startswith("unix://"):
        return UNIX_SOCKET_BASE_URL
    if host.startswith("tcp://"):
        return "http://" + host[len("tcp://"):]
    if host.startswith(("http://", "https://")):
        return host
    raise ValueError(f"Unsupported DOCKER_HOST: {host}")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text.strip() or response.reason_phrase


class DockerEngineClient:
    """
    Thin wrapper over the Docker Engine HTTP API.

    Transport failures raise DockerDaemonError, error responses raise
    DockerAPIError with the daemon's message, and a 404 on a container
    endpoint raises ContainerNotFoundError.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        build_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize DockerEngineClient.

        Args:
            host: unix:// socket path or tcp://host:port
            api_version: Engine API version prefix, e.g. "v1.43"
            timeout: Seconds for regular calls
            build_timeout: Seconds for an image build
            transport: Custom httpx transport (tests)
        """
        self.host = host or settings.DOCKER_HOST
        self.api_version = api_version or settings.DOCKER_API_VERSION
        self.timeout = timeout or settings.DOCKER_TIMEOUT
        self.build_timeout = build_timeout or settings.DOCKER_BUILD_TIMEOUT

        base_url = _resolve_base_url(self.host)
        if transport is None and self.host.startswith("unix://"):
            transport = httpx.AsyncHTTPTransport(uds=self.host[len("unix://"):])

        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/{self.api_version}",
            transport=transport,
            timeout=self.timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        container_id: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise DockerDaemonError(f"{method} {path}: {e}") from e

        if response.status_code == 404 and container_id is not None:
            raise ContainerNotFoundError(container_id)
        if response.status_code >= 400:
            raise DockerAPIError(response.status_code, _error_message(response))
        return response

    async def ping(self) -> bool:
        """Check that the daemon answers."""
        response = await self._request("GET", "/_ping")
        return response.text.strip() == "OK"

    async def build_image(
        self,
        context: bytes,
        tag: str,
        dockerfile: str = "Dockerfile",
    ) -> AsyncIterator[str]:
        """
        Build an image from a tar build context.

        Args:
            context: Uncompressed tar archive of the build directory
            tag: Image reference to tag the result with
            dockerfile: Descriptor path inside the archive

        Yields:
            Raw JSON lines of the build progress stream

        Raises:
            DockerDaemonError: If the daemon cannot be reached mid-build
            DockerAPIError: If the daemon rejects the build request
        """
        params = {"t": tag, "dockerfile": dockerfile, "rm": "true", "forcerm": "true"}
        headers = {"Content-Type": "application/x-tar"}
        try:
            async with self._client.stream(
                "POST",
                "/build",
                params=params,
                content=context,
                headers=headers,
                timeout=self.build_timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise DockerAPIError(response.status_code, _error_message(response))
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
        except httpx.TransportError as e:
            raise DockerDaemonError(f"POST /build: {e}") from e

    async def create_container(self, name: str, config: Dict[str, Any]) -> str:
        """
        Create a container.

        Args:
            name: Container name
            config: Container create body (Image, Labels, HostConfig, ...)

        Returns:
            The new container's ID
        """
        response = await self._request(
            "POST",
            "/containers/create",
            params={"name": name},
            json=config,
        )
        data = response.json()
        for warning in data.get("Warnings") or []:
            logger.warning(f"Docker warning for container {name}: {warning}")
        return data["Id"]

    async def start_container(self, container_id: str) -> None:
        # 304 means already started
        await self._request("POST", f"/containers/{container_id}/start", container_id=container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            container_id=container_id,
            params={"t": str(timeout)},
            timeout=self.timeout + timeout,
        )

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            container_id=container_id,
            params={"force": "true" if force else "false"},
        )

    async def remove_image(self, image: str, force: bool = False) -> None:
        await self._request(
            "DELETE",
            f"/images/{image}",
            params={"force": "true" if force else "false"},
        )

    async def container_logs(self, container_id: str, tail: int = 500) -> bytes:
        """
        Fetch recent container output.

        Args:
            container_id: Container ID or name
            tail: Number of lines from the end

        Returns:
            Raw log bytes (multiplexed unless the container has a TTY)
        """
        response = await self._request(
            "GET",
            f"/containers/{container_id}/logs",
            container_id=container_id,
            params={"stdout": "true", "stderr": "true", "tail": str(tail)},
        )
        return response.content

    async def aclose(self) -> None:
        await self._client.aclose()
