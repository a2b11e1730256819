"""
Container runtime services.

- DockerEngineClient: async Docker Engine API client
- BuildContextService: tar build context assembly
- ImageBuilder: image builds with log capture
- ContainerLauncher: routed container lifecycle
"""
from shipyard.services.docker.client import DockerEngineClient
from shipyard.services.docker.context_service import BuildContextService, context_service
from shipyard.services.docker.builder_service import BuildResult, ImageBuilder, image_name_for
from shipyard.services.docker.launcher_service import ContainerLauncher, subdomain_for

__all__ = [
    "DockerEngineClient",
    "BuildContextService",
    "ImageBuilder",
    "BuildResult",
    "ContainerLauncher",
    "image_name_for",
    "subdomain_for",
    # Singleton instances
    "context_service",
]
