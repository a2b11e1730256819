"""
Deployment worker process.

Runs one DeploymentEngine until SIGINT or SIGTERM. Start as many workers as
needed for availability; they serialize builds through the database lock.

Usage:
    python -m shipyard.worker
"""
import asyncio
import logging
import signal
from typing import Optional

from shipyard.core.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=settings.get_log_level(), format=LOG_FORMAT)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    def request_stop(signame: str) -> None:
        logger.info(f"Received {signame}, stopping after the current step")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, sig.name)
        except NotImplementedError:
            # Platforms without loop signal support fall back to KeyboardInterrupt
            logger.debug(f"Signal handler for {sig.name} not supported")


async def run_worker(stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Build the engine from settings and run it until stopped.

    Args:
        stop_event: Shutdown signal; signal handlers set it when omitted
    """
    from shipyard.core.database import async_session_maker, engine
    from shipyard.services.deployment.build_lock import build_lock_for
    from shipyard.services.deployment.engine import DeploymentEngine
    from shipyard.services.deployment.store import DeploymentStore
    from shipyard.services.docker.builder_service import ImageBuilder
    from shipyard.services.docker.client import DockerEngineClient
    from shipyard.services.docker.launcher_service import ContainerLauncher
    from shipyard.services.repository.fetcher import RepositoryFetcher

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(asyncio.get_running_loop(), stop_event)

    docker = DockerEngineClient()
    try:
        try:
            await docker.ping()
            logger.info(f"Connected to Docker at {docker.host}")
        except Exception as e:
            # Not fatal: the engine keeps running and builds fail until it is back
            logger.warning(f"Docker daemon not reachable at {docker.host}: {e}")

        deployment_engine = DeploymentEngine(
            store=DeploymentStore(async_session_maker),
            lock=build_lock_for(engine),
            fetcher=RepositoryFetcher(),
            builder=ImageBuilder(docker),
            launcher=ContainerLauncher(docker),
        )
        await deployment_engine.run(stop_event)
    finally:
        await docker.aclose()
        await engine.dispose()


def main() -> None:
    """Console entry point."""
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} worker ({settings.ENVIRONMENT})")
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    logger.info("Worker exited")


if __name__ == "__main__":
    main()
