"""
Deployment engine: the build pipeline and the loop that feeds it.

One engine runs per worker process. Engines coordinate only through the
database: a deployment is dequeued and processed exclusively while holding
the system-wide build lock, so at most one deployment is building at a time.

Pipeline per deployment:
    load -> app Building -> clone -> Dockerfile check -> build -> launch
    -> record container -> running / app Healthy

A failing step records its error on the deployment (which moves it to
failed), marks the app Failed and ends that deployment. Nothing escapes
process_deployment except cancellation.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Optional

from shipyard.core.config import settings
from shipyard.core.exceptions import (
    BuildError,
    ContainerLaunchError,
    DatabaseError,
    DeploymentStepError,
    DomainException,
    MissingBuildDescriptorError,
    RepositoryFetchError,
)
from shipyard.models.app import App, AppStatus
from shipyard.models.deployment import DeploymentStatus
from shipyard.services.docker.builder_service import ImageBuilder, image_name_for
from shipyard.services.docker.launcher_service import ContainerLauncher, subdomain_for
from shipyard.services.repository.fetcher import RepositoryFetcher

logger = logging.getLogger(__name__)

ORPHANED_MESSAGE = "Deployment interrupted before completion (worker restarted or crashed)"


class PersistSeverity(str, enum.Enum):
    """How a failed bookkeeping write affects the rest of the pipeline."""

    BEST_EFFORT = "best_effort"  # logged, pipeline continues
    FATAL = "fatal"  # deployment aborted


class CycleOutcome(str, enum.Enum):
    """Result of one lock/dequeue/process cycle."""

    LOCK_BUSY = "lock_busy"
    QUEUE_EMPTY = "queue_empty"
    PROCESSED = "processed"
    INFRA_ERROR = "infra_error"


@dataclass
class PipelineResult:
    """Outcome of processing one deployment."""

    deployment_id: int
    status: str = DeploymentStatus.BUILDING.value
    app_id: Optional[int] = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    image_name: Optional[str] = None
    container_id: Optional[str] = None
    subdomain: Optional[str] = None
    url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.RUNNING.value


class DeploymentEngine:
    """
    Drives queued deployments through the pipeline.

    Collaborators are injected so several engines can share one store and
    one lock (the multi-instance setup) or run against fakes.
    """

    def __init__(
        self,
        store,
        lock,
        fetcher: RepositoryFetcher,
        builder: ImageBuilder,
        launcher: ContainerLauncher,
        name: str = "engine",
        poll_interval: Optional[float] = None,
        lock_retry_interval: Optional[float] = None,
        cleanup_workspaces: Optional[bool] = None,
    ):
        """
        Initialize DeploymentEngine.

        Args:
            store: DeploymentStore (or any object with the same methods)
            lock: Build lock exposing an async `hold()` context manager
            fetcher: Repository checkout service
            builder: Image builder
            launcher: Container launcher
            name: Label used in log messages
            poll_interval: Seconds to wait when the queue is empty
            lock_retry_interval: Seconds to wait when the lock is busy
            cleanup_workspaces: Remove checkouts once the build used them
        """
        self.store = store
        self.lock = lock
        self.fetcher = fetcher
        self.builder = builder
        self.launcher = launcher
        self.name = name
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.lock_retry_interval = (
            settings.LOCK_RETRY_INTERVAL if lock_retry_interval is None else lock_retry_interval
        )
        self.cleanup_workspaces = (
            settings.CLEANUP_WORKSPACES if cleanup_workspaces is None else cleanup_workspaces
        )

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def _persist(
        self,
        severity: PersistSeverity,
        what: str,
        operation: Awaitable[Any],
        result: PipelineResult,
    ) -> Any:
        """
        Await a store write with an explicit failure policy.

        Args:
            severity: BEST_EFFORT swallows the failure, FATAL aborts
            what: Short description for logs and warnings
            operation: The store coroutine
            result: Pipeline result collecting warnings

        Returns:
            The store call's return value, or None if a best-effort write failed

        Raises:
            DeploymentStepError: If a FATAL write failed
        """
        try:
            return await operation
        except Exception as e:
            if severity is PersistSeverity.FATAL:
                logger.error(f"[{self.name}] Deployment {result.deployment_id}: failed to {what}: {e}")
                raise DeploymentStepError(str(result.deployment_id), what, str(e)) from e
            logger.warning(f"[{self.name}] Deployment {result.deployment_id}: could not {what}: {e}")
            result.warnings.append(f"{what}: {e}")
            return None

    async def _record_failure(self, result: PipelineResult, message: str) -> None:
        """Mark the deployment failed with a message and its app Failed."""
        result.status = DeploymentStatus.FAILED.value
        result.error_message = message
        logger.error(f"[{self.name}] Deployment {result.deployment_id} failed: {message}")

        await self._persist(
            PersistSeverity.BEST_EFFORT,
            "record deployment error",
            self.store.update_error(result.deployment_id, message),
            result,
        )
        if result.app_id is not None:
            await self._persist(
                PersistSeverity.BEST_EFFORT,
                "mark app Failed",
                self.store.update_app_status(result.app_id, AppStatus.FAILED),
                result,
            )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def process_deployment(self, deployment_id: int) -> PipelineResult:
        """
        Run the pipeline for one claimed deployment.

        Any fault is caught here and recorded on the deployment, so the loop
        always gets a result back.

        Args:
            deployment_id: Deployment already moved to building

        Returns:
            PipelineResult describing how the deployment ended
        """
        result = PipelineResult(deployment_id=deployment_id)
        try:
            await self._run_pipeline(result)
        except DomainException as e:
            await self._record_failure(result, e.message)
        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected error processing deployment {deployment_id}")
            await self._record_failure(result, f"Internal error: {type(e).__name__}: {e}")

        if result.warnings:
            logger.warning(
                f"[{self.name}] Deployment {deployment_id} finished with {len(result.warnings)} warning(s)"
            )
        return result

    async def _run_pipeline(self, result: PipelineResult) -> None:
        deployment_id = result.deployment_id

        # Missing rows here are a consistency bug, not a transient condition
        deployment = await self.store.get_by_id(deployment_id)
        result.app_id = deployment.app_id
        app: App = await self.store.get_app(deployment.app_id)

        logger.info(f"[{self.name}] Processing deployment {deployment_id} for app '{app.name}'")

        await self._persist(
            PersistSeverity.BEST_EFFORT,
            "mark app Building",
            self.store.update_app_status(app.id, AppStatus.BUILDING),
            result,
        )

        image_name = await self._checkout_and_build(app, result)
        if image_name is None:
            return

        if not await self._claim_still_valid(result):
            return

        subdomain = subdomain_for(app.name, deployment_id)
        try:
            container_id = await self.launcher.launch(image_name, subdomain)
        except ContainerLaunchError as e:
            await self._record_failure(result, f"Container run failed: {e.reason}")
            return

        await self._persist(
            PersistSeverity.FATAL,
            "record container",
            self.store.update_container(deployment_id, container_id, subdomain),
            result,
        )
        result.container_id = container_id
        result.subdomain = subdomain

        await self._persist(
            PersistSeverity.FATAL,
            "mark deployment running",
            self.store.update_status(deployment_id, DeploymentStatus.RUNNING),
            result,
        )
        result.status = DeploymentStatus.RUNNING.value

        url = self.launcher.url_for(subdomain)
        result.url = url
        await self._persist(
            PersistSeverity.BEST_EFFORT,
            "mark app Healthy",
            self.store.mark_app_healthy(app.id, url),
            result,
        )
        logger.info(f"[{self.name}] Deployment {deployment_id} is live at {url}")

    async def _claim_still_valid(self, result: PipelineResult) -> bool:
        """
        Re-check the claim after the long build step.

        If the build lock was lost, another engine may already have failed
        this deployment as orphaned.

        Returns:
            False if the deployment is no longer ours to finish
        """
        if await self.lock.check():
            return True

        deployment_id = result.deployment_id
        logger.error(f"[{self.name}] Build lock lost while building deployment {deployment_id}")
        result.warnings.append("build lock lost during build")

        deployment = await self.store.get_by_id(deployment_id)
        if deployment.status == DeploymentStatus.BUILDING.value:
            return True

        logger.error(
            f"[{self.name}] Deployment {deployment_id} was taken over ({deployment.status}), not launching"
        )
        result.status = deployment.status
        result.error_message = deployment.error_message
        return False

    async def _checkout_and_build(self, app: App, result: PipelineResult) -> Optional[str]:
        """
        Clone, check the Dockerfile and build the image.

        Returns:
            The built image name, or None if a step failed and was recorded
        """
        deployment_id = result.deployment_id
        try:
            try:
                repo_path = await self.fetcher.clone(app.repo_url, deployment_id, app.effective_branch)
            except RepositoryFetchError as e:
                await self._record_failure(result, f"Git clone failed: {e.message}")
                return None

            try:
                self.fetcher.check_build_descriptor(repo_path)
            except MissingBuildDescriptorError as e:
                await self._record_failure(result, e.message)
                return None

            try:
                await self.fetcher.ensure_package_lock(repo_path)
            except Exception as e:
                logger.warning(f"[{self.name}] Lockfile fix-up failed for deployment {deployment_id}: {e}")
                result.warnings.append(f"lockfile fix-up: {e}")

            image_name = image_name_for(app.name, deployment_id)
            try:
                build = await self.builder.build(repo_path, image_name)
            except BuildError as e:
                if e.build_log:
                    await self._persist(
                        PersistSeverity.BEST_EFFORT,
                        "store build log",
                        self.store.update_build_log(deployment_id, e.build_log),
                        result,
                    )
                await self._record_failure(result, f"Docker build failed: {e.reason}")
                return None
        finally:
            if self.cleanup_workspaces:
                await asyncio.to_thread(self.fetcher.cleanup, deployment_id)

        await self._persist(
            PersistSeverity.BEST_EFFORT,
            "store build log",
            self.store.update_build_log(deployment_id, build.build_log),
            result,
        )
        await self._persist(
            PersistSeverity.FATAL,
            "record image",
            self.store.update_image(deployment_id, image_name),
            result,
        )
        result.image_name = image_name
        return image_name

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _recover_orphans(self) -> None:
        # Nothing can legitimately be building while the lock is free
        try:
            orphaned = await self.store.recover_orphaned(ORPHANED_MESSAGE)
        except DatabaseError as e:
            logger.warning(f"[{self.name}] Orphan recovery skipped: {e.message}")
            return
        for deployment in orphaned:
            logger.warning(f"[{self.name}] Recovered orphaned deployment {deployment.id}")

    async def run_once(self) -> CycleOutcome:
        """
        Run one cycle: take the lock, claim one deployment, process it.

        The lock is released before this returns, however processing ended.

        Returns:
            CycleOutcome for the loop's backoff decision
        """
        try:
            async with self.lock.hold() as acquired:
                if not acquired:
                    logger.debug(f"[{self.name}] Build lock busy")
                    return CycleOutcome.LOCK_BUSY

                await self._recover_orphans()

                deployment = await self.store.dequeue_next_pending()
                if deployment is None:
                    return CycleOutcome.QUEUE_EMPTY

                logger.info(f"[{self.name}] Claimed deployment {deployment.id}")
                result = await self.process_deployment(deployment.id)
                logger.info(f"[{self.name}] Deployment {deployment.id} ended {result.status}")
                return CycleOutcome.PROCESSED
        except DatabaseError as e:
            logger.error(f"[{self.name}] Database unavailable: {e.message}")
            return CycleOutcome.INFRA_ERROR
        except Exception:
            logger.exception(f"[{self.name}] Engine cycle failed")
            return CycleOutcome.INFRA_ERROR

    async def _wait(self, stop_event: asyncio.Event, timeout: float) -> bool:
        """Sleep unless stopped first. Returns True if the stop event fired."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Process deployments until the stop event is set.

        Args:
            stop_event: Shutdown signal, checked between cycles and during waits
        """
        stop_event = stop_event or asyncio.Event()
        logger.info(f"[{self.name}] Deployment engine started")

        while not stop_event.is_set():
            outcome = await self.run_once()
            if outcome is CycleOutcome.PROCESSED:
                continue
            delay = self.poll_interval if outcome is CycleOutcome.QUEUE_EMPTY else self.lock_retry_interval
            if await self._wait(stop_event, delay):
                break

        logger.info(f"[{self.name}] Deployment engine stopped")
