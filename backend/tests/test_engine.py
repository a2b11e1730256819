"""
Tests for DeploymentEngine.

The engine runs against the in-memory store and lock from conftest, a mocked
fetcher and builder, and a real ContainerLauncher over a mocked Docker client.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shipyard.core.exceptions import (
    BuildError,
    DatabaseError,
    DockerAPIError,
    MissingBuildDescriptorError,
    RepositoryUnreachableError,
)
from shipyard.services.deployment.engine import ORPHANED_MESSAGE, CycleOutcome
from shipyard.services.repository.fetcher import RepositoryFetcher


def _assert_error_iff_failed(store):
    for deployment in store.deployments.values():
        assert bool(deployment.error_message) == (deployment.status == "failed"), deployment.id


class TestPipelineScenarios:
    """End-to-end pipeline outcomes."""

    @pytest.mark.asyncio
    async def test_valid_repository_goes_live(self, engine_factory, memory_store, build_lock, mock_fetcher):
        """Test a deployment ends running with the app Healthy at its public URL."""
        app = memory_store.add_app("MyApp", branch="")
        deployment = memory_store.add_deployment(app.id)

        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.PROCESSED
        assert deployment.status == "running"
        assert deployment.image_name == "mvp-myapp:1"
        assert deployment.subdomain == "myapp-1"
        assert deployment.container_id
        assert deployment.build_log.startswith("Step 1/1")
        assert app.status == "Healthy"
        assert app.url == "https://myapp-1.apps.example.com"
        mock_fetcher.clone.assert_called_once_with(app.repo_url, deployment.id, "main")
        mock_fetcher.cleanup.assert_called_once_with(deployment.id)
        assert not build_lock.is_held
        _assert_error_iff_failed(memory_store)

    @pytest.mark.asyncio
    async def test_unreachable_repository(self, engine_factory, memory_store, mock_fetcher, mock_builder):
        """Test a clone failure fails the deployment and the app."""
        app = memory_store.add_app("demo", repo_url="https://nowhere.invalid/x.git")
        deployment = memory_store.add_deployment(app.id)
        mock_fetcher.clone.side_effect = RepositoryUnreachableError(
            app.repo_url, "fatal: unable to access 'https://nowhere.invalid/x.git/': Could not resolve host"
        )

        await engine_factory().run_once()

        assert deployment.status == "failed"
        assert deployment.error_message.startswith("Git clone failed: ")
        assert "Could not resolve host" in deployment.error_message
        assert app.status == "Failed"
        mock_builder.build.assert_not_called()
        _assert_error_iff_failed(memory_store)

    @pytest.mark.asyncio
    async def test_missing_dockerfile(self, engine_factory, memory_store, mock_fetcher, mock_builder):
        """Test a repository without a Dockerfile gets the dedicated message."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_fetcher.check_build_descriptor.side_effect = MissingBuildDescriptorError("/tmp/x")

        await engine_factory().run_once()

        assert deployment.status == "failed"
        assert deployment.error_message == (
            "Dockerfile is not available in the repository root directory. "
            "Please ensure your repository contains a Dockerfile."
        )
        assert app.status == "Failed"
        mock_builder.build.assert_not_called()
        mock_fetcher.cleanup.assert_called_once_with(deployment.id)

    @pytest.mark.asyncio
    async def test_build_failure_keeps_build_log(self, engine_factory, memory_store, mock_builder, mock_docker_client):
        """Test a failed build stores its log and error and launches nothing."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_builder.build.side_effect = BuildError(
            "mvp-demo:1", "returned a non-zero code: 1", build_log="Step 1/2 : RUN npm ci"
        )

        await engine_factory().run_once()

        assert deployment.status == "failed"
        assert deployment.error_message == "Docker build failed: returned a non-zero code: 1"
        assert deployment.build_log == "Step 1/2 : RUN npm ci"
        assert deployment.image_name is None
        assert app.status == "Failed"
        mock_docker_client.create_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_launch_failure(self, engine_factory, memory_store, mock_docker_client):
        """Test a container that cannot be created fails the deployment with the runtime text."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_docker_client.create_container.side_effect = DockerAPIError(409, 'name "/demo-1" is already in use')

        await engine_factory().run_once()

        assert deployment.status == "failed"
        assert deployment.error_message.startswith("Container run failed: ")
        assert "already in use" in deployment.error_message
        assert deployment.container_id is None
        assert deployment.image_name == "mvp-demo:1"
        assert app.status == "Failed"

    @pytest.mark.asyncio
    async def test_lockfile_fixup_failure_is_not_fatal(self, engine_factory, memory_store, mock_fetcher):
        """Test a failing lockfile fix-up only adds a warning."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_fetcher.ensure_package_lock.side_effect = PermissionError("Dockerfile is read-only")
        await memory_store.dequeue_next_pending()

        result = await engine_factory().process_deployment(deployment.id)

        assert result.succeeded
        assert any("lockfile" in warning for warning in result.warnings)

    @pytest.mark.asyncio
    async def test_non_utf8_dockerfile_fixup_goes_live(self, engine_factory, memory_store, tmp_path):
        """Test a Latin-1 Dockerfile needing the npm ci rewrite still deploys."""
        checkout = tmp_path / "latin1"
        checkout.mkdir()
        (checkout / "package.json").write_text("{}")
        (checkout / "Dockerfile").write_bytes(b"# caf\xe9\nFROM node:20\nRUN npm ci\n")
        fetcher = RepositoryFetcher(work_dir=str(tmp_path / "work"), clone_timeout=5, descriptor="Dockerfile")
        fetcher.clone = AsyncMock(return_value=str(checkout))
        fetcher.cleanup = MagicMock(return_value=True)
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)

        with patch("shipyard.services.repository.fetcher.shutil.which", return_value=None):
            outcome = await engine_factory(fetcher=fetcher).run_once()

        assert outcome is CycleOutcome.PROCESSED
        assert deployment.status == "running"
        assert (checkout / "Dockerfile").read_bytes() == b"# caf\xe9\nFROM node:20\nRUN npm install\n"

    @pytest.mark.asyncio
    async def test_unexpected_fixup_error_is_a_warning(self, engine_factory, memory_store, mock_fetcher):
        """Test any error from the lockfile fix-up leaves the deployment running."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_fetcher.ensure_package_lock.side_effect = UnicodeDecodeError("utf-8", b"\xe9", 0, 1, "invalid")
        await memory_store.dequeue_next_pending()

        result = await engine_factory().process_deployment(deployment.id)

        assert result.succeeded
        assert deployment.error_message is None
        assert any("lockfile" in warning for warning in result.warnings)


class TestPersistSeverity:
    """Best-effort writes are swallowed, fatal writes abort the deployment."""

    @pytest.mark.asyncio
    async def test_best_effort_app_status(self, engine_factory, memory_store):
        """Test failing to mark the app Building does not stop the pipeline."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()
        memory_store.failures["update_app_status"] = DatabaseError("update_app_status", "connection reset")

        result = await engine_factory().process_deployment(deployment.id)

        assert result.succeeded
        assert result.url == "https://demo-1.apps.example.com"
        assert deployment.status == "running"
        assert any("mark app Building" in warning for warning in result.warnings)

    @pytest.mark.asyncio
    async def test_best_effort_build_log(self, engine_factory, memory_store):
        """Test losing the build log never blocks a successful deployment."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()
        memory_store.failures["update_build_log"] = DatabaseError("update_build_log", "value too long")

        result = await engine_factory().process_deployment(deployment.id)

        assert result.succeeded
        assert deployment.build_log is None

    @pytest.mark.asyncio
    async def test_fatal_image_persist(self, engine_factory, memory_store, mock_docker_client):
        """Test failing to record the image aborts before launching."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()
        memory_store.failures["update_image"] = DatabaseError("update_image", "connection reset")

        result = await engine_factory().process_deployment(deployment.id)

        assert result.status == "failed"
        assert "record image" in result.error_message
        assert deployment.status == "failed"
        assert app.status == "Failed"
        mock_docker_client.create_container.assert_not_called()
        _assert_error_iff_failed(memory_store)

    @pytest.mark.asyncio
    async def test_fatal_container_persist(self, engine_factory, memory_store):
        """Test failing to record the container fails the deployment."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()
        memory_store.failures["update_container"] = DatabaseError("update_container", "deadlock")

        result = await engine_factory().process_deployment(deployment.id)

        assert result.status == "failed"
        assert "record container" in deployment.error_message
        assert deployment.container_id is None

    @pytest.mark.asyncio
    async def test_recording_a_failure_can_fail(self, engine_factory, memory_store, mock_fetcher):
        """Test a failure while recording a failure is logged, never raised."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()
        mock_fetcher.clone.side_effect = RepositoryUnreachableError(app.repo_url, "timeout")
        memory_store.failures["update_error"] = DatabaseError("update_error", "connection reset")

        result = await engine_factory().process_deployment(deployment.id)

        assert result.status == "failed"
        assert any("record deployment error" in warning for warning in result.warnings)


class TestFaultIsolation:
    """Unexpected faults stay inside one deployment."""

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, engine_factory, memory_store, mock_builder):
        """Test a crash mid-pipeline fails the deployment with a synthetic message."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        mock_builder.build.side_effect = RuntimeError("segfault in build helper")

        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.PROCESSED
        assert deployment.status == "failed"
        assert deployment.error_message == "Internal error: RuntimeError: segfault in build helper"
        assert app.status == "Failed"

    @pytest.mark.asyncio
    async def test_loop_continues_after_fault(self, engine_factory, memory_store, mock_builder):
        """Test the next deployment is processed after a crashed one."""
        from shipyard.services.docker.builder_service import BuildResult

        app = memory_store.add_app("demo")
        first = memory_store.add_deployment(app.id)
        second = memory_store.add_deployment(app.id)
        mock_builder.build.side_effect = [
            RuntimeError("boom"),
            BuildResult(image_name="mvp-demo:2", build_log="ok"),
        ]
        engine = engine_factory()

        await engine.run_once()
        await engine.run_once()

        assert first.status == "failed"
        assert second.status == "running"

    @pytest.mark.asyncio
    async def test_missing_app_fails_deployment(self, engine_factory, memory_store, mock_fetcher):
        """Test a deployment pointing at a missing app is failed, not retried."""
        deployment = memory_store.add_deployment(app_id=99)

        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.PROCESSED
        assert deployment.status == "failed"
        assert deployment.error_message == "App not found: 99"
        mock_fetcher.clone.assert_not_called()


class TestRunOnce:
    """Tests for the lock/dequeue cycle."""

    @pytest.mark.asyncio
    async def test_lock_busy(self, engine_factory, memory_store, build_lock):
        """Test nothing is claimed while another holder has the lock."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)

        async with build_lock.hold() as acquired:
            assert acquired
            outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.LOCK_BUSY
        assert deployment.status == "pending"
        assert memory_store.claims == []

    @pytest.mark.asyncio
    async def test_queue_empty(self, engine_factory, build_lock):
        """Test an empty queue releases the lock and reports QUEUE_EMPTY."""
        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.QUEUE_EMPTY
        assert build_lock.acquisitions == build_lock.releases == 1

    @pytest.mark.asyncio
    async def test_database_down(self, engine_factory, memory_store, build_lock):
        """Test a dequeue failure is an infra error and the lock is released."""
        memory_store.failures["dequeue_next_pending"] = DatabaseError("dequeue_next_pending", "refused")

        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.INFRA_ERROR
        assert not build_lock.is_held

    @pytest.mark.asyncio
    async def test_lock_released_when_processing_raises(self, engine_factory, memory_store, build_lock):
        """Test the lock is released even if processing itself blows up."""
        app = memory_store.add_app("demo")
        memory_store.add_deployment(app.id)
        engine = engine_factory()
        engine.process_deployment = AsyncMock(side_effect=RuntimeError("boom"))

        outcome = await engine.run_once()

        assert outcome is CycleOutcome.INFRA_ERROR
        assert not build_lock.is_held
        assert build_lock.releases == 1

    @pytest.mark.asyncio
    async def test_orphaned_building_rows_are_recovered(self, engine_factory, memory_store):
        """Test a deployment left building by a dead worker is failed on the next cycle."""
        app = memory_store.add_app("demo")
        orphan = memory_store.add_deployment(app.id, status="building")

        outcome = await engine_factory().run_once()

        assert outcome is CycleOutcome.QUEUE_EMPTY
        assert orphan.status == "failed"
        assert orphan.error_message == ORPHANED_MESSAGE
        assert app.status == "Failed"

    @pytest.mark.asyncio
    async def test_oldest_pending_first(self, engine_factory, memory_store):
        """Test deployments are processed in creation order."""
        app = memory_store.add_app("demo")
        first = memory_store.add_deployment(app.id)
        second = memory_store.add_deployment(app.id)
        engine = engine_factory()

        await engine.run_once()

        assert first.status == "running"
        assert second.status == "pending"


class TestRunLoop:
    """Tests for run and shutdown."""

    @pytest.mark.asyncio
    async def test_stops_promptly_while_waiting(self, engine_factory, memory_store, build_lock):
        """Test a stop during a long poll wait ends the loop at once."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        engine = engine_factory(poll_interval=30.0)
        stop_event = asyncio.Event()

        task = asyncio.create_task(engine.run(stop_event))
        for _ in range(100):
            if deployment.status == "running":
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert deployment.status == "running"
        assert not build_lock.is_held

    def test_zero_intervals_are_kept(self, engine_factory):
        """Test explicit zero intervals are not replaced by the configured defaults."""
        engine = engine_factory(poll_interval=0.0, lock_retry_interval=0.0)

        assert engine.poll_interval == 0.0
        assert engine.lock_retry_interval == 0.0

    def test_default_intervals_from_settings(self, engine_factory):
        """Test omitted intervals fall back to settings."""
        from shipyard.core.config import settings

        engine = engine_factory(poll_interval=None, lock_retry_interval=None)

        assert engine.poll_interval == settings.POLL_INTERVAL
        assert engine.lock_retry_interval == settings.LOCK_RETRY_INTERVAL

    @pytest.mark.asyncio
    async def test_already_stopped(self, engine_factory, memory_store):
        """Test a set stop event means no cycle runs."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(engine_factory().run(stop_event), timeout=1.0)

        assert deployment.status == "pending"


class TestLostBuildLock:
    """Tests for re-checking the claim after the build."""

    @pytest.fixture
    def lost_lock(self):
        """Create a lock whose connection was lost."""
        lock = MagicMock()
        lock.check = AsyncMock(return_value=False)
        return lock

    @pytest.mark.asyncio
    async def test_taken_over_deployment_is_not_launched(
        self, engine_factory, memory_store, mock_builder, mock_docker_client, lost_lock
    ):
        """Test a deployment failed as orphaned by another engine is not launched."""
        from shipyard.services.docker.builder_service import BuildResult

        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()

        async def build(repo_path, image_name):
            # Another engine took the lock and recovered this row meanwhile
            await memory_store.recover_orphaned(ORPHANED_MESSAGE)
            return BuildResult(image_name=image_name, build_log="built")

        mock_builder.build.side_effect = build

        result = await engine_factory(lock=lost_lock).process_deployment(deployment.id)

        assert result.status == "failed"
        assert result.error_message == ORPHANED_MESSAGE
        assert deployment.status == "failed"
        mock_docker_client.create_container.assert_not_called()
        _assert_error_iff_failed(memory_store)

    @pytest.mark.asyncio
    async def test_lost_lock_still_building_goes_live(self, engine_factory, memory_store, lost_lock):
        """Test a lost lock with the row untouched finishes with a warning."""
        app = memory_store.add_app("demo")
        deployment = memory_store.add_deployment(app.id)
        await memory_store.dequeue_next_pending()

        result = await engine_factory(lock=lost_lock).process_deployment(deployment.id)

        assert result.succeeded
        assert deployment.status == "running"
        assert "build lock lost during build" in result.warnings
