"""
Tests for the worker entry point.
"""
import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shipyard import worker
from shipyard.core.exceptions import DockerDaemonError


@pytest.fixture
def patched_runtime():
    """Patch the Docker client, database engine and deployment engine."""
    docker = MagicMock()
    docker.host = "unix:///var/run/docker.sock"
    docker.ping = AsyncMock(return_value=True)
    docker.aclose = AsyncMock()

    db_engine = MagicMock()
    db_engine.dispose = AsyncMock()

    deployment_engine = MagicMock()
    deployment_engine.run = AsyncMock()

    with patch("shipyard.services.docker.client.DockerEngineClient", return_value=docker), \
         patch("shipyard.core.database.engine", db_engine), \
         patch("shipyard.services.deployment.engine.DeploymentEngine", return_value=deployment_engine) as engine_cls:
        yield docker, db_engine, deployment_engine, engine_cls


class TestRunWorker:
    """Tests for run_worker."""

    @pytest.mark.asyncio
    async def test_runs_engine_and_releases_resources(self, patched_runtime):
        """Test the engine runs with the given stop event and resources are closed."""
        docker, db_engine, deployment_engine, engine_cls = patched_runtime
        stop_event = asyncio.Event()

        await worker.run_worker(stop_event)

        deployment_engine.run.assert_awaited_once_with(stop_event)
        docker.aclose.assert_awaited_once()
        db_engine.dispose.assert_awaited_once()
        kwargs = engine_cls.call_args.kwargs
        assert set(kwargs) == {"store", "lock", "fetcher", "builder", "launcher"}

    @pytest.mark.asyncio
    async def test_unreachable_docker_is_not_fatal(self, patched_runtime, caplog):
        """Test the worker starts even when the daemon does not answer ping."""
        docker, _, deployment_engine, _ = patched_runtime
        docker.ping.side_effect = DockerDaemonError("connection refused")

        with caplog.at_level(logging.WARNING, logger="shipyard.worker"):
            await worker.run_worker(asyncio.Event())

        deployment_engine.run.assert_awaited_once()
        assert "not reachable" in caplog.text

    @pytest.mark.asyncio
    async def test_closes_client_when_engine_fails(self, patched_runtime):
        """Test resources are released if the engine loop raises."""
        docker, db_engine, deployment_engine, _ = patched_runtime
        deployment_engine.run.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await worker.run_worker(asyncio.Event())

        docker.aclose.assert_awaited_once()
        db_engine.dispose.assert_awaited_once()


class TestSignalHandlers:
    """Tests for signal handler installation."""

    @pytest.mark.asyncio
    async def test_signal_sets_stop_event(self):
        """Test the installed callback sets the stop event."""
        loop = MagicMock()
        stop_event = asyncio.Event()

        worker._install_signal_handlers(loop, stop_event)

        assert loop.add_signal_handler.call_count == 2
        sig, callback, name = loop.add_signal_handler.call_args_list[0].args
        callback(name)
        assert stop_event.is_set()

    def test_unsupported_platform(self):
        """Test missing loop signal support is tolerated."""
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        worker._install_signal_handlers(loop, asyncio.Event())
