"""
Deployment services.

- DeploymentStore: queue and deployment/app bookkeeping
- AdvisoryBuildLock / InMemoryBuildLock: system-wide build lock
- DeploymentEngine: pipeline and processing loop
- RuntimeLogService: runtime log refresh
- AppTeardownService: resource cleanup for deleted apps
"""
from shipyard.services.deployment.store import DeploymentStore
from shipyard.services.deployment.build_lock import (
    AdvisoryBuildLock,
    InMemoryBuildLock,
    build_lock_for,
)
from shipyard.services.deployment.engine import (
    CycleOutcome,
    DeploymentEngine,
    PersistSeverity,
    PipelineResult,
)
from shipyard.services.deployment.runtime_log_service import RuntimeLogService
from shipyard.services.deployment.teardown_service import AppTeardownService, TeardownSummary

__all__ = [
    "DeploymentStore",
    "AdvisoryBuildLock",
    "InMemoryBuildLock",
    "build_lock_for",
    "DeploymentEngine",
    "PersistSeverity",
    "PipelineResult",
    "CycleOutcome",
    "RuntimeLogService",
    "AppTeardownService",
    "TeardownSummary",
]
