"""
Custom exception hierarchy for domain-specific errors.

Services and repositories raise domain exceptions; the deployment engine decides
which of them are recorded on a deployment and which only abort the current loop cycle.
"""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    pass


class AppNotFoundError(NotFoundError):
    """App does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"App not found: {identifier}", {"identifier": identifier})


class DeploymentNotFoundError(NotFoundError):
    """Deployment does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Deployment not found: {identifier}", {"identifier": identifier})


class ContainerNotFoundError(NotFoundError):
    """Container does not exist."""

    def __init__(self, container_id: str):
        super().__init__(f"Container not found: {container_id}", {"container_id": container_id})


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    pass


class InvalidStatusError(ValidationError):
    """Status label is not part of the known vocabulary."""

    def __init__(self, status: str, allowed: Optional[list] = None):
        super().__init__(
            f"Invalid status: {status}",
            {"status": status, "allowed": allowed or []}
        )


class InvalidStatusTransitionError(ValidationError):
    """Deployment status would move backwards or skip a state."""

    def __init__(self, deployment_id: str, current_status: str, new_status: str):
        super().__init__(
            f"Deployment {deployment_id} cannot move from {current_status} to {new_status}",
            {"deployment_id": deployment_id, "current_status": current_status, "new_status": new_status}
        )


# =============================================================================
# Operation Errors
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    pass


class DatabaseError(OperationError):
    """Database operation failed."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Database error during {operation}: {reason}", {"operation": operation, "reason": reason})


class RepositoryFetchError(OperationError):
    """
    Checking out a repository failed.

    `kind` keeps the failure taxonomy (unreachable, branch_not_found, filesystem)
    so a retry policy can tell the cases apart.
    """

    kind = "unknown"

    def __init__(self, repo_url: str, reason: str):
        super().__init__(
            reason,
            {"repo_url": repo_url, "reason": reason, "kind": self.kind}
        )


class RepositoryUnreachableError(RepositoryFetchError):
    """Remote repository could not be reached or refused authentication."""

    kind = "unreachable"


class BranchNotFoundError(RepositoryFetchError):
    """Requested branch does not exist on the remote."""

    kind = "branch_not_found"

    def __init__(self, repo_url: str, branch: str, reason: str):
        self.branch = branch
        super().__init__(repo_url, reason)
        self.details["branch"] = branch


class WorkspaceError(RepositoryFetchError):
    """Local working directory could not be prepared."""

    kind = "filesystem"


class MissingBuildDescriptorError(OperationError):
    """Repository root has no Dockerfile."""

    MESSAGE = (
        "Dockerfile is not available in the repository root directory. "
        "Please ensure your repository contains a Dockerfile."
    )

    def __init__(self, repo_path: str):
        super().__init__(self.MESSAGE, {"repo_path": repo_path})


class BuildError(OperationError):
    """Docker image build failed."""

    def __init__(self, image_name: str, reason: str, build_log: Optional[str] = None):
        self.build_log = build_log
        self.reason = reason
        super().__init__(f"Build failed ({image_name}): {reason}", {"image_name": image_name, "reason": reason})


class ContainerLaunchError(OperationError):
    """Container could not be created or started."""

    def __init__(self, image_name: str, reason: str):
        self.reason = reason
        super().__init__(f"Container launch failed ({image_name}): {reason}", {"image_name": image_name, "reason": reason})


class DockerAPIError(OperationError):
    """Docker daemon answered with an error status."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Docker API error {status_code}: {reason}", {"status_code": status_code, "reason": reason})


class DeploymentStepError(OperationError):
    """A bookkeeping write the pipeline cannot continue without failed."""

    def __init__(self, deployment_id: str, step: str, reason: str):
        super().__init__(
            f"Deployment {deployment_id} aborted at '{step}': {reason}",
            {"deployment_id": deployment_id, "step": step, "reason": reason}
        )


# =============================================================================
# Service Unavailable
# =============================================================================

class ServiceUnavailableError(DomainException):
    """External service is unavailable."""

    def __init__(self, service: str, reason: str = "Service unavailable"):
        self.reason = reason
        super().__init__(f"{service}: {reason}", {"service": service, "reason": reason})


class DockerDaemonError(ServiceUnavailableError):
    """Docker daemon could not be reached."""

    def __init__(self, reason: str):
        super().__init__("Docker daemon", reason)
