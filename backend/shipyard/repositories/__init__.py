"""
Repository layer for database access.
"""
from shipyard.repositories.app_repository import AppRepository
from shipyard.repositories.base import BaseRepository
from shipyard.repositories.deployment_repository import DeploymentRepository

__all__ = [
    "BaseRepository",
    "AppRepository",
    "DeploymentRepository",
]
