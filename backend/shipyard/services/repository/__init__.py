"""Repository checkout services."""
from shipyard.services.repository.fetcher import RepositoryFetcher

__all__ = ["RepositoryFetcher"]
