"""
Service for assembling Docker build contexts.
"""
import io
import logging
import os
import tarfile
from typing import Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = frozenset({".git"})


class BuildContextService:
    """Packs a checkout directory into the tar archive the build API expects."""

    def __init__(self, excludes: Optional[Set[str]] = None):
        self.excludes = set(DEFAULT_EXCLUDES if excludes is None else excludes)

    def _filter(self, info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        top = info.name.split("/", 1)[0]
        if top in self.excludes:
            return None
        # Ownership of the checkout is irrelevant inside the image
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    def create_context(self, path: str) -> bytes:
        """
        Create an uncompressed tar archive of a directory.

        Args:
            path: Directory to archive; becomes the archive root

        Returns:
            Archive bytes

        Raises:
            OSError: If the directory cannot be read
        """
        if not os.path.isdir(path):
            raise FileNotFoundError(f"Build context directory does not exist: {path}")

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            for entry in sorted(os.listdir(path)):
                if entry in self.excludes:
                    continue
                archive.add(os.path.join(path, entry), arcname=entry, filter=self._filter)

        data = buffer.getvalue()
        logger.debug(f"Build context for {path}: {len(data)} bytes")
        return data


# Singleton instance
context_service = BuildContextService()
