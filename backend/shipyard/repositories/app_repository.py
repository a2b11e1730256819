"""
Repository for App entity database operations.
"""
from datetime import datetime

from shipyard.core.exceptions import AppNotFoundError
from shipyard.models.app import App, AppStatus
from shipyard.repositories.base import BaseRepository


class AppRepository(BaseRepository[App]):
    """Repository for App database operations."""

    model = App

    async def get_by_id_or_raise(self, id: int) -> App:
        """Get an app by ID, raising exception if not found."""
        app = await self.get_by_id(id)
        if not app:
            raise AppNotFoundError(str(id))
        return app

    async def update_status(self, app_id: int, status: AppStatus) -> App:
        """
        Update the displayed app status.

        Raises:
            AppNotFoundError: If app not found
        """
        app = await self.get_by_id_or_raise(app_id)
        app.status = AppStatus(status).value
        app.updated_at = datetime.utcnow()
        await self.db.commit()
        return app

    async def update_status_and_url(self, app_id: int, status: AppStatus, url: str) -> App:
        """
        Update app status together with its public URL.

        Raises:
            AppNotFoundError: If app not found
        """
        app = await self.get_by_id_or_raise(app_id)
        app.status = AppStatus(status).value
        app.url = url
        app.updated_at = datetime.utcnow()
        await self.db.commit()
        return app
