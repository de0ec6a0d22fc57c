import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.logging import log_context
from app.db.base import SessionLocal
from app.repositories.integration_repository import IntegrationRepository
from app.services.integration_service import IntegrationService

logger = logging.getLogger(__name__)


class IntegrationSyncWorker:
    """
    Background loop that syncs every integration holding an access token.

    Integrations are synced one after the other, each in its own database
    session, so one failure or a poisoned session cannot affect the rest.
    """

    def __init__(
        self,
        interval_seconds: Optional[float] = None,
        session_factory: sessionmaker = SessionLocal,
        service_factory: Callable[[Session], IntegrationService] = IntegrationService,
    ):
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.INTEGRATION_SYNC_INTERVAL_MINUTES * 60
        )
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self.stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="integration-sync-worker")
        return self._task

    async def stop(self, timeout: float = 10) -> None:
        """Signal the loop to stop and wait for it, cancelling if it overruns."""
        self.stop_event.set()
        if self._task is None:
            return

        try:
            await asyncio.wait_for(self._task, timeout)
        except asyncio.TimeoutError:
            logger.warning("Integration sync worker did not stop in time, cancelled")
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        logger.info(
            f"Integration sync worker started, interval {self.interval_seconds} seconds"
        )

        while not self.stop_event.is_set():
            try:
                await asyncio.wait_for(self.stop_event.wait(), self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.sync_all_integrations()
            except Exception as e:
                logger.error(f"Unexpected error in integration sync worker: {e}", exc_info=True)

        logger.info("Integration sync worker stopped")

    async def sync_all_integrations(self) -> int:
        """Run one pass. Returns the number of integrations synced successfully."""
        db = self.session_factory()
        try:
            targets = [
                (integration.id, integration.user_id, integration.provider)
                for integration in IntegrationRepository(db).get_all_with_active_tokens()
            ]
        finally:
            db.close()

        logger.info(f"Starting background sync for {len(targets)} integrations")

        succeeded = 0
        for integration_id, user_id, provider in targets:
            if self.stop_event.is_set():
                break

            db = self.session_factory()
            try:
                with log_context(integration_id=integration_id, user_id=user_id):
                    service = self.service_factory(db)
                    await service.sync(user_id, provider, self.stop_event)
                    succeeded += 1
            except Exception as e:
                logger.error(
                    f"Background sync failed for {provider.value} integration "
                    f"{integration_id}, user {user_id}: {e}"
                )
            finally:
                db.close()

        return succeeded
