import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import IntegrationException
from app.models.integration import IntegrationProvider
from app.models.user import User
from app.services.integration_service import IntegrationService
from app.workers.integration_sync_worker import IntegrationSyncWorker


@pytest.fixture
def second_user(db):
    user = User(id=2, username="second", email="second@example.com", hashed_password="x")
    db.add(user)
    db.commit()
    return user


class RecordingServiceFactory:
    """Builds IntegrationService doubles and records every sync call."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self.sessions = []

    def __call__(self, db):
        self.sessions.append(db)
        service = MagicMock(spec=IntegrationService)
        service.sync = AsyncMock(side_effect=self._sync)
        return service

    async def _sync(self, user_id, provider, stop_event=None):
        self.calls.append((user_id, provider))
        if (user_id, provider) in self.failing:
            raise IntegrationException(message="sync exploded", code="SYNC_FAILED")


class TestSyncAllIntegrations:
    @pytest.mark.asyncio
    async def test_syncs_each_integration_with_own_session(
        self, session_factory, make_integration, second_user
    ):
        make_integration(provider=IntegrationProvider.GITHUB)
        make_integration(provider=IntegrationProvider.GOOGLE_CALENDAR)
        make_integration(provider=IntegrationProvider.GITHUB, user_id=second_user.id)
        factory = RecordingServiceFactory(failing={(1, IntegrationProvider.GITHUB)})
        worker = IntegrationSyncWorker(session_factory=session_factory, service_factory=factory)

        succeeded = await worker.sync_all_integrations()

        assert succeeded == 2
        assert factory.calls == [
            (1, IntegrationProvider.GITHUB),
            (1, IntegrationProvider.GOOGLE_CALENDAR),
            (2, IntegrationProvider.GITHUB),
        ]
        assert len(set(map(id, factory.sessions))) == 3

    @pytest.mark.asyncio
    async def test_skips_integrations_without_token(self, session_factory, make_integration):
        make_integration(provider=IntegrationProvider.GITHUB, access_token="")
        make_integration(provider=IntegrationProvider.GOOGLE_CALENDAR)
        factory = RecordingServiceFactory()
        worker = IntegrationSyncWorker(session_factory=session_factory, service_factory=factory)

        await worker.sync_all_integrations()

        assert factory.calls == [(1, IntegrationProvider.GOOGLE_CALENDAR)]

    @pytest.mark.asyncio
    async def test_stop_event_ends_pass(self, session_factory, make_integration):
        make_integration(provider=IntegrationProvider.GITHUB)
        factory = RecordingServiceFactory()
        worker = IntegrationSyncWorker(session_factory=session_factory, service_factory=factory)
        worker.stop_event.set()

        assert await worker.sync_all_integrations() == 0
        assert factory.calls == []


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_runs_on_interval_and_survives_errors(self):
        worker = IntegrationSyncWorker(interval_seconds=0.01)
        worker.sync_all_integrations = AsyncMock(side_effect=[RuntimeError("db down"), 1, 1, 1, 1, 1, 1, 1])

        worker.start()
        for _ in range(100):
            if worker.sync_all_integrations.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await worker.stop(timeout=1)

        assert worker.sync_all_integrations.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self):
        worker = IntegrationSyncWorker(interval_seconds=3600)
        worker.sync_all_integrations = AsyncMock(return_value=0)

        task = worker.start()
        await asyncio.sleep(0)
        await asyncio.wait_for(worker.stop(timeout=1), 2)

        assert task.done()
        worker.sync_all_integrations.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        worker = IntegrationSyncWorker(interval_seconds=3600)

        await worker.stop()

        assert worker.stop_event.is_set()
