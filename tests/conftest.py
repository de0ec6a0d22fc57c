"""
Shared fixtures and configuration for all tests.
"""
import os
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

# Override environment settings for testing
os.environ["ENVIRONMENT"] = "testing"
os.environ["SECRET_KEY"] = "testsecretkey"
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite://"
os.environ["INTEGRATIONS_ENCRYPTION_KEY"] = "test-master-key"
os.environ["ENABLE_INTEGRATION_SYNC_WORKER"] = "false"
os.environ["GITHUB_CLIENT_ID"] = "gh-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "gh-client-secret"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["BACKEND_CORS_ORIGINS"] = '["http://localhost:3000"]'

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api import deps
from app.db.base import Base
from app.db.init_db import seed_system_categories
from app.models.integration import Integration, IntegrationProvider
from app.models.user import User
from app.schemas.integration import OAuthConfig, SyncResult
from app.services.integration_service import IntegrationService
from app.services.oauth_state_service import OAuthStateService
from app.services.providers.base import IntegrationProviderService
from app.services.token_encryption_service import TokenEncryptionService
from app.utils.clock import utcnow

# One shared in-memory database; StaticPool keeps every session on the same connection
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Test fixtures for the database
@pytest.fixture
def db():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    seed_system_categories(db)
    try:
        yield db
    finally:
        db.close()

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db):
    """Session factory bound to the test database, for code that opens its own sessions."""
    return TestingSessionLocal


@pytest.fixture
def test_user(db):
    """Create a test user in the database."""
    user = User(
        id=1,
        username="testuser",
        email="test@example.com",
        hashed_password="fakehashed_password",
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def encryption():
    return TokenEncryptionService("test-master-key")


@pytest.fixture
def state_service():
    return OAuthStateService()


@pytest.fixture
def make_integration(db, test_user, encryption):
    """Factory for persisted integrations with encrypted tokens."""

    def _make(
        provider: IntegrationProvider = IntegrationProvider.GITHUB,
        access_token: str = "access-token",
        refresh_token: str = None,
        token_expires_at: datetime = None,
        last_sync_at: datetime = None,
        user_id: int = None,
    ) -> Integration:
        integration = Integration(
            user_id=user_id or test_user.id,
            provider=provider,
            access_token=encryption.encrypt(access_token) if access_token else "",
            refresh_token=encryption.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=token_expires_at,
            external_user_id="ext-1",
            external_username="octocat",
            last_sync_at=last_sync_at,
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


def make_provider_mock(provider: IntegrationProvider, items_synced: int = 0) -> MagicMock:
    """Adapter double with async methods and a successful sync."""
    adapter = MagicMock(spec=IntegrationProviderService)
    adapter.provider = provider
    adapter.get_auth_url = AsyncMock(
        return_value=OAuthConfig(auth_url=f"https://auth.example/{provider.value}", state="state-1")
    )
    adapter.exchange_code = AsyncMock()
    adapter.sync = AsyncMock(
        side_effect=lambda integration, user_id, stop_event=None: SyncResult(
            items_synced=items_synced, synced_at=utcnow()
        )
    )
    adapter.refresh_token = AsyncMock(return_value=None)
    adapter.revoke_access = AsyncMock(return_value=None)
    return adapter


# Test client with authentication
@pytest.fixture
def client():
    """Return a TestClient for making requests to the app."""
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def authorized_client(client):
    """Return a TestClient that skips the authentication."""
    user = User(
        id=1,
        username="testuser",
        email="test@example.com",
        hashed_password="fakehashed_password",
        is_active=True,
    )

    def override_get_current_user():
        return user

    app.dependency_overrides[deps.get_current_user] = override_get_current_user

    yield client

    app.dependency_overrides = {}


# Service mocks
@pytest.fixture
def mock_integration_service():
    """Mock integration service for testing."""
    service = MagicMock(spec=IntegrationService)
    service.get_all = AsyncMock(return_value=[])
    service.connect = AsyncMock()
    service.callback = AsyncMock()
    service.sync = AsyncMock()
    service.sync_all = AsyncMock()
    service.disconnect = AsyncMock()

    app.dependency_overrides[deps.get_integration_service()] = lambda: service

    yield service

    app.dependency_overrides.pop(deps.get_integration_service(), None)


@pytest.fixture
def provider_mock():
    """Factory fixture for adapter doubles."""
    return make_provider_mock
