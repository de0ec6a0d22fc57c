import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from app.models.integration import Integration, IntegrationProvider
from app.schemas.integration import OAuthConfig, OAuthTokenResult, SyncResult
from app.utils.clock import utcnow

# Tokens expiring within this window are refreshed before a sync
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


def token_expires_soon(integration: Integration) -> bool:
    return (
        integration.token_expires_at is not None
        and integration.token_expires_at < utcnow() + TOKEN_REFRESH_MARGIN
    )


def is_stopped(stop_event: Optional[asyncio.Event]) -> bool:
    return stop_event is not None and stop_event.is_set()


class IntegrationProviderService(ABC):
    """
    Provider-specific OAuth exchange and sync.

    Adapters never commit tokens themselves; IntegrationService owns
    encryption of new tokens and the Integration row bookkeeping.
    """

    provider: IntegrationProvider

    @abstractmethod
    async def get_auth_url(
        self,
        user_id: int,
        redirect_uri: Optional[str] = None,
        mobile_redirect_uri: Optional[str] = None,
    ) -> OAuthConfig:
        """Build the authorization URL and issue the state token for it."""

    @abstractmethod
    async def exchange_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResult:
        """Exchange an authorization code for tokens plus the external identity."""

    @abstractmethod
    async def sync(
        self,
        integration: Integration,
        user_id: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Pull remote state and merge it into the inbox and time blocks."""

    @abstractmethod
    async def refresh_token(self, integration: Integration) -> Optional[OAuthTokenResult]:
        """Return a fresh access token, or None when refresh is not applicable."""

    @abstractmethod
    async def revoke_access(self, integration: Integration) -> None:
        """Best-effort provider-side revocation. Never raises."""
