import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.constants import (
    GOOGLE_CALENDAR_EXTERNAL_ID_PREFIX,
    MAX_DESCRIPTION_LENGTH,
    MEETING_CATEGORY_ID,
)
from app.core.exceptions import IntegrationException
from app.integrations.google.calendar import GoogleCalendarClient
from app.integrations.google.oauth import GoogleOAuthClient
from app.models.inbox_item import InboxItemType, InboxPriority, InboxSource
from app.models.integration import Integration, IntegrationProvider
from app.repositories.inbox_repository import InboxRepository
from app.repositories.time_block_repository import TimeBlockRepository
from app.schemas.integration import OAuthConfig, OAuthTokenResult, SyncResult
from app.services.oauth_state_service import OAuthStateService
from app.services.providers.base import (
    IntegrationProviderService,
    is_stopped,
    token_expires_soon,
)
from app.services.token_encryption_service import TokenEncryptionService
from app.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

SYNC_WINDOW = timedelta(days=30)
PAGE_SIZE = 250
MAX_BLOCK_MINUTES = 24 * 60
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

# HTTP statuses treated as "stop for now" rather than a failed sync
TRANSIENT_STATUSES = {403, 429, 500, 502, 503, 504}


def _parse_event_datetime(value: str) -> datetime:
    # fromisoformat only accepts a "Z" suffix from Python 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(value))


def _truncate_description(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    return description[:MAX_DESCRIPTION_LENGTH]


class GoogleCalendarProviderService(IntegrationProviderService):
    """
    Mirrors the next 30 days of the user's primary calendar.

    Timed events become time blocks in the Meeting category and are updated
    in place on change. All-day events land in the inbox.
    """

    provider = IntegrationProvider.GOOGLE_CALENDAR

    def __init__(
        self,
        db: Session,
        state_service: OAuthStateService,
        encryption: TokenEncryptionService,
        oauth_client: Optional[GoogleOAuthClient] = None,
        calendar_client_factory: Optional[Callable[[Credentials], GoogleCalendarClient]] = None,
        max_items: Optional[int] = None,
    ):
        self.db = db
        self.state_service = state_service
        self.encryption = encryption
        self.inbox_repository = InboxRepository(db)
        self.block_repository = TimeBlockRepository(db)
        self.oauth_client = oauth_client or GoogleOAuthClient()
        self.calendar_client_factory = calendar_client_factory or GoogleCalendarClient
        self.max_items = (
            max_items if max_items is not None else settings.GOOGLE_MAX_ITEMS_PER_SYNC
        )
        # Integrations whose refresh was already attempted ahead of the next sync
        self._refresh_attempted: Set[int] = set()

    async def get_auth_url(
        self,
        user_id: int,
        redirect_uri: Optional[str] = None,
        mobile_redirect_uri: Optional[str] = None,
    ) -> OAuthConfig:
        if not self.oauth_client.is_configured:
            raise IntegrationException(
                message="Google Calendar integration is not configured",
                code="GOOGLE_CALENDAR_NOT_CONFIGURED",
            )

        state = self.state_service.generate_state(
            user_id, self.provider, mobile_redirect_uri
        )
        auth_url = self.oauth_client.build_authorize_url(state, redirect_uri)
        return OAuthConfig(auth_url=auth_url, state=state)

    async def exchange_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResult:
        credentials = await asyncio.to_thread(
            self.oauth_client.exchange_code, code, redirect_uri
        )

        try:
            user_info = await asyncio.to_thread(
                self.oauth_client.get_user_info, credentials
            )
        except HttpError as e:
            logger.error(f"Google userinfo request failed: {e}")
            raise IntegrationException(
                message="Failed to retrieve Google user profile",
                code="GOOGLE_USERINFO_FAILED",
            ) from e

        # "id" on the v2 endpoint, "sub" on OpenID Connect responses
        external_user_id = user_info.get("id") or user_info.get("sub") or user_info.get("email")
        if not external_user_id:
            raise IntegrationException(
                message="Google user profile did not contain an identifier",
                code="GOOGLE_USERINFO_MISSING_ID",
            )

        return OAuthTokenResult(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=credentials.expiry or (utcnow() + DEFAULT_TOKEN_LIFETIME),
            external_user_id=str(external_user_id),
            external_username=user_info.get("email"),
            external_avatar_url=user_info.get("picture"),
        )

    async def sync(
        self,
        integration: Integration,
        user_id: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        access_token = self.encryption.decrypt(integration.access_token)

        # A refresh that just failed would fail again; go with the stored token
        already_attempted = integration.id in self._refresh_attempted
        self._refresh_attempted.discard(integration.id)
        if (
            token_expires_soon(integration)
            and integration.refresh_token
            and not already_attempted
        ):
            refreshed = await self.refresh_token(integration)
            self._refresh_attempted.discard(integration.id)
            if refreshed is not None:
                access_token = refreshed.access_token

        calendar = self.calendar_client_factory(
            self.oauth_client.get_credentials(access_token)
        )

        window_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        window_end = window_start + SYNC_WINDOW

        items_synced = 0
        fetched = 0
        complete = True
        seen_all_day_ids: Set[str] = set()
        page_token = None

        while True:
            if is_stopped(stop_event):
                complete = False
                break

            try:
                response = await asyncio.to_thread(
                    calendar.list_events_page,
                    window_start,
                    window_end,
                    page_token,
                    max_results=PAGE_SIZE,
                )
            except HttpError as e:
                if e.resp.status not in TRANSIENT_STATUSES:
                    raise
                logger.warning(
                    f"Google Calendar returned {e.resp.status} for user {user_id}, "
                    f"stopping after {fetched} events"
                )
                complete = False
                break
            except OSError as e:
                logger.warning(f"Google Calendar network error for user {user_id}: {e}")
                complete = False
                break

            for event in response.get("items", []):
                if is_stopped(stop_event) or fetched >= self.max_items:
                    complete = False
                    break
                fetched += 1
                if self._process_event(event, integration, user_id, seen_all_day_ids):
                    items_synced += 1

            page_token = response.get("nextPageToken")
            if not complete or not page_token:
                break

        logger.info(
            f"Google Calendar returned {fetched} events for range "
            f"{window_start.date()} to {window_end.date()}"
        )

        if complete:
            dismissed = self._cleanup_stale_items(
                integration, user_id, seen_all_day_ids, stop_event
            )
        else:
            # Absence from a partial fetch says nothing about deletion
            logger.info(f"Skipping Google Calendar cleanup for user {user_id}: fetch incomplete")
            dismissed = 0

        logger.info(
            f"Google Calendar sync completed for user {user_id}: {items_synced} items synced, "
            f"{dismissed} auto-dismissed"
        )
        return SyncResult(items_synced=items_synced, synced_at=utcnow())

    def _process_event(
        self,
        event: Dict[str, Any],
        integration: Integration,
        user_id: int,
        seen_all_day_ids: Set[str],
    ) -> bool:
        """Merge one event. Returns True when a row was created or updated."""
        external_id = f"{GOOGLE_CALENDAR_EXTERNAL_ID_PREFIX}:{event['id']}"
        start = (event.get("start") or {}).get("dateTime")
        end = (event.get("end") or {}).get("dateTime")
        is_timed = bool(start and end)

        if not is_timed:
            seen_all_day_ids.add(external_id)

        title = event.get("summary")
        if not title:
            return False

        if is_timed:
            return self._upsert_time_block(
                event, external_id, title, _parse_event_datetime(start), _parse_event_datetime(end), user_id
            )
        return self._create_inbox_item(event, external_id, title, integration, user_id)

    def _upsert_time_block(
        self,
        event: Dict[str, Any],
        external_id: str,
        title: str,
        start: datetime,
        end: datetime,
        user_id: int,
    ) -> bool:
        duration = int((end - start).total_seconds() / 60)
        if duration <= 0 or duration > MAX_BLOCK_MINUTES:
            return False

        values = {
            "title": title,
            "subtitle": event.get("location"),
            "date": start.date(),
            "start_time": start.time(),
            "end_time": end.time(),
            "duration_minutes": duration,
            "external_url": event.get("htmlLink"),
        }

        block = self.block_repository.get_by_external_id(user_id, external_id)
        if block is None:
            self.block_repository.create(
                {
                    **values,
                    "user_id": user_id,
                    "category_id": MEETING_CATEGORY_ID,
                    "external_id": external_id,
                    "external_source": IntegrationProvider.GOOGLE_CALENDAR,
                    "sort_order": 0,
                }
            )
            return True

        changes = {
            field: value for field, value in values.items() if getattr(block, field) != value
        }
        if not changes:
            return False

        self.block_repository.update(block, changes)
        return True

    def _create_inbox_item(
        self,
        event: Dict[str, Any],
        external_id: str,
        title: str,
        integration: Integration,
        user_id: int,
    ) -> bool:
        if self.inbox_repository.get_by_external_id(user_id, external_id):
            return False

        self.inbox_repository.create(
            {
                "user_id": user_id,
                "integration_id": integration.id,
                "title": title,
                "description": _truncate_description(event.get("description")),
                "source": InboxSource.GOOGLE_CALENDAR,
                "type": InboxItemType.EVENT,
                "priority": InboxPriority.MEDIUM,
                "external_id": external_id,
                "external_url": event.get("htmlLink"),
            }
        )
        return True

    def _cleanup_stale_items(
        self,
        integration: Integration,
        user_id: int,
        seen_all_day_ids: Set[str],
        stop_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Dismiss all-day inbox items that dropped out of the window. Failures are logged only."""
        try:
            dismissed = 0
            for item in self.inbox_repository.get_by_integration_id(
                integration.id, source=InboxSource.GOOGLE_CALENDAR, include_dismissed=False
            ):
                if is_stopped(stop_event):
                    break
                if item.external_id and item.external_id not in seen_all_day_ids:
                    self.inbox_repository.dismiss(item)
                    dismissed += 1

            if dismissed:
                logger.info(
                    f"Google Calendar cleanup: auto-dismissed {dismissed} stale inbox items "
                    f"for user {user_id}"
                )
            return dismissed
        except Exception as e:
            self.db.rollback()
            logger.warning(
                f"Google Calendar cleanup phase failed for user {user_id}: {e}", exc_info=True
            )
            return 0

    async def refresh_token(self, integration: Integration) -> Optional[OAuthTokenResult]:
        if not integration.refresh_token:
            return None

        self._refresh_attempted.add(integration.id)
        refresh_token = self.encryption.decrypt(integration.refresh_token)
        credentials = await asyncio.to_thread(self.oauth_client.refresh, refresh_token)
        if credentials is None or not credentials.token:
            return None

        # Google keeps the existing refresh token on refresh
        return OAuthTokenResult(
            access_token=credentials.token,
            refresh_token=None,
            expires_at=credentials.expiry or (utcnow() + DEFAULT_TOKEN_LIFETIME),
            external_user_id=integration.external_user_id,
            external_username=integration.external_username,
            external_avatar_url=integration.external_avatar_url,
        )

    async def revoke_access(self, integration: Integration) -> None:
        try:
            access_token = self.encryption.decrypt(integration.access_token)
            revoked = await asyncio.to_thread(self.oauth_client.revoke, access_token)
            if not revoked:
                logger.warning(
                    f"Google did not confirm token revocation for integration {integration.id}"
                )
        except Exception as e:
            logger.warning(
                f"Failed to revoke Google Calendar token for integration {integration.id}: {e}"
            )
