import asyncio
from datetime import date, datetime, time, timedelta
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from app.core.config import settings
from app.core.constants import MAX_DESCRIPTION_LENGTH, MEETING_CATEGORY_ID
from app.core.exceptions import IntegrationException
from app.integrations.google.oauth import GoogleOAuthClient
from app.models.inbox_item import InboxItem, InboxItemType, InboxPriority, InboxSource
from app.models.integration import IntegrationProvider
from app.repositories.time_block_repository import TimeBlockRepository
from app.services.providers.google_calendar_provider import (
    GoogleCalendarProviderService,
    _parse_event_datetime,
)
from app.utils.clock import utcnow


def timed_event(event_id, summary="Standup", start="2030-01-15T10:00:00Z",
                end="2030-01-15T10:30:00Z", location=None):
    event = {
        "id": event_id,
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    if summary is not None:
        event["summary"] = summary
    if location is not None:
        event["location"] = location
    return event


def all_day_event(event_id, summary="Company holiday", day="2030-01-20", description=None):
    event = {
        "id": event_id,
        "start": {"date": day},
        "end": {"date": day},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    if summary is not None:
        event["summary"] = summary
    if description is not None:
        event["description"] = description
    return event


def http_error(status):
    return HttpError(httplib2.Response({"status": status}), b'{"error": "nope"}')


class FakeCalendarClient:
    """Serves pre-built pages; a page may be an exception to raise."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def list_events_page(self, time_min, time_max, page_token=None,
                         calendar_id="primary", max_results=250):
        self.calls.append({"time_min": time_min, "time_max": time_max, "page_token": page_token})
        index = int(page_token) if page_token else 0
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        response = {"items": page}
        if index + 1 < len(self.pages):
            response["nextPageToken"] = str(index + 1)
        return response


class TestGoogleCalendarSync:
    @pytest.fixture
    def oauth_client(self):
        client = MagicMock(spec=GoogleOAuthClient)
        client.is_configured = True
        client.get_credentials.side_effect = lambda token, refresh=None: MagicMock(token=token)
        return client

    @pytest.fixture
    def make_provider(self, db, state_service, encryption, oauth_client):
        def _make(fake_client, **kwargs):
            return GoogleCalendarProviderService(
                db,
                state_service,
                encryption,
                oauth_client=oauth_client,
                calendar_client_factory=lambda credentials: fake_client,
                **kwargs,
            )

        return _make

    @pytest.fixture
    def integration(self, make_integration):
        return make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR,
            refresh_token="refresh-token",
            token_expires_at=utcnow() + timedelta(hours=1),
        )

    def _blocks(self, db):
        return TimeBlockRepository(db).get_by_user_id(1)

    def _inbox(self, db):
        return db.query(InboxItem).filter(InboxItem.source == InboxSource.GOOGLE_CALENDAR).all()

    def _existing_all_day_item(self, db, integration, event_id):
        item = InboxItem(
            user_id=integration.user_id,
            integration_id=integration.id,
            title="Old event",
            source=InboxSource.GOOGLE_CALENDAR,
            type=InboxItemType.EVENT,
            priority=InboxPriority.MEDIUM,
            external_id=f"gcal:{event_id}",
        )
        db.add(item)
        db.commit()
        return item

    @pytest.mark.asyncio
    async def test_timed_event_becomes_meeting_block(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[timed_event("evt1", location="Room 4")]])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 1
        blocks = self._blocks(db)
        assert len(blocks) == 1
        block = blocks[0]
        assert block.title == "Standup"
        assert block.subtitle == "Room 4"
        assert block.category_id == MEETING_CATEGORY_ID
        assert block.date == date(2030, 1, 15)
        assert block.start_time == time(10, 0)
        assert block.end_time == time(10, 30)
        assert block.duration_minutes == 30
        assert block.external_id == "gcal:evt1"
        assert block.external_source == IntegrationProvider.GOOGLE_CALENDAR

    @pytest.mark.asyncio
    async def test_all_day_event_goes_to_inbox(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[all_day_event("day1", description="Office closed")]])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 1
        items = self._inbox(db)
        assert len(items) == 1
        assert items[0].type == InboxItemType.EVENT
        assert items[0].priority == InboxPriority.MEDIUM
        assert items[0].description == "Office closed"
        assert items[0].external_id == "gcal:day1"
        assert items[0].integration_id == integration.id
        assert self._blocks(db) == []

    @pytest.mark.asyncio
    async def test_window_starts_today_and_spans_thirty_days(self, make_provider, integration, test_user):
        fake = FakeCalendarClient([[]])

        await make_provider(fake).sync(integration, test_user.id)

        call = fake.calls[0]
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        assert call["time_min"] == today
        assert call["time_max"] == today + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_repeated_sync_is_idempotent(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[timed_event("evt1"), all_day_event("day1")]])
        provider = make_provider(fake)

        first = await provider.sync(integration, test_user.id)
        second = await provider.sync(integration, test_user.id)

        assert first.items_synced == 2
        assert second.items_synced == 0
        assert len(self._blocks(db)) == 1
        assert len(self._inbox(db)) == 1

    @pytest.mark.asyncio
    async def test_changed_event_updates_block_in_place(self, db, make_provider, integration, test_user):
        await make_provider(FakeCalendarClient([[timed_event("evt1", summary="Standup")]])).sync(
            integration, test_user.id
        )

        renamed = FakeCalendarClient([[timed_event(
            "evt1", summary="Daily standup", start="2030-01-15T11:00:00Z", end="2030-01-15T11:45:00Z"
        )]])
        result = await make_provider(renamed).sync(integration, test_user.id)

        assert result.items_synced == 1
        blocks = self._blocks(db)
        assert len(blocks) == 1
        assert blocks[0].title == "Daily standup"
        assert blocks[0].start_time == time(11, 0)
        assert blocks[0].duration_minutes == 45

    @pytest.mark.asyncio
    async def test_offsets_are_converted_to_utc(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[timed_event(
            "evt1", start="2030-01-15T10:00:00+02:00", end="2030-01-15T11:00:00+02:00"
        )]])

        await make_provider(fake).sync(integration, test_user.id)

        assert self._blocks(db)[0].start_time == time(8, 0)

    @pytest.mark.asyncio
    async def test_invalid_durations_are_skipped(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[
            timed_event("backwards", start="2030-01-15T10:00:00Z", end="2030-01-15T09:00:00Z"),
            timed_event("zero", start="2030-01-15T10:00:00Z", end="2030-01-15T10:00:00Z"),
            timed_event("too-long", start="2030-01-15T10:00:00Z", end="2030-01-16T10:01:00Z"),
            timed_event("full-day", start="2030-01-15T00:00:00Z", end="2030-01-16T00:00:00Z"),
        ]])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 1
        assert [block.external_id for block in self._blocks(db)] == ["gcal:full-day"]

    @pytest.mark.asyncio
    async def test_untitled_events_are_skipped(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[timed_event("t1", summary=""), all_day_event("d1", summary=None)]])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 0
        assert self._blocks(db) == []
        assert self._inbox(db) == []

    @pytest.mark.asyncio
    async def test_long_descriptions_are_truncated(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[all_day_event("d1", description="a" * (MAX_DESCRIPTION_LENGTH + 500))]])

        await make_provider(fake).sync(integration, test_user.id)

        assert len(self._inbox(db)[0].description) == MAX_DESCRIPTION_LENGTH

    @pytest.mark.asyncio
    async def test_follows_page_tokens(self, db, make_provider, integration, test_user):
        fake = FakeCalendarClient([[timed_event("evt1")], [timed_event("evt2")]])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 2
        assert [call["page_token"] for call in fake.calls] == [None, "1"]

    @pytest.mark.asyncio
    async def test_cleanup_dismisses_missing_all_day_items(self, db, make_provider, integration, test_user):
        stale = self._existing_all_day_item(db, integration, "gone")
        kept = self._existing_all_day_item(db, integration, "day1")
        fake = FakeCalendarClient([[all_day_event("day1")]])

        await make_provider(fake).sync(integration, test_user.id)

        db.refresh(stale)
        db.refresh(kept)
        assert stale.is_dismissed is True
        assert stale.dismissed_at is not None
        assert kept.is_dismissed is False

    @pytest.mark.asyncio
    async def test_untitled_all_day_event_still_counts_as_seen(self, db, make_provider, integration, test_user):
        item = self._existing_all_day_item(db, integration, "day1")
        fake = FakeCalendarClient([[all_day_event("day1", summary="")]])

        await make_provider(fake).sync(integration, test_user.id)

        db.refresh(item)
        assert item.is_dismissed is False

    @pytest.mark.asyncio
    async def test_truncated_fetch_skips_cleanup(self, db, make_provider, integration, test_user):
        stale = self._existing_all_day_item(db, integration, "maybe-later")
        fake = FakeCalendarClient([[timed_event("evt1"), timed_event("evt2")]])

        result = await make_provider(fake, max_items=1).sync(integration, test_user.id)

        assert result.items_synced == 1
        db.refresh(stale)
        assert stale.is_dismissed is False

    @pytest.mark.asyncio
    async def test_transient_error_keeps_progress_and_skips_cleanup(self, db, make_provider, integration, test_user):
        stale = self._existing_all_day_item(db, integration, "maybe-later")
        fake = FakeCalendarClient([[timed_event("evt1")], http_error(429)])

        result = await make_provider(fake).sync(integration, test_user.id)

        assert result.items_synced == 1
        db.refresh(stale)
        assert stale.is_dismissed is False

    @pytest.mark.asyncio
    async def test_non_transient_error_fails_sync(self, make_provider, integration, test_user):
        fake = FakeCalendarClient([http_error(404)])

        with pytest.raises(HttpError):
            await make_provider(fake).sync(integration, test_user.id)

    @pytest.mark.asyncio
    async def test_stop_event_skips_fetch_and_cleanup(self, db, make_provider, integration, test_user):
        stale = self._existing_all_day_item(db, integration, "gone")
        fake = FakeCalendarClient([[timed_event("evt1")]])
        stop_event = asyncio.Event()
        stop_event.set()

        result = await make_provider(fake).sync(integration, test_user.id, stop_event)

        assert result.items_synced == 0
        assert fake.calls == []
        db.refresh(stale)
        assert stale.is_dismissed is False

    @pytest.mark.asyncio
    async def test_refreshes_token_close_to_expiry(self, make_provider, make_integration, oauth_client, test_user):
        integration = make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR,
            access_token="old-token",
            refresh_token="refresh-token",
            token_expires_at=utcnow() + timedelta(minutes=2),
        )
        oauth_client.refresh.return_value = MagicMock(
            token="new-token", expiry=utcnow() + timedelta(hours=1)
        )

        await make_provider(FakeCalendarClient([[]])).sync(integration, test_user.id)

        oauth_client.refresh.assert_called_once_with("refresh-token")
        oauth_client.get_credentials.assert_called_with("new-token")

    @pytest.mark.asyncio
    async def test_failed_refresh_falls_back_to_stored_token(self, make_provider, make_integration, oauth_client, test_user):
        integration = make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR,
            access_token="old-token",
            refresh_token="refresh-token",
            token_expires_at=utcnow() - timedelta(minutes=1),
        )
        oauth_client.refresh.return_value = None

        await make_provider(FakeCalendarClient([[]])).sync(integration, test_user.id)

        oauth_client.get_credentials.assert_called_with("old-token")

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_repeated_by_sync(self, make_provider, make_integration, oauth_client, test_user):
        integration = make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR,
            access_token="old-token",
            refresh_token="refresh-token",
            token_expires_at=utcnow() - timedelta(minutes=1),
        )
        oauth_client.refresh.return_value = None
        provider = make_provider(FakeCalendarClient([[]]))

        assert await provider.refresh_token(integration) is None
        await provider.sync(integration, test_user.id)

        oauth_client.refresh.assert_called_once_with("refresh-token")
        oauth_client.get_credentials.assert_called_with("old-token")

    @pytest.mark.asyncio
    async def test_next_sync_refreshes_again(self, make_provider, make_integration, oauth_client, test_user):
        integration = make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR,
            access_token="old-token",
            refresh_token="refresh-token",
            token_expires_at=utcnow() - timedelta(minutes=1),
        )
        oauth_client.refresh.return_value = None
        provider = make_provider(FakeCalendarClient([[]]))

        await provider.refresh_token(integration)
        await provider.sync(integration, test_user.id)
        await provider.sync(integration, test_user.id)

        assert oauth_client.refresh.call_count == 2

    def test_max_items_defaults_to_settings(self, make_provider):
        assert make_provider(FakeCalendarClient([])).max_items == settings.GOOGLE_MAX_ITEMS_PER_SYNC
        assert make_provider(FakeCalendarClient([]), max_items=0).max_items == 0


class TestGoogleCalendarOAuth:
    @pytest.fixture
    def oauth_client(self):
        client = MagicMock(spec=GoogleOAuthClient)
        client.is_configured = True
        client.build_authorize_url.return_value = "https://accounts.google.com/o/oauth2/v2/auth?x=1"
        return client

    @pytest.fixture
    def provider(self, db, state_service, encryption, oauth_client):
        return GoogleCalendarProviderService(db, state_service, encryption, oauth_client=oauth_client)

    @pytest.mark.asyncio
    async def test_auth_url_issues_state(self, provider, oauth_client, state_service):
        config = await provider.get_auth_url(3, "https://api.example/cb", "timeblock://back")

        oauth_client.build_authorize_url.assert_called_once_with(config.state, "https://api.example/cb")
        data = state_service.validate_state(config.state)
        assert data.provider == IntegrationProvider.GOOGLE_CALENDAR
        assert data.user_id == 3

    @pytest.mark.asyncio
    async def test_auth_url_requires_configuration(self, provider, oauth_client):
        oauth_client.is_configured = False

        with pytest.raises(IntegrationException) as exc_info:
            await provider.get_auth_url(3)

        assert exc_info.value.code == "GOOGLE_CALENDAR_NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_exchange_code_falls_back_to_sub(self, provider, oauth_client):
        expiry = datetime(2030, 1, 1, 12, 0)
        oauth_client.exchange_code.return_value = MagicMock(
            token="ya29.token", refresh_token="1//refresh", expiry=expiry
        )
        oauth_client.get_user_info.return_value = {
            "sub": "10987", "email": "user@example.com", "picture": "https://pic"
        }

        result = await provider.exchange_code("auth-code", "https://api.example/cb")

        oauth_client.exchange_code.assert_called_once_with("auth-code", "https://api.example/cb")
        assert result.access_token == "ya29.token"
        assert result.refresh_token == "1//refresh"
        assert result.expires_at == expiry
        assert result.external_user_id == "10987"
        assert result.external_username == "user@example.com"
        assert result.external_avatar_url == "https://pic"

    @pytest.mark.asyncio
    async def test_exchange_code_without_identity_fails(self, provider, oauth_client):
        oauth_client.exchange_code.return_value = MagicMock(token="t", refresh_token=None, expiry=None)
        oauth_client.get_user_info.return_value = {}

        with pytest.raises(IntegrationException) as exc_info:
            await provider.exchange_code("auth-code")

        assert exc_info.value.code == "GOOGLE_USERINFO_MISSING_ID"

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token_is_none(self, provider, make_integration):
        integration = make_integration(provider=IntegrationProvider.GOOGLE_CALENDAR)

        assert await provider.refresh_token(integration) is None

    @pytest.mark.asyncio
    async def test_refresh_keeps_identity(self, provider, oauth_client, make_integration):
        integration = make_integration(
            provider=IntegrationProvider.GOOGLE_CALENDAR, refresh_token="refresh-token"
        )
        oauth_client.refresh.return_value = MagicMock(token="new", expiry=None)

        result = await provider.refresh_token(integration)

        assert result.access_token == "new"
        assert result.refresh_token is None
        assert result.external_user_id == integration.external_user_id
        assert result.expires_at > utcnow()

    @pytest.mark.asyncio
    async def test_revoke_failure_is_swallowed(self, provider, oauth_client, make_integration):
        oauth_client.revoke.side_effect = OSError("network unreachable")

        await provider.revoke_access(make_integration(provider=IntegrationProvider.GOOGLE_CALENDAR))

        oauth_client.revoke.assert_called_once_with("access-token")


class TestParseEventDatetime:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2030-01-15T10:00:00Z", datetime(2030, 1, 15, 10, 0)),
            ("2030-01-15T10:00:00.000Z", datetime(2030, 1, 15, 10, 0)),
            ("2030-01-15T10:00:00+02:00", datetime(2030, 1, 15, 8, 0)),
            ("2030-01-15T23:30:00-05:00", datetime(2030, 1, 16, 4, 30)),
        ],
    )
    def test_returns_naive_utc(self, value, expected):
        result = _parse_event_datetime(value)

        assert result == expected
        assert result.tzinfo is None
