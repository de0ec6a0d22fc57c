# app/integrations/google/calendar.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)


def to_rfc3339(value: datetime) -> str:
    """Format a naive UTC datetime the way the Calendar API expects."""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class GoogleCalendarClient:
    """Client for Google Calendar API."""

    def __init__(self, credentials: Credentials):
        """Initialize with valid Google OAuth credentials."""
        self.service = build(
            "calendar", "v3", credentials=credentials, cache_discovery=False
        )

    def list_events_page(
        self,
        time_min: datetime,
        time_max: datetime,
        page_token: Optional[str] = None,
        calendar_id: str = "primary",
        max_results: int = 250,
    ) -> Dict[str, Any]:
        """
        Fetch one page of expanded events in a window. Blocking.

        Returns the raw response; callers read "items" and "nextPageToken".
        """
        request_args = {
            "calendarId": calendar_id,
            "timeMin": to_rfc3339(time_min),
            "timeMax": to_rfc3339(time_max),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        if page_token:
            request_args["pageToken"] = page_token

        return self.service.events().list(**request_args).execute()
