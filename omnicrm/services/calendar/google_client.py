"""
Google Calendar API client.

Read side used by sync: list events in a time window, one page at a time,
with recurring events expanded into instances.
"""

from datetime import UTC, datetime
from typing import Any

from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.services.google_api import GoogleApiClient, GoogleApiError

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"
CALENDAR_MAX_PAGE_SIZE = 2500


class GoogleCalendarError(GoogleApiError):
    """Calendar API errors."""


class GoogleCalendarService(GoogleApiClient):
    api_name = "Calendar"
    error_class = GoogleCalendarError
    error_mappings = {
        "400": "Invalid calendar request format.",
        "401": "Calendar authorization expired. Please reconnect.",
        "403": "Calendar access denied. Please check permissions.",
        "404": "Calendar or event not found.",
        "429": "Too many calendar requests. Please try again later.",
        "500": "Google Calendar service temporarily unavailable.",
    }

    async def list_events(
        self,
        access_token: str,
        calendar_id: str = CALENDAR_PRIMARY,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        page_token: str | None = None,
        max_results: int = 100,
        single_events: bool = True,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """
        One page of events.

        Args:
            access_token: Valid OAuth access token
            calendar_id: Calendar ID (default: primary)
            time_min: Lower bound on event end time (default: now)
            time_max: Upper bound on event start time
            page_token: Token from the previous page
            max_results: Page size
            single_events: Expand recurring events into individual instances

        Returns:
            tuple[list[dict], str | None]: (provider-native events, next page token)
        """
        url = f"{CALENDAR_API_BASE_URL}/calendars/{calendar_id}/events"
        params: dict[str, Any] = {
            "maxResults": min(max_results, CALENDAR_MAX_PAGE_SIZE),
            "singleEvents": "true" if single_events else "false",
            "timeMin": (time_min or datetime.now(UTC)).isoformat(),
        }
        if single_events:
            params["orderBy"] = "startTime"
        if time_max:
            params["timeMax"] = time_max.isoformat()
        if page_token:
            params["pageToken"] = page_token

        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params=params
        )
        data = self._handle_api_response(response, "list_events")

        events = data.get("items", [])
        logger.debug("Calendar event page listed", calendar_id=calendar_id, event_count=len(events))
        return events, data.get("nextPageToken")
