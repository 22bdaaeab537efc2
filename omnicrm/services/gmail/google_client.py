"""
Gmail API client.

Only the read side used by sync: list message ids page by page and fetch a
message as provider-native JSON. Messages are not converted to domain models;
raw_events stores them as returned.
"""

from typing import Any

from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.services.google_api import GoogleApiClient, GoogleApiError

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"
GMAIL_MAX_PAGE_SIZE = 500


class GoogleGmailError(GoogleApiError):
    """Gmail API errors."""


class GoogleGmailService(GoogleApiClient):
    api_name = "Gmail"
    error_class = GoogleGmailError
    error_mappings = {
        "400": "Invalid Gmail request format.",
        "401": "Gmail authorization expired. Please reconnect.",
        "403": "Gmail access denied. Please check permissions.",
        "404": "Gmail message not found.",
        "429": "Too many Gmail requests. Please try again later.",
        "500": "Gmail service temporarily unavailable.",
    }

    async def list_message_ids(
        self,
        access_token: str,
        query: str | None = None,
        label_ids: list[str] | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[str], str | None]:
        """
        One page of message ids.

        Args:
            access_token: Valid OAuth access token
            query: Gmail search query (e.g. "after:1700000000 -in:chats")
            label_ids: Only messages carrying all of these labels
            page_token: Token from the previous page
            max_results: Page size (Gmail caps at 500)

        Returns:
            tuple[list[str], str | None]: (message ids, next page token)
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages"
        params: dict[str, Any] = {
            "maxResults": min(max_results, GMAIL_MAX_PAGE_SIZE),
            "includeSpamTrash": "false",
        }
        if query:
            params["q"] = query
        if label_ids:
            params["labelIds"] = label_ids
        if page_token:
            params["pageToken"] = page_token

        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params=params
        )
        data = self._handle_api_response(response, "list_messages")

        message_ids = [message["id"] for message in data.get("messages", []) if message.get("id")]
        logger.debug("Gmail message page listed", message_count=len(message_ids))
        return message_ids, data.get("nextPageToken")

    async def get_message(
        self, access_token: str, message_id: str, format: str = "full"
    ) -> dict[str, Any]:
        """Fetch one message ("full", "metadata", "minimal" or "raw")."""
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params={"format": format}
        )
        return self._handle_api_response(response, "get_message")
