"""
Shared httpx plumbing for the Google REST clients.

Gmail and Calendar differ only in base URL, error type and error wording;
retry/backoff and response handling live here.
"""

import asyncio

import httpx

from omnicrm.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Bad request, revoked or insufficient auth, missing resource
NON_RECOVERABLE_STATUS_CODES = {400, 401, 403, 404}


class GoogleApiError(Exception):
    """Base exception for Google API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}
        self.recoverable = status_code not in NON_RECOVERABLE_STATUS_CODES


class GoogleApiClient:
    """Async HTTP client with retry for one Google API."""

    api_name = "Google"
    error_class: type[GoogleApiError] = GoogleApiError
    error_mappings: dict[str, str] = {}

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff on 429/5xx and transport errors."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Google API retrying request",
                        api=self.api_name,
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise self.error_class(f"{self.api_name} API request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Google API request error, retrying",
                    api=self.api_name,
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError(f"{self.api_name} API retry loop exhausted")

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Parse a successful response or raise the client's error type.

        Raises:
            GoogleApiError: Non-2xx status or unparseable body
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error("Failed to parse Google API response", api=self.api_name, operation=operation)
                raise self.error_class(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                "Google API call failed with non-JSON response",
                api=self.api_name,
                operation=operation,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise self.error_class(
                f"{self.api_name} API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        if not isinstance(error_info, dict):
            error_info = {"message": str(error_info)}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", f"Unknown {self.api_name} API error")

        logger.error(
            "Google API call failed",
            api=self.api_name,
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise self.error_class(
            self.error_mappings.get(error_code, f"{self.api_name} error: {error_message}"),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )
