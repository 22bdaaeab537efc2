"""
Google access tokens for sync jobs.

Reads the user's encrypted tokens from oauth_tokens and refreshes the access
token when it is about to expire. A revoked or missing grant is reported as a
non-recoverable TokenServiceError so the runner does not burn retries on it.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError, execute_query, fetch_one
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.services.encryption_service import EncryptionError, decrypt_token, encrypt_token

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
TOKEN_REFRESH_BUFFER_MINUTES = 5
REQUEST_TIMEOUT = 10  # seconds


class TokenServiceError(Exception):
    """Custom exception for token service operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


@dataclass(slots=True)
class OAuthToken:
    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None

    def needs_refresh(self, buffer_minutes: int = TOKEN_REFRESH_BUFFER_MINUTES) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= datetime.now(UTC) + timedelta(minutes=buffer_minutes)


class TokenService:
    """Load, decrypt and refresh OAuth tokens."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    async def get_tokens(self, user_id: str, provider: str = "google") -> OAuthToken | None:
        """
        Retrieve and decrypt OAuth tokens for user.

        Raises:
            TokenServiceError: If decryption or database errors occur
        """
        query = """
            SELECT access_token, refresh_token, expires_at
            FROM oauth_tokens
            WHERE user_id = %s AND provider = %s
        """

        try:
            row = await fetch_one(query, (user_id, provider))
            if not row:
                logger.debug("No tokens found for user", user_id=user_id, provider=provider)
                return None

            return OAuthToken(
                user_id=user_id,
                provider=provider,
                access_token=decrypt_token(row["access_token"]),
                refresh_token=decrypt_token(row["refresh_token"]) if row.get("refresh_token") else None,
                expires_at=row.get("expires_at"),
            )

        except EncryptionError as e:
            logger.error("Token decryption failed", user_id=user_id, provider=provider, error=str(e))
            raise TokenServiceError(
                f"Token decryption failed: {e}", user_id=user_id, recoverable=False
            ) from e
        except DatabaseError as e:
            logger.error("Database error retrieving tokens", user_id=user_id, error=str(e))
            raise TokenServiceError(
                f"Database error retrieving tokens: {e}", user_id=user_id, recoverable=e.recoverable
            ) from e

    async def get_valid_access_token(self, user_id: str, provider: str = "google") -> str:
        """
        Access token usable for at least TOKEN_REFRESH_BUFFER_MINUTES.

        Raises:
            TokenServiceError: No connected account (non-recoverable), revoked
                grant (non-recoverable) or a transient refresh failure
        """
        tokens = await self.get_tokens(user_id, provider)
        if not tokens:
            raise TokenServiceError(
                "Google account not connected", user_id=user_id, recoverable=False
            )

        if not tokens.needs_refresh():
            return tokens.access_token

        refreshed = await self._refresh(tokens)
        return refreshed.access_token

    async def _refresh(self, tokens: OAuthToken) -> OAuthToken:
        if not tokens.refresh_token:
            raise TokenServiceError(
                "No refresh token available - re-authentication required",
                user_id=tokens.user_id,
                recoverable=False,
            )

        data = {
            "client_id": settings.GOOGLE_CLIENT_ID or "",
            "client_secret": settings.GOOGLE_CLIENT_SECRET or "",
            "refresh_token": tokens.refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            if self._client:
                response = await self._client.post(GOOGLE_TOKEN_URL, data=data)
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                    response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error("Network error during token refresh", user_id=tokens.user_id, error=str(e))
            raise TokenServiceError(f"Network error during token refresh: {e}", user_id=tokens.user_id) from e

        try:
            body = response.json() if response.text else {}
        except ValueError:
            body = {}

        if not response.is_success:
            error_code = body.get("error", "unknown") if isinstance(body, dict) else "unknown"
            # invalid_grant: refresh token revoked or expired
            recoverable = error_code != "invalid_grant" and (
                response.status_code == 429 or response.status_code >= 500
            )
            logger.error(
                "Google token refresh failed",
                user_id=tokens.user_id,
                status_code=response.status_code,
                error_code=error_code,
                recoverable=recoverable,
            )
            raise TokenServiceError(
                f"Token refresh failed: {error_code}", user_id=tokens.user_id, recoverable=recoverable
            )

        access_token = body.get("access_token")
        if not access_token:
            raise TokenServiceError("Token refresh response missing access_token", user_id=tokens.user_id)

        expires_at = datetime.now(UTC) + timedelta(seconds=int(body.get("expires_in", 3600)))
        await self._store_access_token(tokens.user_id, tokens.provider, access_token, expires_at)

        logger.info("Token refresh successful", user_id=tokens.user_id, new_expires_at=expires_at.isoformat())
        return OAuthToken(
            user_id=tokens.user_id,
            provider=tokens.provider,
            access_token=access_token,
            refresh_token=body.get("refresh_token") or tokens.refresh_token,
            expires_at=expires_at,
        )

    async def _store_access_token(
        self, user_id: str, provider: str, access_token: str, expires_at: datetime
    ) -> None:
        query = """
            UPDATE oauth_tokens
            SET access_token = %s,
                expires_at = %s,
                updated_at = NOW()
            WHERE user_id = %s AND provider = %s
        """

        await execute_query(query, (encrypt_token(access_token), expires_at, user_id, provider))


# Singleton instance
token_service = TokenService()
