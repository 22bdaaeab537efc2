"""
OpenAI Service for embeddings and LLM-backed insights.

The AsyncOpenAI client is created on first use so importing this module does
not require OPENAI_API_KEY.
"""

import asyncio
import json
from typing import Any

import openai
from openai import AsyncOpenAI

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
MAX_EMBEDDING_INPUT_CHARS = 8000


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


class OpenAIService:
    """Embedding generator and JSON-mode chat completion for insights."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            if not settings.OPENAI_API_KEY:
                raise OpenAIServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

            self.client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
            logger.info("OpenAI client initialized", model=settings.OPENAI_MODEL)
        return self.client

    async def _call_with_retry(self, operation: str, call):
        """Run an OpenAI call, retrying rate limits, timeouts and 5xx."""
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                return await call()

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    wait_time=wait_time,
                )
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", operation=operation, attempt=attempt + 1)

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", operation=operation, error=str(e))
                    raise OpenAIServiceError(
                        f"OpenAI {operation} rejected", api_error=str(e), recoverable=False
                    ) from e
                logger.warning("OpenAI API error, retrying", operation=operation, attempt=attempt + 1)

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", operation=operation, attempt=attempt + 1)

        logger.error(
            "OpenAI API call failed after all retries",
            operation=operation,
            max_retries=MAX_RETRIES,
            final_error=str(last_error),
        )
        raise OpenAIServiceError(
            f"OpenAI {operation} failed after {MAX_RETRIES} attempts", api_error=str(last_error)
        ) from last_error

    async def generate_embedding(self, user_id: str, text: str) -> list[float]:
        """Embedding vector for text (truncated to MAX_EMBEDDING_INPUT_CHARS)."""
        client = self._get_client()

        async def call():
            return await client.embeddings.create(
                model=settings.OPENAI_EMBEDDING_MODEL,
                input=text[:MAX_EMBEDDING_INPUT_CHARS],
                user=user_id,
            )

        response = await self._call_with_retry("embedding", call)
        if not response.data:
            raise OpenAIServiceError("Empty embedding response from OpenAI")

        return list(response.data[0].embedding)

    async def generate_insight(self, user_id: str, system_message: str, user_message: str) -> dict[str, Any]:
        """
        JSON-mode chat completion.

        Returns:
            dict: Parsed JSON object from the model

        Raises:
            OpenAIServiceError: API failure, empty response or invalid JSON
        """
        client = self._get_client()

        async def call():
            return await client.chat.completions.create(
                model=settings.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": system_message},
                    {"role": "user", "content": user_message},
                ],
                response_format={"type": "json_object"},
                user=user_id,
            )

        response = await self._call_with_retry("insight", call)
        if not response.choices or not response.choices[0].message.content:
            raise OpenAIServiceError("Empty response from OpenAI API")

        raw_result = response.choices[0].message.content.strip()
        logger.info(
            "OpenAI insight generated",
            user_id=user_id,
            response_length=len(raw_result),
            usage_tokens=response.usage.total_tokens if response.usage else 0,
        )

        try:
            result = json.loads(raw_result)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse OpenAI response as JSON", raw_result=raw_result[:200])
            raise OpenAIServiceError("OpenAI returned invalid JSON") from e

        if not isinstance(result, dict):
            raise OpenAIServiceError("OpenAI returned JSON that is not an object")
        return result


# Singleton instance for application use
openai_service = OpenAIService()
