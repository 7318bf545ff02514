"""Embedding service backed by an OpenAI-compatible embeddings API."""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from manual_qa.exceptions import ConfigurationError, EmbeddingFailure, RateLimitError
from manual_qa.utils.logger import logger
from manual_qa.utils import metrics

DEFAULT_MAX_CHARS = 8000


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for rate-limited embedding requests."""

    max_attempts: int = 5
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return self.base_delay * (self.backoff_multiplier ** (attempt - 1))


class EmbeddingService:
    """Service for turning text into embedding vectors."""

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        model: str = "text-embedding-3-small",
        max_chars: int = DEFAULT_MAX_CHARS,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize embedding service.

        Args:
            api_key: API key for the embeddings endpoint
            base_url: Optional OpenAI-compatible base URL
            model: Embedding model name
            max_chars: Input is truncated to this many characters
            retry_policy: Backoff schedule used on rate-limit responses
            sleep: Awaitable sleep, replaceable in tests
            client: Preconfigured client (skips credential checks)
            http_client: Transport for the OpenAI client built from api_key

        Raises:
            ConfigurationError: If no API key and no client is provided
        """
        if client is None:
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY is not configured")
            # Rate limits are retried by retry_policy only
            client_kwargs = {"api_key": api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            if http_client is not None:
                client_kwargs["http_client"] = http_client
            client = AsyncOpenAI(**client_kwargs)

        self.client = client
        self.model = model
        self.max_chars = max_chars
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def embed(self, text: str) -> List[float]:
        """
        Generate an embedding for a single text.

        Over-length input is truncated to max_chars. Rate-limit responses are
        retried according to the retry policy.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            RateLimitError: If the oracle is still throttling after the last attempt
            EmbeddingFailure: On any other oracle error
        """
        truncated = text[: self.max_chars]
        policy = self.retry_policy

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=truncated,
                )
                return list(response.data[0].embedding)

            except openai.RateLimitError as e:
                if attempt >= policy.max_attempts:
                    metrics.embedding_failures_total.inc()
                    logger.warning(
                        f"Embedding rate limited after {attempt} attempts",
                        extra={"attempt": attempt},
                    )
                    raise RateLimitError(f"Embedding rate limit exceeded: {str(e)}")

                delay = policy.delay_for(attempt)
                metrics.embedding_retries_total.inc()
                logger.info(
                    f"Embedding rate limited, retrying in {delay:.2f}s",
                    extra={"attempt": attempt, "delay": delay},
                )
                await self._sleep(delay)

            except openai.APIError as e:
                metrics.embedding_failures_total.inc()
                detail = getattr(e, "message", None) or str(e)
                raise EmbeddingFailure(f"Embedding request failed: {detail}", detail=detail)

        # max_attempts < 1
        raise EmbeddingFailure("Embedding was not attempted: retry policy allows no attempts")

    async def close(self) -> None:
        await self.client.close()
