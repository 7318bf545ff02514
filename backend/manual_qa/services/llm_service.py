"""LLM service relaying chat completions as a server-sent event stream."""
import copy
import json
import time
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from manual_qa.exceptions import (
    ConfigurationError,
    GenerationBackendError,
    QuotaExhaustedError,
    RateLimitError,
)
from manual_qa.models.document import PageImage
from manual_qa.utils.logger import logger
from manual_qa.utils.text_cleaner import normalize_content

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
QUOTA_MESSAGE = "Usage limit reached. Please add credits to continue."
UNAVAILABLE_MESSAGE = "AI service temporarily unavailable"

DONE_EVENT = "data: [DONE]\n\n"


def sse_event(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def page_images_event(images: List[PageImage]) -> str:
    return sse_event({"type": "page_images", "images": [image.to_event() for image in images]})


class LLMService:
    """Streams answers from an OpenAI-compatible chat completion backend."""

    def __init__(
        self,
        api_key: str = "",
        api_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        smooth_streaming: bool = True,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize LLM service.

        Args:
            api_key: Backend API key
            api_url: Base URL of the backend (a trailing /chat/completions is dropped)
            model: Model name to use
            temperature: Sampling temperature
            smooth_streaming: Split content deltas into one event per character
            client: Preconfigured client (skips credential checks)
            http_client: Transport for the OpenAI client built from api_key

        Raises:
            ConfigurationError: If no API key and no client is provided
        """
        if client is None:
            if not api_key:
                raise ConfigurationError("Chat API key is not configured")
            base_url = api_url.rstrip("/")
            if base_url.endswith("/chat/completions"):
                base_url = base_url[: -len("/chat/completions")]
            # 429 and 402 go straight back to the caller
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                max_retries=0,
                http_client=http_client or httpx.AsyncClient(timeout=60.0),
            )

        self.client = client
        self.model = model
        self.temperature = temperature
        self.smooth_streaming = smooth_streaming

    async def open_stream(self, messages: List[Dict[str, str]]):
        """
        Start a streaming completion.

        Backend failures are translated here, before any event is sent.

        Raises:
            RateLimitError: Backend returned 429
            QuotaExhaustedError: Backend returned 402 or reported exhausted quota
            GenerationBackendError: Any other backend failure
        """
        try:
            return await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                stream=True,
            )
        except openai.RateLimitError as e:
            logger.warning(f"Chat backend rate limited: {str(e)}")
            if getattr(e, "code", None) == "insufficient_quota":
                raise QuotaExhaustedError(QUOTA_MESSAGE)
            raise RateLimitError(RATE_LIMIT_MESSAGE)
        except openai.APIStatusError as e:
            logger.error(f"Chat backend error {e.status_code}: {str(e)}")
            if e.status_code == 402:
                raise QuotaExhaustedError(QUOTA_MESSAGE)
            raise GenerationBackendError(UNAVAILABLE_MESSAGE)
        except openai.APIError as e:
            logger.error(f"Chat backend unreachable: {str(e)}")
            raise GenerationBackendError(UNAVAILABLE_MESSAGE)

    def relay_chunk(self, chunk: Any) -> Iterator[str]:
        """
        Turn one backend chunk into SSE events.

        Content deltas are normalized to a string and, in smooth mode, split
        into one event per character. Anything else passes through as is.
        """
        payload = chunk.model_dump(mode="json", exclude_unset=True)
        choices = payload.get("choices") or []
        delta = choices[0].get("delta") if len(choices) == 1 else None

        if not delta or delta.get("content") is None:
            yield sse_event(payload)
            return

        content = normalize_content(delta["content"])
        delta["content"] = content

        if not self.smooth_streaming or len(content) <= 1:
            yield sse_event(payload)
            return

        finish_reason = choices[0].get("finish_reason")
        last = len(content) - 1
        for position, character in enumerate(content):
            piece = copy.deepcopy(payload)
            piece_choice = piece["choices"][0]
            piece_choice["delta"]["content"] = character
            # Role opens the first piece, finish_reason closes the last
            if position > 0:
                piece_choice["delta"].pop("role", None)
            if position < last and finish_reason is not None:
                piece_choice["finish_reason"] = None
            yield sse_event(piece)

    async def relay(self, stream: Any, page_images: List[PageImage]) -> AsyncIterator[str]:
        """
        Relay a completion stream, then the page images event (if any), then [DONE].

        A backend error mid-stream is logged and aborts the output.
        """
        start_time = time.time()
        try:
            async for chunk in stream:
                for event in self.relay_chunk(chunk):
                    yield event
        except Exception as e:
            logger.error(f"Chat stream aborted: {str(e)}", exc_info=True)
            raise

        if page_images:
            yield page_images_event(page_images)
        yield DONE_EVENT

        logger.info(
            "Chat stream completed",
            extra={
                "cited_pages": [image.page_number for image in page_images],
                "response_time_ms": round((time.time() - start_time) * 1000, 2),
            },
        )

    async def close(self) -> None:
        await self.client.close()
