"""Client side of the chat stream: SSE parsing, conversation state and smooth reveal."""
import asyncio
import codecs
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from manual_qa.utils.logger import logger
from manual_qa.utils.text_cleaner import normalize_content

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."

CHAR_DELAY_SECONDS = 0.001
BUFFER_THRESHOLD = 15

_TAGGED_FOLLOWUPS = re.compile(r"\n?\[followups\]\s*\n([\s\S]*?)\n\[/followups\]\s*$", re.IGNORECASE)
_TAGGED_FOLLOWUPS_BLOCK = re.compile(r"\n?\[followups\][\s\S]*?\[/followups\]\s*$", re.IGNORECASE)
_LEGACY_FOLLOWUPS = re.compile(r"---\s*\n?\*\*You might ask:\*\*\s*([\s\S]*?)$")
_LEGACY_FOLLOWUPS_BLOCK = re.compile(r"---\s*\n?\*\*You might ask:\*\*[\s\S]*$")


class ChatRequestError(Exception):
    """Raised when the chat endpoint answers with an error instead of a stream."""


# ----------------------------------------------------------------------
# SSE parsing
# ----------------------------------------------------------------------


class SSEParser:
    """
    Incremental parser for ``data: <json>`` event streams.

    Bytes may be split anywhere, including inside a UTF-8 sequence, a line or a
    JSON object. Complete lines are parsed as they arrive; a data line whose
    JSON does not parse is pushed back onto the buffer and retried on the next
    feed. ``[DONE]`` stops parsing.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, data: Union[bytes, str]) -> List[Any]:
        """Add received data and return the events it completed."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(data) if isinstance(data, bytes) else data

        events = []
        while not self.done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]

            if line.endswith("\r"):
                line = line[:-1]
            if not line.strip() or line.startswith(":"):
                continue
            if not line.startswith("data: "):
                continue

            payload = line[6:].strip()
            if payload == "[DONE]":
                self.done = True
                break
            try:
                events.append(json.loads(payload))
            except json.JSONDecodeError:
                self._buffer = f"{line}\n{self._buffer}"
                break
        return events

    def flush(self) -> List[Any]:
        """Parse whatever is left once the stream has ended. Unparseable lines are dropped."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""

        events = []
        for raw in remaining.split("\n"):
            line = raw[:-1] if raw.endswith("\r") else raw
            if not line.strip() or line.startswith(":") or not line.startswith("data: "):
                continue
            payload = line[6:].strip()
            if payload == "[DONE]":
                self.done = True
                break
            try:
                events.append(json.loads(payload))
            except json.JSONDecodeError:
                continue
        return events


def extract_page_images(event: Any) -> Optional[List[Dict[str, Any]]]:
    """Return the images of a page-images event, or None for any other event."""
    if not isinstance(event, dict):
        return None
    if event.get("type") == "page_images":
        return list(event.get("images") or [])
    if isinstance(event.get("pages"), list):
        return list(event["pages"])
    return None


def extract_delta(event: Any) -> str:
    """Return the text delta carried by a completion chunk (empty if none)."""
    if not isinstance(event, dict):
        return ""
    choices = event.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    return normalize_content(delta.get("content"))


def parse_followups(content: str) -> Tuple[str, List[str]]:
    """
    Split an assistant answer into its body and up to three follow-up questions.

    Understands the tagged ``[followups] ... [/followups]`` block and the older
    ``**You might ask:**`` trailer.
    """
    match = _TAGGED_FOLLOWUPS.search(content)
    block = _TAGGED_FOLLOWUPS_BLOCK
    if not match:
        match = _LEGACY_FOLLOWUPS.search(content)
        block = _LEGACY_FOLLOWUPS_BLOCK
    if not match:
        return content, []

    body = block.sub("", content).strip()
    questions = [re.sub(r"^-\s*", "", line).strip() for line in match.group(1).split("\n")]
    return body, [q for q in questions if q][:3]


# ----------------------------------------------------------------------
# Conversation state
# ----------------------------------------------------------------------


class TurnState(str, Enum):
    NO_TURN = "no-turn"
    STREAMING = "streaming-turn"
    FINALIZED = "finalized-turn"


@dataclass
class ConversationMessage:
    role: str
    content: str = ""
    page_images: List[Dict[str, Any]] = field(default_factory=list)


class Conversation:
    """
    Transcript of one chat session with an explicit assistant-turn state.

    Only the open assistant turn is ever mutated; finished messages are frozen.
    """

    def __init__(self, document_id: Optional[str] = None):
        self.document_id = document_id
        self.messages: List[ConversationMessage] = []
        self.state = TurnState.NO_TURN
        self._turn: Optional[ConversationMessage] = None

    @property
    def current_turn(self) -> Optional[ConversationMessage]:
        return self._turn

    def add_user_message(self, content: str) -> ConversationMessage:
        if self.state == TurnState.STREAMING:
            raise RuntimeError("An assistant turn is still streaming")
        message = ConversationMessage(role="user", content=content)
        self.messages.append(message)
        return message

    def begin_assistant_turn(self) -> ConversationMessage:
        if self.state == TurnState.STREAMING:
            raise RuntimeError("An assistant turn is already streaming")
        self._turn = ConversationMessage(role="assistant")
        self.messages.append(self._turn)
        self.state = TurnState.STREAMING
        return self._turn

    def set_content(self, content: str) -> None:
        """Replace the open turn's content with the total received so far."""
        if self.state != TurnState.STREAMING:
            return
        self._turn.content = content

    def attach_page_images(self, images: List[Dict[str, Any]]) -> None:
        if self.state != TurnState.STREAMING:
            return
        self._turn.page_images = list(images)

    def finalize_turn(self) -> Optional[ConversationMessage]:
        if self.state != TurnState.STREAMING:
            return None
        turn, self._turn = self._turn, None
        self.state = TurnState.FINALIZED
        return turn

    def rollback_turn(self) -> None:
        """Drop the open assistant turn; earlier messages are untouched."""
        if self.state != TurnState.STREAMING:
            return
        self.messages = [m for m in self.messages if m is not self._turn]
        self._turn = None
        self.state = TurnState.NO_TURN

    def request_messages(self) -> List[Dict[str, str]]:
        """Messages to send to the chat endpoint, excluding the open turn."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m is not self._turn
        ]

    def clear(self) -> None:
        self.messages = []
        self._turn = None
        self.state = TurnState.NO_TURN


# ----------------------------------------------------------------------
# Smooth reveal
# ----------------------------------------------------------------------


class SmoothReveal:
    """
    Reveals received text one character per tick, decoupled from arrival.

    Nothing is shown until ``buffer_threshold`` characters are pending or the
    stream has ended.
    """

    def __init__(
        self,
        on_update: Callable[[str], None],
        interval: float = CHAR_DELAY_SECONDS,
        buffer_threshold: int = BUFFER_THRESHOLD,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.on_update = on_update
        self.interval = interval
        self.buffer_threshold = buffer_threshold
        self._sleep = sleep
        self.received = ""
        self.displayed = ""
        self._closed = False
        self._started = False

    def push(self, text: str) -> None:
        self.received += text

    def close(self) -> None:
        """Mark the stream as finished; the reveal drains what is left."""
        self._closed = True

    async def run(self) -> str:
        while True:
            if not self._started:
                pending = len(self.received) - len(self.displayed)
                if pending >= self.buffer_threshold or self._closed:
                    self._started = True
                else:
                    await self._sleep(self.interval)
                    continue

            if len(self.displayed) < len(self.received):
                self.displayed = self.received[: len(self.displayed) + 1]
                self.on_update(self.displayed)
            elif self._closed:
                return self.displayed
            await self._sleep(self.interval)


# ----------------------------------------------------------------------
# Chat stream consumer
# ----------------------------------------------------------------------


def error_message_from_body(body: bytes) -> str:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return GENERIC_ERROR_MESSAGE
    if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    return GENERIC_ERROR_MESSAGE


class ChatStreamConsumer:
    """Sends a chat turn and folds the event stream into a Conversation."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: Optional[httpx.AsyncClient] = None,
        smooth_reveal: bool = False,
        reveal_interval: float = CHAR_DELAY_SECONDS,
        reveal_buffer: int = BUFFER_THRESHOLD,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_update: Optional[Callable[[ConversationMessage], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        timeout: float = 120.0,
    ):
        """
        Initialize the consumer.

        Args:
            base_url: Backend URL
            http_client: Client to use; one is created per request when omitted
            smooth_reveal: Reveal text one character at a time
            reveal_interval: Seconds between revealed characters
            reveal_buffer: Characters buffered before the reveal starts
            sleep: Awaitable sleep, replaceable in tests
            on_update: Called with the assistant message after each change
            on_error: Called with a user-facing message when a turn fails
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.smooth_reveal = smooth_reveal
        self.reveal_interval = reveal_interval
        self.reveal_buffer = reveal_buffer
        self._sleep = sleep
        self.on_update = on_update
        self.on_error = on_error
        self.timeout = timeout
        self._cancelled = False

    def cancel(self) -> None:
        """Abandon the in-flight turn; further events are ignored."""
        self._cancelled = True

    def _notify(self, conversation: Conversation) -> None:
        if self.on_update and conversation.current_turn is not None:
            self.on_update(conversation.current_turn)

    async def send(
        self, conversation: Conversation, text: str, document_id: Optional[str] = None
    ) -> Optional[ConversationMessage]:
        """
        Send a user message and stream the assistant answer into the conversation.

        Returns:
            The finished assistant message, or None if the turn failed or was
            cancelled before any text arrived
        """
        document_id = document_id or conversation.document_id
        conversation.add_user_message(text)
        turn = conversation.begin_assistant_turn()
        self._cancelled = False

        reveal: Optional[SmoothReveal] = None
        reveal_task: Optional[asyncio.Task] = None
        if self.smooth_reveal:
            def show(displayed: str) -> None:
                conversation.set_content(displayed)
                self._notify(conversation)

            reveal = SmoothReveal(show, self.reveal_interval, self.reveal_buffer, self._sleep)
            reveal_task = asyncio.create_task(reveal.run())

        received = ""

        def apply(event: Any) -> None:
            nonlocal received
            images = extract_page_images(event)
            if images is not None:
                conversation.attach_page_images(images)
                self._notify(conversation)
                return
            delta = extract_delta(event)
            if not delta:
                return
            received += delta
            if reveal is not None:
                reveal.push(delta)
            else:
                conversation.set_content(received)
                self._notify(conversation)

        try:
            await self._stream(conversation, document_id, apply)
            if reveal is not None:
                reveal.close()
                await reveal_task
        except (httpx.HTTPError, ChatRequestError) as e:
            if reveal_task is not None:
                reveal_task.cancel()
            conversation.rollback_turn()
            message = str(e) if isinstance(e, ChatRequestError) else GENERIC_ERROR_MESSAGE
            logger.warning(f"Chat turn failed: {message}")
            if self.on_error:
                self.on_error(message)
            return None

        if self._cancelled and not turn.content:
            conversation.rollback_turn()
            return None
        return conversation.finalize_turn()

    async def _stream(
        self, conversation: Conversation, document_id: Optional[str], apply: Callable[[Any], None]
    ) -> None:
        body = {"messages": conversation.request_messages(), "documentId": document_id}
        client = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream("POST", f"{self.base_url}/api/chat", json=body) as response:
                if response.status_code >= 400:
                    raise ChatRequestError(error_message_from_body(await response.aread()))

                parser = SSEParser()
                async for data in response.aiter_bytes():
                    if self._cancelled:
                        return
                    for event in parser.feed(data):
                        apply(event)
                    if parser.done:
                        return
                for event in parser.flush():
                    apply(event)
        finally:
            if self.http_client is None:
                await client.aclose()


# ----------------------------------------------------------------------
# Ingestion driver
# ----------------------------------------------------------------------


class IngestionClientError(Exception):
    """Raised when an ingestion request fails."""


class IngestionClient:
    """Drives the admin flow: upload, ingest or push chunks, then poll embeddings."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self.http_client.request(method, f"{self.base_url}{path}", **kwargs)
        if response.status_code >= 400:
            raise IngestionClientError(error_message_from_body(response.content))
        return response.json()

    async def upload(self, filename: str, content: bytes) -> Dict[str, Any]:
        files = {"file": (filename, content, "application/pdf")}
        return await self._request("POST", "/api/documents", files=files)

    async def ingest(
        self, document_id: str, text: Optional[str] = None, mode: str = "deferred"
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"mode": mode}
        if text is not None:
            body["text"] = text
        return await self._request("POST", f"/api/documents/{document_id}/ingest", json=body)

    async def upload_chunks(
        self, document_id: str, chunks: List[str], batch_size: int = 25
    ) -> int:
        """Push client-side chunks in batches; the first clears, the last finalizes."""
        total = len(chunks)
        inserted = 0
        for start in range(0, total, batch_size):
            batch = chunks[start:start + batch_size]
            body = {
                "chunks": [
                    {
                        "content": content,
                        "metadata": {
                            "chunk_index": start + offset,
                            "total_chunks": total,
                            "char_count": len(content),
                        },
                    }
                    for offset, content in enumerate(batch)
                ],
                "clearFirst": start == 0,
                "finalize": start + batch_size >= total,
                "totalChunks": total,
            }
            result = await self._request("POST", f"/api/documents/{document_id}/chunks", json=body)
            inserted += result.get("inserted", 0)
        return inserted

    async def run_embeddings(
        self,
        document_id: str,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """Call the embedding step until it reports complete."""
        while True:
            result = await self._request("POST", f"/api/documents/{document_id}/process-embeddings")
            if on_progress:
                on_progress(result)
            if result.get("complete"):
                return result
            await self._sleep(self.poll_interval)

    async def close(self) -> None:
        await self.http_client.aclose()
