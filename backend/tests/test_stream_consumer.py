"""Tests for the chat stream client."""
import asyncio
import json

import httpx
import pytest

from manual_qa.client.stream_consumer import (
    GENERIC_ERROR_MESSAGE,
    ChatStreamConsumer,
    Conversation,
    IngestionClient,
    IngestionClientError,
    SSEParser,
    SmoothReveal,
    TurnState,
    extract_delta,
    extract_page_images,
    parse_followups,
)

BASE_URL = "http://testserver"

PAGE_IMAGES = [{"url": "/storage/m1/pages/page_2.jpg", "pageNumber": 2}]


def delta_event(content, role=None):
    delta = {"content": content}
    if role:
        delta["role"] = role
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": None}]}


def sse_stream(*events, done=True, trailer=""):
    body = "".join(f"data: {json.dumps(e, ensure_ascii=False)}\n\n" for e in events)
    if done:
        body += "data: [DONE]\n\n"
    return (body + trailer).encode("utf-8")


def feed_in_pieces(data, size):
    parser = SSEParser()
    events = []
    for start in range(0, len(data), size):
        events.extend(parser.feed(data[start:start + size]))
    events.extend(parser.flush())
    return events


def chat_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)


async def no_sleep(_):
    await asyncio.sleep(0)


class TestSSEParser:
    """Tests for incremental SSE parsing."""

    EVENTS = [
        delta_event("Hé", role="assistant"),
        delta_event("llo ✓ wörld"),
        {"type": "page_images", "images": PAGE_IMAGES},
    ]

    def raw(self):
        return (
            b": keep-alive\n\n"
            + sse_stream(*self.EVENTS, done=False).replace(b"\n\n", b"\r\n\r\n", 1)
            + b"event: ping\n\n"
            + b"data: [DONE]\n\n"
            + b'data: {"after": "done"}\n\n'
        )

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 64, 10_000])
    def test_split_invariance(self, size):
        assert feed_in_pieces(self.raw(), size) == self.EVENTS

    def test_done_stops_parsing(self):
        parser = SSEParser()

        events = parser.feed(sse_stream(delta_event("a")) + sse_stream(delta_event("b")))

        assert events == [delta_event("a")]
        assert parser.done
        assert parser.feed(sse_stream(delta_event("c"))) == []

    def test_line_split_across_reads(self):
        parser = SSEParser()
        data = sse_stream(delta_event("split"), done=False)

        assert parser.feed(data[:15]) == []
        assert parser.feed(data[15:]) == [delta_event("split")]

    def test_unparseable_line_waits_then_is_dropped_at_end(self):
        parser = SSEParser()

        events = parser.feed(b"data: {not json\n\n" + sse_stream(delta_event("x"), done=False))

        assert events == []
        assert parser.flush() == [delta_event("x")]

    def test_stream_without_done_is_flushed(self):
        parser = SSEParser()

        events = parser.feed(b'data: {"a": 1}\n\ndata: {"b": 2}')

        assert events == [{"a": 1}]
        assert parser.flush() == [{"b": 2}]


class TestEventHelpers:
    def test_page_images_shapes(self):
        assert extract_page_images({"type": "page_images", "images": PAGE_IMAGES}) == PAGE_IMAGES
        assert extract_page_images({"pages": PAGE_IMAGES}) == PAGE_IMAGES
        assert extract_page_images(delta_event("text")) is None

    def test_extract_delta(self):
        assert extract_delta(delta_event("abc")) == "abc"
        assert extract_delta({"choices": [{"delta": {"content": [{"text": "a"}, {"text": "b"}]}}]}) == "ab"
        assert extract_delta({"choices": [{"delta": {"role": "assistant"}}]}) == ""
        assert extract_delta({"choices": []}) == ""
        assert extract_delta("not a dict") == ""


class TestFollowups:
    """Tests for follow-up block parsing."""

    def test_tagged_block(self):
        content = (
            "Hold the reset button (1).\n\n"
            "[followups]\n- How long do I hold it?\n- What if it blinks?\n- Where is the button?\n[/followups]"
        )

        body, questions = parse_followups(content)

        assert body == "Hold the reset button (1)."
        assert questions == ["How long do I hold it?", "What if it blinks?", "Where is the button?"]

    def test_legacy_trailer(self):
        content = "Answer text.\n\n---\n**You might ask:**\n- First?\n- Second?"

        body, questions = parse_followups(content)

        assert body == "Answer text."
        assert questions == ["First?", "Second?"]

    def test_at_most_three(self):
        content = "Answer\n[followups]\n- a\n- b\n- c\n- d\n[/followups]"

        assert parse_followups(content)[1] == ["a", "b", "c"]

    def test_no_block(self):
        assert parse_followups("Just an answer.") == ("Just an answer.", [])


class TestConversation:
    """Tests for the assistant-turn state machine."""

    def test_finalize(self):
        conversation = Conversation(document_id="m1")
        conversation.add_user_message("Hi")
        conversation.begin_assistant_turn()
        conversation.set_content("Hel")
        conversation.set_content("Hello")

        turn = conversation.finalize_turn()

        assert turn.content == "Hello"
        assert conversation.state == TurnState.FINALIZED
        assert [m.content for m in conversation.messages] == ["Hi", "Hello"]

    def test_rollback_keeps_user_message(self):
        conversation = Conversation()
        conversation.add_user_message("Hi")
        conversation.begin_assistant_turn()

        conversation.rollback_turn()

        assert conversation.state == TurnState.NO_TURN
        assert [(m.role, m.content) for m in conversation.messages] == [("user", "Hi")]

    def test_finished_turns_are_frozen(self):
        conversation = Conversation()
        conversation.add_user_message("Hi")
        conversation.begin_assistant_turn()
        conversation.set_content("Done")
        conversation.finalize_turn()

        conversation.set_content("changed")
        conversation.attach_page_images(PAGE_IMAGES)

        assert conversation.messages[-1].content == "Done"
        assert conversation.messages[-1].page_images == []

    def test_one_open_turn_at_a_time(self):
        conversation = Conversation()
        conversation.begin_assistant_turn()

        with pytest.raises(RuntimeError):
            conversation.begin_assistant_turn()
        with pytest.raises(RuntimeError):
            conversation.add_user_message("again")

    def test_request_messages_exclude_open_turn(self):
        conversation = Conversation()
        conversation.add_user_message("Hi")
        conversation.begin_assistant_turn()

        assert conversation.request_messages() == [{"role": "user", "content": "Hi"}]


class TestSmoothReveal:
    @pytest.mark.asyncio
    async def test_reveals_one_character_at_a_time(self):
        shown = []
        reveal = SmoothReveal(shown.append, buffer_threshold=15, sleep=no_sleep)
        reveal.push("Short answer")
        reveal.close()

        result = await reveal.run()

        assert result == "Short answer"
        assert shown == ["Short answer"[: n] for n in range(1, len("Short answer") + 1)]


class TestChatStreamConsumer:
    """Tests for sending a turn and folding the stream into the transcript."""

    @pytest.mark.asyncio
    async def test_streams_answer_and_page_images(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            body = sse_stream(
                delta_event("Hel", role="assistant"),
                delta_event("lo"),
                {"type": "page_images", "images": PAGE_IMAGES},
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        updates = []
        conversation = Conversation(document_id="m1")
        async with chat_client(handler) as client:
            consumer = ChatStreamConsumer(
                base_url=BASE_URL,
                http_client=client,
                on_update=lambda message: updates.append(message.content),
            )
            result = await consumer.send(conversation, "How do I reset it?")

        assert result.content == "Hello"
        assert result.page_images == PAGE_IMAGES
        assert conversation.state == TurnState.FINALIZED
        assert updates[:2] == ["Hel", "Hello"]
        assert requests == [
            {"messages": [{"role": "user", "content": "How do I reset it?"}], "documentId": "m1"}
        ]

    @pytest.mark.asyncio
    async def test_smooth_reveal_shows_full_answer(self):
        text = "A longer answer that exceeds the reveal buffer."

        def handler(request):
            events = [delta_event(ch) for ch in text]
            return httpx.Response(200, content=sse_stream(*events))

        updates = []
        conversation = Conversation(document_id="m1")
        async with chat_client(handler) as client:
            consumer = ChatStreamConsumer(
                base_url=BASE_URL,
                http_client=client,
                smooth_reveal=True,
                sleep=no_sleep,
                on_update=lambda message: updates.append(message.content),
            )
            result = await consumer.send(conversation, "Question")

        assert result.content == text
        assert updates[-1] == text
        assert all(len(b) == len(a) + 1 for a, b in zip(updates, updates[1:]))

    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_partial_answer(self):
        async def body():
            yield sse_stream(delta_event("Hel", role="assistant"), done=False)
            yield sse_stream(delta_event("lo"), done=False)
            yield sse_stream({"type": "page_images", "images": PAGE_IMAGES})

        def on_update(message):
            updates.append(message.content)
            consumer.cancel()

        updates = []
        conversation = Conversation(document_id="m1")
        async with chat_client(lambda request: httpx.Response(200, content=body())) as client:
            consumer = ChatStreamConsumer(base_url=BASE_URL, http_client=client, on_update=on_update)
            result = await consumer.send(conversation, "How do I reset it?")

        assert result.content == "Hel"
        assert result.page_images == []
        assert updates == ["Hel"]
        assert conversation.state == TurnState.FINALIZED
        assert [(m.role, m.content) for m in conversation.messages] == [
            ("user", "How do I reset it?"),
            ("assistant", "Hel"),
        ]

    @pytest.mark.asyncio
    async def test_cancel_before_content_drops_placeholder(self):
        async def body():
            yield sse_stream({"type": "page_images", "images": PAGE_IMAGES}, done=False)
            yield sse_stream(delta_event("Too late"))

        conversation = Conversation(document_id="m1")
        async with chat_client(lambda request: httpx.Response(200, content=body())) as client:
            consumer = ChatStreamConsumer(
                base_url=BASE_URL, http_client=client, on_update=lambda message: consumer.cancel()
            )
            result = await consumer.send(conversation, "Question")

        assert result is None
        assert conversation.state == TurnState.NO_TURN
        assert [(m.role, m.content) for m in conversation.messages] == [("user", "Question")]

    @pytest.mark.asyncio
    async def test_error_response_rolls_back_turn(self):
        def handler(request):
            return httpx.Response(429, json={"error": "Rate limit exceeded. Please wait a moment and try again."})

        errors = []
        conversation = Conversation(document_id="m1")
        async with chat_client(handler) as client:
            consumer = ChatStreamConsumer(base_url=BASE_URL, http_client=client, on_error=errors.append)
            result = await consumer.send(conversation, "Question")

        assert result is None
        assert errors == ["Rate limit exceeded. Please wait a moment and try again."]
        assert conversation.state == TurnState.NO_TURN
        assert [(m.role, m.content) for m in conversation.messages] == [("user", "Question")]

    @pytest.mark.asyncio
    async def test_connection_error_uses_generic_message(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        errors = []
        conversation = Conversation(document_id="m1")
        async with chat_client(handler) as client:
            consumer = ChatStreamConsumer(base_url=BASE_URL, http_client=client, on_error=errors.append)
            result = await consumer.send(conversation, "Question")

        assert result is None
        assert errors == [GENERIC_ERROR_MESSAGE]
        assert len(conversation.messages) == 1

    @pytest.mark.asyncio
    async def test_next_turn_after_failure(self):
        responses = iter([
            httpx.Response(500, json={"error": "AI service temporarily unavailable"}),
            httpx.Response(200, content=sse_stream(delta_event("Recovered"))),
        ])

        conversation = Conversation(document_id="m1")
        async with chat_client(lambda request: next(responses)) as client:
            consumer = ChatStreamConsumer(base_url=BASE_URL, http_client=client)
            assert await consumer.send(conversation, "First") is None
            result = await consumer.send(conversation, "Second")

        assert result.content == "Recovered"
        assert [m.content for m in conversation.messages] == ["First", "Second", "Recovered"]


class TestIngestionClient:
    """Tests for the admin ingestion driver."""

    @pytest.mark.asyncio
    async def test_upload_chunks_marks_first_and_last_batch(self):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={"success": True, "inserted": len(body["chunks"]), "finalize": body["finalize"]})

        client = IngestionClient(base_url=BASE_URL, http_client=chat_client(handler))
        inserted = await client.upload_chunks("m1", [f"chunk {i}" for i in range(60)], batch_size=25)
        await client.close()

        assert inserted == 60
        assert [(b["clearFirst"], b["finalize"]) for b in bodies] == [(True, False), (False, False), (False, True)]
        assert bodies[2]["chunks"][0]["metadata"]["chunk_index"] == 50
        assert all(b["totalChunks"] == 60 for b in bodies)

    @pytest.mark.asyncio
    async def test_run_embeddings_polls_until_complete(self):
        steps = iter([
            {"success": True, "complete": False, "processed": 10, "errors": 0, "remaining": 5},
            {"success": True, "complete": True, "processed": 5, "errors": 0, "remaining": 0, "totalChunks": 15},
        ])
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        client = IngestionClient(
            base_url=BASE_URL,
            http_client=chat_client(lambda request: httpx.Response(200, json=next(steps))),
            sleep=record_sleep,
        )
        progress = []
        result = await client.run_embeddings("m1", on_progress=progress.append)
        await client.close()

        assert result["totalChunks"] == 15
        assert [p["remaining"] for p in progress] == [5, 0]
        assert delays == [0.5]

    @pytest.mark.asyncio
    async def test_error_body_is_surfaced(self):
        client = IngestionClient(
            base_url=BASE_URL,
            http_client=chat_client(lambda request: httpx.Response(404, json={"error": "Manual m1 not found"})),
        )

        with pytest.raises(IngestionClientError, match="Manual m1 not found"):
            await client.ingest("m1")
        await client.close()
