"""Tests for the SQLite record store."""
import asyncio

import pytest

from manual_qa.exceptions import DocumentNotFoundError
from manual_qa.models.document import DocumentStatus
from manual_qa.services.chunker import build_chunk_records


async def seed_chunks(record_store, document_id, count):
    contents = [f"--- Page {i + 1} ---\nChunk {i} content" for i in range(count)]
    records = build_chunk_records(document_id, contents)
    await record_store.insert_chunks(records)
    return records


class TestManuals:
    """Tests for manual rows."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, record_store):
        document = await record_store.create_document(name="manual.pdf", file_size=1024)

        assert document.status == DocumentStatus.PENDING
        assert document.chunk_count == 0
        assert document.processed_at is None

        fetched = await record_store.get_document(document.id)
        assert fetched == document

    @pytest.mark.asyncio
    async def test_get_missing(self, record_store):
        assert await record_store.get_document("missing") is None
        with pytest.raises(DocumentNotFoundError):
            await record_store.require_document("missing")

    @pytest.mark.asyncio
    async def test_list_documents(self, record_store):
        await record_store.create_document(name="a.pdf")
        await record_store.create_document(name="b.pdf")

        names = {d.name for d in await record_store.list_documents()}
        assert names == {"a.pdf", "b.pdf"}

    @pytest.mark.asyncio
    async def test_update_document(self, record_store):
        document = await record_store.create_document(name="manual.pdf")

        updated = await record_store.update_document(
            document.id, status=DocumentStatus.READY, chunk_count=12, processed_at="2024-01-01T00:00:00"
        )

        assert updated.status == DocumentStatus.READY
        assert updated.chunk_count == 12
        assert updated.processed_at == "2024-01-01T00:00:00"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        with pytest.raises(ValueError):
            await record_store.update_document(document.id, created_at="yesterday")

    @pytest.mark.asyncio
    async def test_update_missing_document(self, record_store):
        with pytest.raises(DocumentNotFoundError):
            await record_store.update_document("missing", status=DocumentStatus.ERROR)

    @pytest.mark.asyncio
    async def test_delete_cascades_to_chunks(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 3)

        assert await record_store.delete_document(document.id) is True
        assert await record_store.count_chunks(document.id) == 0
        assert await record_store.delete_document(document.id) is False


class TestChunks:
    """Tests for chunk rows and embedding claims."""

    @pytest.mark.asyncio
    async def test_insert_and_list(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 60)

        chunks = await record_store.list_chunks(document.id)

        assert len(chunks) == 60
        assert [c.chunk_index for c in chunks] == list(range(60))
        assert chunks[4].page_number == 5
        assert chunks[4].metadata["chunk_index"] == 4
        assert await record_store.max_chunk_index(document.id) == 59
        assert await record_store.count_chunks(document.id, unembedded_only=True) == 60

    @pytest.mark.asyncio
    async def test_delete_chunks(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 4)

        assert await record_store.delete_chunks(document.id) == 4
        assert await record_store.max_chunk_index(document.id) is None

    @pytest.mark.asyncio
    async def test_claim_and_mark_embedded(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 5)

        claimed = await record_store.claim_unembedded(document.id, 3, "token-a")
        assert [c.chunk_index for c in claimed] == [0, 1, 2]

        for chunk in claimed:
            assert await record_store.mark_embedded(chunk.id, "token-a") is True

        assert await record_store.count_chunks(document.id, unembedded_only=True) == 2
        chunks = await record_store.list_chunks(document.id)
        assert [c.is_embedded for c in chunks] == [True, True, True, False, False]

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 6)

        first, second = await asyncio.gather(
            record_store.claim_unembedded(document.id, 4, "token-a"),
            record_store.claim_unembedded(document.id, 4, "token-b"),
        )

        first_ids = {c.id for c in first}
        second_ids = {c.id for c in second}
        assert first_ids.isdisjoint(second_ids)
        assert len(first_ids | second_ids) == 6

    @pytest.mark.asyncio
    async def test_released_claim_can_be_reclaimed(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 1)

        (chunk,) = await record_store.claim_unembedded(document.id, 5, "token-a")
        assert await record_store.claim_unembedded(document.id, 5, "token-b") == []

        await record_store.release_claim(chunk.id, "token-a")
        reclaimed = await record_store.claim_unembedded(document.id, 5, "token-b")
        assert [c.id for c in reclaimed] == [chunk.id]

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, record_store):
        document = await record_store.create_document(name="manual.pdf")
        await seed_chunks(record_store, document.id, 2)

        await record_store.claim_unembedded(document.id, 2, "token-a")
        taken = await record_store.claim_unembedded(document.id, 2, "token-b", claim_ttl_seconds=-1)

        assert len(taken) == 2
        # The original holder can no longer record the embedding
        assert await record_store.mark_embedded(taken[0].id, "token-a") is False
        assert await record_store.mark_embedded(taken[0].id, "token-b") is True
