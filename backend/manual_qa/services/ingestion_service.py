"""Ingestion coordinator: extraction, chunking, embedding and manual status."""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from manual_qa.exceptions import (
    EmbeddingFailure,
    ExtractionFailure,
    InvalidStatusTransition,
    RateLimitError,
    ValidationError,
)
from manual_qa.models.document import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ChunkRecord,
    Document,
    DocumentStatus,
    EmbeddingStepResult,
    IngestionResult,
)
from manual_qa.services.chunker import (
    ChunkStrategy,
    build_chunk_records,
    chunk_text,
    first_page_marker,
)
from manual_qa.services.document_processor import DocumentProcessor
from manual_qa.services.embedding_service import EmbeddingService
from manual_qa.services.record_store import RecordStore, utc_now
from manual_qa.services.vector_store import VectorStore
from manual_qa.utils import metrics
from manual_qa.utils.logger import logger
from manual_qa.utils.tracer import traced

# Per-chunk failures that are tallied instead of aborting the run
EMBEDDING_ERRORS = (EmbeddingFailure, RateLimitError)


class IngestionCoordinator:
    """Owns chunk creation/deletion and manual status for ingestion runs."""

    def __init__(
        self,
        record_store: RecordStore,
        vector_store: VectorStore,
        embedding_service: EmbeddingService,
        document_processor: Optional[DocumentProcessor] = None,
        chunk_size: int = 1500,
        chunk_overlap: int = 250,
        chunk_strategy: ChunkStrategy = ChunkStrategy.STRUCTURAL,
        min_chunk_length: int = 50,
        min_extracted_chars: int = 100,
        inline_batch_size: int = 5,
        inline_batch_delay: float = 0.5,
        step_size: int = 10,
        item_delay: float = 0.1,
        claim_ttl_seconds: float = 300,
        max_error_samples: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the coordinator.

        Args:
            record_store: Manual and chunk rows
            vector_store: Chunk embeddings
            embedding_service: Embedding oracle client
            document_processor: PDF extraction, needed when ingesting from a source
            chunk_size: Target chunk size in characters
            chunk_overlap: Characters carried between consecutive chunks
            chunk_strategy: Default chunking strategy
            min_chunk_length: Shortest chunk kept
            min_extracted_chars: Extracted text shorter than this fails the run
            inline_batch_size: Chunks embedded in parallel per server-driven batch
            inline_batch_delay: Pause between server-driven batches (seconds)
            step_size: Chunks claimed per resumable embedding step
            item_delay: Pause between chunks within a resumable step (seconds)
            claim_ttl_seconds: Age after which another step may take over a claim
            max_error_samples: Error messages kept for diagnostics
            sleep: Awaitable sleep, replaceable in tests
        """
        self.record_store = record_store
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.document_processor = document_processor
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.chunk_strategy = ChunkStrategy(chunk_strategy)
        self.min_chunk_length = min_chunk_length
        self.min_extracted_chars = min_extracted_chars
        self.inline_batch_size = inline_batch_size
        self.inline_batch_delay = inline_batch_delay
        self.step_size = step_size
        self.item_delay = item_delay
        self.claim_ttl_seconds = claim_ttl_seconds
        self.max_error_samples = max_error_samples
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def transition(
        self, document_id: str, target: DocumentStatus, **fields: Any
    ) -> Document:
        """
        Move a manual to a new status.

        Raises:
            InvalidStatusTransition: If the move is not allowed from the current status
        """
        document = await self.record_store.require_document(document_id)
        current = document.status

        if target == DocumentStatus.ERROR:
            if current in TERMINAL_STATUSES:
                raise InvalidStatusTransition(
                    f"Manual {document_id} is {current.value} and cannot fail"
                )
        elif target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransition(
                f"Manual {document_id} cannot move from {current.value} to {target.value}"
            )

        updated = await self.record_store.update_document(document_id, status=target, **fields)
        if current != target:
            logger.info(
                f"Manual {document_id}: {current.value} -> {target.value}",
                extra={"document_id": document_id, "status": target.value},
            )
        return updated

    async def begin_run(self, document_id: str) -> Document:
        """Reset a manual to pending for a new ingestion run."""
        return await self.record_store.update_document(
            document_id,
            status=DocumentStatus.PENDING,
            chunk_count=0,
            processed_at=None,
        )

    async def _fail(self, document_id: str, error: Exception) -> None:
        logger.error(
            f"Ingestion failed for manual {document_id}: {str(error)}",
            extra={"document_id": document_id, "status": DocumentStatus.ERROR.value},
        )
        metrics.ingestion_runs_total.labels(outcome="error").inc()
        document = await self.record_store.get_document(document_id)
        if document is not None and document.status not in TERMINAL_STATUSES:
            await self.record_store.update_document(document_id, status=DocumentStatus.ERROR)

    def _sample(self, messages: List[str], message: str) -> None:
        if len(messages) < self.max_error_samples:
            messages.append(message)

    # ------------------------------------------------------------------
    # Preparation shared by both ingestion shapes
    # ------------------------------------------------------------------

    async def _replace_chunks(self, document_id: str) -> None:
        """Delete every chunk row and vector of a manual."""
        await self.record_store.delete_chunks(document_id)
        self.vector_store.delete_document(document_id)

    def _check_input(self, document: Document, text: Optional[str], source: Optional[str]) -> None:
        """Reject a request before it touches the manual."""
        if text is not None:
            return
        if not (source or document.file_path):
            raise ValidationError("Either text or a source reference is required")
        if self.document_processor is None:
            raise ValidationError("Source extraction is not available; send the text instead")
        if source:
            self.document_processor.check_source(source)

    async def _prepare(
        self,
        document: Document,
        text: Optional[str],
        source: Optional[str],
        strategy: Optional[ChunkStrategy],
    ) -> Tuple[List[ChunkRecord], int]:
        """Extract (if needed), validate and chunk. Leaves the manual in chunking."""
        document_id = document.id
        await self.begin_run(document_id)

        if text is None:
            source = source or document.file_path
            await self.transition(document_id, DocumentStatus.EXTRACTING)
            extracted = await self.document_processor.extract_from_source(source, document_id)
            text = extracted.text

        if len(text.strip()) < self.min_extracted_chars:
            raise ExtractionFailure(
                f"Could not extract sufficient text from manual ({len(text.strip())} characters)"
            )

        await self.transition(document_id, DocumentStatus.CHUNKING)
        await self._replace_chunks(document_id)

        pieces = chunk_text(
            text,
            self.chunk_size,
            self.chunk_overlap,
            strategy or self.chunk_strategy,
            self.min_chunk_length,
        )
        records = build_chunk_records(document_id, pieces)
        if not records:
            raise ExtractionFailure("Extracted text produced no chunks")

        logger.info(
            f"Chunked manual {document_id} into {len(records)} chunks",
            extra={"document_id": document_id, "chunk_count": len(records), "extracted_length": len(text)},
        )
        return records, len(text)

    # ------------------------------------------------------------------
    # Server-driven ingestion
    # ------------------------------------------------------------------

    async def ingest_inline(
        self,
        document_id: str,
        text: Optional[str] = None,
        source: Optional[str] = None,
        strategy: Optional[ChunkStrategy] = None,
    ) -> IngestionResult:
        """
        Extract, chunk and embed a manual in one run.

        Chunks are embedded in parallel batches of inline_batch_size with a pause
        between batches. Each chunk succeeds or fails on its own; failed chunks
        are stored without an embedding so the resumable step can retry them.
        The manual ends ready when every chunk is embedded, otherwise embedding.

        Args:
            document_id: Manual to ingest
            text: Raw text; extracted from source when omitted
            source: Stored path or http(s) URL of the PDF
            strategy: Chunking strategy override

        Returns:
            IngestionResult with success/error tally

        Raises:
            ExtractionFailure: If too little text is available
            EmbeddingFailure: If every chunk in a batch fails to embed
            PersistenceFailure: If storing rows fails
        """
        start_time = time.time()
        document = await self.record_store.require_document(document_id)
        self._check_input(document, text, source)

        with traced("ingest_inline", document_id):
            try:
                records, extracted_length = await self._prepare(document, text, source, strategy)
                await self.transition(document_id, DocumentStatus.EMBEDDING, chunk_count=len(records))

                result = IngestionResult(chunks=len(records), extracted_length=extracted_length)
                batches = [
                    records[i:i + self.inline_batch_size]
                    for i in range(0, len(records), self.inline_batch_size)
                ]
                for batch_number, batch in enumerate(batches):
                    if batch_number > 0:
                        await self._sleep(self.inline_batch_delay)
                    await self._embed_inline_batch(document_id, batch, result)

            except Exception as e:
                await self._fail(document_id, e)
                raise

            if result.errors == 0:
                await self.transition(document_id, DocumentStatus.READY, processed_at=utc_now())
                metrics.ingestion_runs_total.labels(outcome="ready").inc()
            else:
                metrics.ingestion_runs_total.labels(outcome="partial").inc()

        logger.info(
            f"Inline ingestion finished for manual {document_id} in {time.time() - start_time:.2f}s",
            extra={
                "document_id": document_id,
                "chunk_count": result.chunks,
                "processed": result.processed,
                "errors": result.errors,
            },
        )
        return result

    async def _embed_inline_batch(
        self, document_id: str, batch: List[ChunkRecord], result: IngestionResult
    ) -> None:
        outcomes = await asyncio.gather(
            *(self.embedding_service.embed(record.content) for record in batch),
            return_exceptions=True,
        )

        embedded: List[Tuple[ChunkRecord, List[float]]] = []
        failures = 0
        for record, outcome in zip(batch, outcomes):
            if isinstance(outcome, EMBEDDING_ERRORS):
                failures += 1
                self._sample(result.error_messages, f"Chunk {record.chunk_index}: {outcome.message}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                record.embedded_at = utc_now()
                embedded.append((record, outcome))

        if failures == len(batch):
            raise EmbeddingFailure(
                f"Every chunk in batch starting at {batch[0].chunk_index} failed to embed",
                detail="; ".join(result.error_messages),
            )

        self.vector_store.upsert_chunk_vectors(document_id, embedded)
        await self.record_store.insert_chunks(batch)

        result.processed += len(embedded)
        result.errors += failures
        metrics.chunks_embedded_total.inc(len(embedded))

    async def ingest_deferred(
        self,
        document_id: str,
        text: Optional[str] = None,
        source: Optional[str] = None,
        strategy: Optional[ChunkStrategy] = None,
    ) -> IngestionResult:
        """
        Extract and chunk a manual, storing chunks without embeddings.

        The manual is left in embedding; callers then drive process_next_batch
        until it reports complete.
        """
        document = await self.record_store.require_document(document_id)
        self._check_input(document, text, source)
        try:
            records, extracted_length = await self._prepare(document, text, source, strategy)
            await self.record_store.insert_chunks(records)
            await self.transition(document_id, DocumentStatus.EMBEDDING, chunk_count=len(records))
        except Exception as e:
            await self._fail(document_id, e)
            raise

        metrics.ingestion_runs_total.labels(outcome="deferred").inc()
        return IngestionResult(
            chunks=len(records),
            extracted_length=extracted_length,
            phase="extracted",
        )

    # ------------------------------------------------------------------
    # Pre-chunked uploads
    # ------------------------------------------------------------------

    async def ingest_chunk_batch(
        self,
        document_id: str,
        chunks: List[Dict[str, Any]],
        clear_first: bool = False,
        finalize: bool = False,
        total_chunks: Optional[int] = None,
    ) -> int:
        """
        Store one batch of chunks produced by a remote uploader.

        Args:
            document_id: Manual the chunks belong to
            chunks: Items with "content" and optional "metadata"
            clear_first: Start a new run, deleting existing chunks
            finalize: Last batch; the manual moves to embedding
            total_chunks: Expected total, recorded when clear_first is set

        Returns:
            Number of chunks inserted
        """
        document = await self.record_store.require_document(document_id)

        for item in chunks:
            if not str(item.get("content") or "").strip():
                raise ValidationError("Every chunk needs non-empty content")

        try:
            if clear_first:
                await self.begin_run(document_id)
                await self.transition(
                    document_id, DocumentStatus.CHUNKING, chunk_count=total_chunks or 0
                )
                await self._replace_chunks(document_id)
            elif document.status == DocumentStatus.PENDING:
                await self.transition(document_id, DocumentStatus.CHUNKING)
            elif document.status != DocumentStatus.CHUNKING:
                raise InvalidStatusTransition(
                    f"Manual {document_id} is {document.status.value}; "
                    "start a new upload with clearFirst"
                )

            last_index = await self.record_store.max_chunk_index(document_id)
            next_index = 0 if last_index is None else last_index + 1

            records = []
            for item in chunks:
                metadata = dict(item.get("metadata") or {})
                content = str(item["content"])
                index = metadata.get("chunk_index")
                if not isinstance(index, int):
                    index = next_index
                next_index = max(next_index, index + 1)
                page_number = metadata.get("page_number") or first_page_marker(content)
                metadata.setdefault("chunk_index", index)
                metadata.setdefault("char_count", len(content))
                records.append(
                    ChunkRecord(
                        document_id=document_id,
                        chunk_index=index,
                        content=content,
                        metadata=metadata,
                        page_number=page_number,
                    )
                )

            inserted = await self.record_store.insert_chunks(records)

            if finalize:
                count = await self.record_store.count_chunks(document_id)
                await self.transition(document_id, DocumentStatus.EMBEDDING, chunk_count=count)

        except InvalidStatusTransition:
            raise
        except Exception as e:
            await self._fail(document_id, e)
            raise

        logger.info(
            f"Stored {inserted} uploaded chunks for manual {document_id}",
            extra={"document_id": document_id, "chunk_count": inserted},
        )
        return inserted

    # ------------------------------------------------------------------
    # Resumable embedding
    # ------------------------------------------------------------------

    async def _finalize(self, document_id: str) -> int:
        total = await self.record_store.count_chunks(document_id)
        try:
            await self.transition(
                document_id,
                DocumentStatus.READY,
                chunk_count=total,
                processed_at=utc_now(),
            )
        except InvalidStatusTransition:
            document = await self.record_store.require_document(document_id)
            if document.status != DocumentStatus.READY:
                raise
            # A concurrent step embedded the last chunk and finalized first
            return document.chunk_count
        metrics.ingestion_runs_total.labels(outcome="ready").inc()
        return total

    async def process_next_batch(self, document_id: str) -> EmbeddingStepResult:
        """
        Embed the next slice of unembedded chunks of a manual.

        Claims up to step_size chunks, embeds them one at a time with item_delay
        between calls and reports how many remain. When none remain the manual
        becomes ready. Calling again after completion changes nothing.

        Raises:
            InvalidStatusTransition: If the manual is not being embedded
            EmbeddingFailure: If every claimed chunk failed (the manual is marked error)
        """
        document = await self.record_store.require_document(document_id)

        if document.status == DocumentStatus.READY:
            remaining = await self.record_store.count_chunks(document_id, unembedded_only=True)
            return EmbeddingStepResult(
                complete=remaining == 0,
                remaining=remaining,
                total_chunks=document.chunk_count,
            )
        if document.status != DocumentStatus.EMBEDDING:
            raise InvalidStatusTransition(
                f"Manual {document_id} is {document.status.value}, not embedding"
            )

        claim_token = uuid.uuid4().hex
        claimed = await self.record_store.claim_unembedded(
            document_id, self.step_size, claim_token, self.claim_ttl_seconds
        )

        result = EmbeddingStepResult(complete=False)
        with traced("process_next_batch", document_id, claimed=len(claimed)):
            try:
                for position, chunk in enumerate(claimed):
                    if position > 0:
                        await self._sleep(self.item_delay)
                    await self._embed_claimed(document_id, chunk, claim_token, result)
            except Exception as e:
                await self._fail(document_id, e)
                raise

        if claimed and result.errors == len(claimed):
            error = EmbeddingFailure(
                f"All {len(claimed)} chunks in the batch failed to embed",
                detail="; ".join(result.error_messages),
            )
            await self._fail(document_id, error)
            raise error

        result.remaining = await self.record_store.count_chunks(document_id, unembedded_only=True)
        if result.remaining == 0:
            result.total_chunks = await self._finalize(document_id)
            result.complete = True

        logger.info(
            f"Embedding step for manual {document_id}: processed {result.processed}, "
            f"errors {result.errors}, remaining {result.remaining}",
            extra={
                "document_id": document_id,
                "processed": result.processed,
                "errors": result.errors,
                "remaining": result.remaining,
            },
        )
        return result

    async def _embed_claimed(
        self, document_id: str, chunk: ChunkRecord, claim_token: str, result: EmbeddingStepResult
    ) -> None:
        try:
            vector = await self.embedding_service.embed(chunk.content)
        except EMBEDDING_ERRORS as e:
            result.errors += 1
            self._sample(result.error_messages, f"Chunk {chunk.chunk_index}: {e.message}")
            await self.record_store.release_claim(chunk.id, claim_token)
            return

        self.vector_store.upsert_chunk_vectors(document_id, [(chunk, vector)])
        if await self.record_store.mark_embedded(chunk.id, claim_token):
            result.processed += 1
            metrics.chunks_embedded_total.inc()
        else:
            logger.warning(
                f"Claim on chunk {chunk.chunk_index} of manual {document_id} was taken over",
                extra={"document_id": document_id},
            )
