"""Ingestion endpoints: trigger, remote chunk upload and the resumable embedding step."""
from fastapi import APIRouter, Depends

from manual_qa.api.dependencies import get_ingestion_coordinator
from manual_qa.api.schemas import (
    ChunkBatchRequest,
    ChunkBatchResponse,
    EmbeddingStepResponse,
    IngestRequest,
    IngestResponse,
)
from manual_qa.services.ingestion_service import IngestionCoordinator


router = APIRouter()


@router.post("/documents/{document_id}/ingest", response_model=IngestResponse, response_model_exclude_none=True)
async def ingest_document(
    document_id: str,
    request: IngestRequest,
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    """
    (Re)ingest a manual from raw text or its PDF source.

    inline mode embeds every chunk before returning; deferred mode stores the
    chunks and leaves embedding to the process-embeddings step.
    """
    if request.mode == "deferred":
        result = await coordinator.ingest_deferred(
            document_id, text=request.text, source=request.source, strategy=request.strategy
        )
        return IngestResponse(
            success=True,
            phase=result.phase,
            chunks=result.chunks,
            extracted_length=result.extracted_length,
        )

    result = await coordinator.ingest_inline(
        document_id, text=request.text, source=request.source, strategy=request.strategy
    )
    return IngestResponse(
        success=result.success,
        phase=result.phase,
        chunks=result.chunks,
        processed=result.processed,
        errors=result.errors,
        error_messages=result.error_messages or None,
        extracted_length=result.extracted_length,
    )


@router.post("/documents/{document_id}/chunks", response_model=ChunkBatchResponse)
async def upload_chunks(
    document_id: str,
    request: ChunkBatchRequest,
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    """Store one batch of chunks produced client-side."""
    inserted = await coordinator.ingest_chunk_batch(
        document_id,
        [item.model_dump() for item in request.chunks],
        clear_first=request.clear_first,
        finalize=request.finalize,
        total_chunks=request.total_chunks,
    )
    return ChunkBatchResponse(inserted=inserted, finalize=request.finalize)


@router.post(
    "/documents/{document_id}/process-embeddings",
    response_model=EmbeddingStepResponse,
    response_model_exclude_none=True,
)
async def process_embeddings(
    document_id: str,
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    """Embed the next batch of pending chunks. Poll until complete is true."""
    result = await coordinator.process_next_batch(document_id)
    return EmbeddingStepResponse(
        complete=result.complete,
        processed=result.processed,
        errors=result.errors,
        remaining=result.remaining,
        total_chunks=result.total_chunks,
        error_messages=result.error_messages or None,
    )
