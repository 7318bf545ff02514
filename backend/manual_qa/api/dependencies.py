"""Dependency getters for services created in the application lifespan."""
from fastapi import Depends, HTTPException

from manual_qa.services.document_processor import DocumentProcessor
from manual_qa.services.embedding_service import EmbeddingService
from manual_qa.services.ingestion_service import IngestionCoordinator
from manual_qa.services.llm_service import LLMService
from manual_qa.services.record_store import RecordStore
from manual_qa.services.retrieval_service import RetrievalService
from manual_qa.services.storage import FileStorage
from manual_qa.services.vector_store import VectorStore
from manual_qa.exceptions import ConfigurationError


def get_app_settings():
    """Get application settings from main app."""
    from manual_qa.main import settings
    if settings is None:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return settings


def get_record_store() -> RecordStore:
    from manual_qa.main import record_store
    if record_store is None:
        raise HTTPException(status_code=503, detail="Record store not initialized")
    return record_store


def get_vector_store() -> VectorStore:
    from manual_qa.main import vector_store
    if vector_store is None:
        raise HTTPException(status_code=503, detail="Vector store not initialized")
    return vector_store


def get_storage() -> FileStorage:
    from manual_qa.main import storage
    if storage is None:
        raise HTTPException(status_code=503, detail="File storage not initialized")
    return storage


def get_document_processor() -> DocumentProcessor:
    from manual_qa.main import document_processor
    if document_processor is None:
        raise HTTPException(status_code=503, detail="Document processor not initialized")
    return document_processor


def get_embedding_service() -> EmbeddingService:
    """Embedding service, or ConfigurationError when its credentials are missing."""
    from manual_qa.main import embedding_service
    if embedding_service is None:
        raise ConfigurationError("OPENAI_API_KEY is not configured for embeddings")
    return embedding_service


def get_llm_service() -> LLMService:
    from manual_qa.main import llm_service
    if llm_service is None:
        raise ConfigurationError("Chat API key is not configured")
    return llm_service


def get_ingestion_coordinator(
    record_store: RecordStore = Depends(get_record_store),
    vector_store: VectorStore = Depends(get_vector_store),
    embedding_service: EmbeddingService = Depends(get_embedding_service),
    document_processor: DocumentProcessor = Depends(get_document_processor),
    app_settings=Depends(get_app_settings),
) -> IngestionCoordinator:
    """Build an ingestion coordinator from the shared services."""
    return IngestionCoordinator(
        record_store=record_store,
        vector_store=vector_store,
        embedding_service=embedding_service,
        document_processor=document_processor,
        chunk_size=app_settings.chunk_size,
        chunk_overlap=app_settings.chunk_overlap,
        chunk_strategy=app_settings.chunk_strategy,
        min_chunk_length=app_settings.min_chunk_chars,
        inline_batch_size=app_settings.inline_batch_size,
        inline_batch_delay=app_settings.inline_batch_delay,
        step_size=app_settings.embedding_step_size,
        item_delay=app_settings.embedding_item_delay,
        claim_ttl_seconds=app_settings.claim_ttl_seconds,
    )


def get_retrieval_service(
    embedding_service: EmbeddingService = Depends(get_embedding_service),
    vector_store: VectorStore = Depends(get_vector_store),
    storage: FileStorage = Depends(get_storage),
    app_settings=Depends(get_app_settings),
) -> RetrievalService:
    return RetrievalService(
        embedding_service=embedding_service,
        vector_store=vector_store,
        storage=storage,
        match_count=app_settings.match_count,
        match_threshold=app_settings.match_threshold,
        max_cited_pages=app_settings.max_cited_pages,
    )
