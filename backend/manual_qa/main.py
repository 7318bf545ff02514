"""FastAPI application entry point."""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic_settings import BaseSettings
from starlette.responses import Response

from manual_qa.api.routes import chat, documents, ingest
from manual_qa.exceptions import ConfigurationError, ManualQAError
from manual_qa.services.chunker import ChunkStrategy
from manual_qa.services.document_processor import DocumentProcessor
from manual_qa.services.embedding_service import EmbeddingService, RetryPolicy
from manual_qa.services.llm_service import LLMService
from manual_qa.services.record_store import RecordStore
from manual_qa.services.storage import FileStorage
from manual_qa.services.vector_store import VectorStore
from manual_qa.utils.logger import logger
from manual_qa.utils.tracer import initialize_tracing, shutdown_tracing


class Settings(BaseSettings):
    """Application settings."""

    # Embedding oracle
    openai_api_key: str = ""
    openai_base_url: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_max_chars: int = 8000
    embedding_max_attempts: int = 5
    embedding_base_delay: float = 1.0  # seconds before the first retry
    embedding_backoff_multiplier: float = 2.0

    # Generation backend (falls back to the OpenAI key)
    chat_api_key: str = ""
    chat_api_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4o-mini"
    chat_temperature: float = 0.7
    smooth_streaming: bool = True  # one SSE event per character

    # Storage
    database_path: str = "./data/manual_qa.db"
    qdrant_db_path: str = "./qdrant_db"
    storage_dir: str = "./storage"
    storage_url_prefix: str = "/storage"

    # Chunking
    chunk_strategy: ChunkStrategy = ChunkStrategy.STRUCTURAL
    chunk_size: int = 1500
    chunk_overlap: int = 250
    min_chunk_chars: int = 50

    # Embedding pacing
    inline_batch_size: int = 5
    inline_batch_delay: float = 0.5
    embedding_step_size: int = 10
    embedding_item_delay: float = 0.1
    claim_ttl_seconds: float = 300

    # Retrieval
    match_count: int = 8
    match_threshold: float = 0.25
    max_cited_pages: int = 10

    # Upload limits
    max_file_size_mb: int = 50
    max_pages: int = 1000
    render_page_images: bool = True
    page_image_scale: float = 1.2
    # Hosts the ingest "source" URL may point at; none means URL sources are refused
    allowed_source_hosts: str = ""

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # OpenTelemetry tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = ""  # empty = console exporter

    class Config:
        env_file = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global services (initialized in lifespan)
settings: Settings = None
record_store: RecordStore = None
vector_store: VectorStore = None
storage: FileStorage = None
document_processor: DocumentProcessor = None
embedding_service: EmbeddingService = None
llm_service: LLMService = None
tracer_provider = None


def build_embedding_service(app_settings: Settings) -> EmbeddingService:
    return EmbeddingService(
        api_key=app_settings.openai_api_key,
        base_url=app_settings.openai_base_url or None,
        model=app_settings.embedding_model,
        max_chars=app_settings.embedding_max_chars,
        retry_policy=RetryPolicy(
            max_attempts=app_settings.embedding_max_attempts,
            base_delay=app_settings.embedding_base_delay,
            backoff_multiplier=app_settings.embedding_backoff_multiplier,
        ),
    )


def build_llm_service(app_settings: Settings) -> LLMService:
    return LLMService(
        api_key=app_settings.chat_api_key or app_settings.openai_api_key,
        api_url=app_settings.chat_api_url,
        model=app_settings.chat_model,
        temperature=app_settings.chat_temperature,
        smooth_streaming=app_settings.smooth_streaming,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global settings, record_store, vector_store, storage, document_processor
    global embedding_service, llm_service, tracer_provider

    logger.info("Starting Manual QA Assistant")
    settings = Settings()

    tracer_provider = initialize_tracing(
        service_name="manual-qa",
        service_version="1.0.0",
        otlp_endpoint=settings.otlp_endpoint or None,
        tracing_enabled=settings.tracing_enabled,
    )

    record_store = RecordStore(db_path=settings.database_path)
    await record_store.initialize()
    vector_store = VectorStore(db_path=settings.qdrant_db_path)
    storage = FileStorage(root=settings.storage_dir, url_prefix=settings.storage_url_prefix)
    document_processor = DocumentProcessor(
        storage=storage,
        render_page_images=settings.render_page_images,
        page_image_scale=settings.page_image_scale,
        max_pages=settings.max_pages,
        allowed_source_hosts=[host.strip() for host in settings.allowed_source_hosts.split(",") if host.strip()],
    )

    # Missing credentials surface per request as ConfigurationError
    try:
        embedding_service = build_embedding_service(settings)
    except ConfigurationError as e:
        logger.warning(f"Embeddings disabled: {e.message}")
    try:
        llm_service = build_llm_service(settings)
    except ConfigurationError as e:
        logger.warning(f"Chat disabled: {e.message}")

    if not any(getattr(route, "name", None) == "storage" for route in app.routes):
        app.mount(settings.storage_url_prefix, StaticFiles(directory=settings.storage_dir), name="storage")

    logger.info("All services initialized successfully")

    yield

    logger.info("Shutting down Manual QA Assistant")
    if embedding_service:
        await embedding_service.close()
    if llm_service:
        await llm_service.close()
    if vector_store:
        vector_store.close()
    if tracer_provider:
        shutdown_tracing(tracer_provider)


app = FastAPI(
    title="Manual QA Assistant",
    description="Retrieval-augmented chat over uploaded manuals",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ManualQAError)
async def manual_qa_exception_handler(request: Request, exc: ManualQAError):
    """Render domain errors as {"error": message} with their status code."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Missing or malformed request fields are a 400 with a readable message."""
    errors = exc.errors()
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "; ".join(messages) or "Invalid request"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "Manual QA Assistant",
        "embeddings": embedding_service is not None,
        "chat": llm_service is not None,
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(documents.router, prefix="/api", tags=["documents"])
app.include_router(ingest.router, prefix="/api", tags=["ingest"])
app.include_router(chat.router, prefix="/api", tags=["chat"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
