"""Manual and chunk data models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class DocumentStatus(str, Enum):
    """Processing status of a manual."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    READY = "ready"
    ERROR = "error"


# Statuses a running ingestion may move to from each state.
# ERROR is reachable from every non-terminal state and is handled separately.
ALLOWED_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.EXTRACTING, DocumentStatus.CHUNKING},
    DocumentStatus.EXTRACTING: {DocumentStatus.CHUNKING},
    DocumentStatus.CHUNKING: {DocumentStatus.CHUNKING, DocumentStatus.EMBEDDING},
    DocumentStatus.EMBEDDING: {DocumentStatus.READY},
    DocumentStatus.READY: set(),
    DocumentStatus.ERROR: set(),
}

TERMINAL_STATUSES = {DocumentStatus.READY, DocumentStatus.ERROR}


@dataclass
class Document:
    """Represents an uploaded manual."""

    id: str
    name: str
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    status: DocumentStatus = DocumentStatus.PENDING
    chunk_count: int = 0
    processed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "status": self.status.value,
            "chunk_count": self.chunk_count,
            "processed_at": self.processed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ChunkRecord:
    """A persisted span of a manual's extracted text."""

    document_id: str
    chunk_index: int
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    page_number: Optional[int] = None
    id: Optional[int] = None
    embedded_at: Optional[str] = None

    @property
    def is_embedded(self) -> bool:
        return self.embedded_at is not None


@dataclass
class PageImage:
    """Reference to a rendered page of a manual."""

    document_id: str
    page_number: int
    url: str

    def to_event(self) -> Dict[str, Any]:
        return {"url": self.url, "pageNumber": self.page_number}


@dataclass
class RetrievedChunk:
    """A chunk returned by nearest-neighbour search."""

    citation: int
    content: str
    similarity: float
    chunk_index: int
    page_number: Optional[int] = None


@dataclass
class RetrievalResult:
    """Grounding context and cited pages for one query."""

    context: str
    cited_pages: List[int] = field(default_factory=list)
    chunks: List[RetrievedChunk] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.chunks


@dataclass
class ExtractedDocument:
    """Text and page images extracted from a source."""

    text: str
    page_count: int
    page_images: List[PageImage] = field(default_factory=list)


@dataclass
class IngestionResult:
    """Tally of a server-driven ingestion run."""

    chunks: int
    processed: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    extracted_length: Optional[int] = None
    phase: str = "embedded"

    @property
    def success(self) -> bool:
        return self.chunks > 0 and self.errors < self.chunks


@dataclass
class EmbeddingStepResult:
    """Outcome of one resumable embedding step."""

    complete: bool
    processed: int = 0
    errors: int = 0
    remaining: int = 0
    total_chunks: Optional[int] = None
    error_messages: List[str] = field(default_factory=list)
