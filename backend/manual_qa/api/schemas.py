"""Pydantic schemas for API requests and responses."""
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from manual_qa.services.chunker import ChunkStrategy
from manual_qa.utils.text_cleaner import normalize_content


class CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)


class DocumentResponse(BaseModel):
    """A manual and its processing status."""

    id: str
    name: str
    file_size: Optional[int] = None
    status: str
    chunk_count: int = 0
    processed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class IngestRequest(CamelModel):
    """Request to (re)ingest a manual."""

    text: Optional[str] = Field(None, description="Raw text; extracted from the source when omitted")
    source: Optional[str] = Field(None, description="Path under the storage directory or http(s) URL on an allowed host")
    mode: Literal["inline", "deferred"] = Field("inline", description="Embed now or leave to the embedding step")
    strategy: Optional[ChunkStrategy] = Field(None, description="Chunking strategy override")


class IngestResponse(CamelModel):
    success: bool
    phase: str
    chunks: int
    processed: Optional[int] = None
    errors: Optional[int] = None
    error_messages: Optional[List[str]] = Field(None, serialization_alias="errorMessages")
    extracted_length: Optional[int] = Field(None, serialization_alias="extractedLength")


class ChunkItem(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunkBatchRequest(CamelModel):
    """One batch of pre-chunked text from a remote uploader."""

    chunks: List[ChunkItem] = Field(default_factory=list)
    clear_first: bool = Field(False, alias="clearFirst")
    finalize: bool = False
    total_chunks: Optional[int] = Field(None, alias="totalChunks")


class ChunkBatchResponse(BaseModel):
    success: bool = True
    inserted: int
    finalize: bool


class EmbeddingStepResponse(CamelModel):
    success: bool = True
    complete: bool
    processed: int
    errors: int
    remaining: int
    total_chunks: Optional[int] = Field(None, serialization_alias="totalChunks")
    error_messages: Optional[List[str]] = Field(None, serialization_alias="errorMessages")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> str:
        """Collapse string-or-parts content into one string and drop control characters."""
        text = normalize_content(v)
        return re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", text)


class ChatRequest(CamelModel):
    """Chat request for one manual."""

    messages: List[ChatMessage] = Field(default_factory=list)
    document_id: Optional[str] = Field(None, alias="documentId")

    def latest_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user" and message.content.strip():
                return message.content.strip()
        return ""

    def history(self) -> List[Dict[str, str]]:
        """Conversation without client-supplied system messages."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m.role != "system"
        ]
