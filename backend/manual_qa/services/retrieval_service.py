"""Retrieval service for grounding chat answers in a manual."""
import time
from typing import List

from manual_qa.models.document import PageImage, RetrievalResult, RetrievedChunk
from manual_qa.services.chunker import first_page_marker, page_markers
from manual_qa.services.embedding_service import EmbeddingService
from manual_qa.services.storage import FileStorage
from manual_qa.services.vector_store import VectorStore
from manual_qa.utils import metrics
from manual_qa.utils.logger import logger
from manual_qa.utils.tracer import traced

SOURCE_SEPARATOR = "\n\n---\n\n"


def format_context(chunks: List[RetrievedChunk]) -> str:
    """Label each chunk with its citation number (and page) and join them."""
    parts = []
    for chunk in chunks:
        label = f"[Source {chunk.citation}]"
        if chunk.page_number is not None:
            label += f" (Page {chunk.page_number})"
        parts.append(f"{label}\n{chunk.content}")
    return SOURCE_SEPARATOR.join(parts)


class RetrievalService:
    """Embeds a query, searches one manual and formats the grounding context."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        storage: FileStorage,
        match_count: int = 8,
        match_threshold: float = 0.25,
        max_cited_pages: int = 10,
    ):
        """
        Initialize retrieval service.

        Args:
            embedding_service: Embeds the query text
            vector_store: Nearest-neighbour search over chunk embeddings
            storage: Builds page image URLs
            match_count: Maximum chunks returned per query
            match_threshold: Chunks must score strictly above this similarity
            max_cited_pages: Cap on cited page numbers
        """
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.storage = storage
        self.match_count = match_count
        self.match_threshold = match_threshold
        self.max_cited_pages = max_cited_pages

    async def retrieve(self, query: str, document_id: str) -> RetrievalResult:
        """
        Retrieve grounding context for a query from one manual.

        Args:
            query: User question
            document_id: Manual to search

        Returns:
            RetrievalResult; empty context and no pages when nothing clears the threshold
        """
        start_time = time.time()

        with traced("retrieve", document_id) as span:
            query_embedding = await self.embedding_service.embed(query)
            matches = self.vector_store.search(
                document_id,
                query_embedding,
                limit=self.match_count,
                threshold=self.match_threshold,
            )
            span.set_attribute("manual_qa.matches", len(matches))

        matches.sort(key=lambda m: m["similarity"], reverse=True)

        chunks: List[RetrievedChunk] = []
        pages = set()
        for citation, match in enumerate(matches, 1):
            content = match["content"]
            pages.update(page_markers(content))
            chunks.append(
                RetrievedChunk(
                    citation=citation,
                    content=content,
                    similarity=match["similarity"],
                    chunk_index=match["chunk_index"],
                    page_number=first_page_marker(content),
                )
            )

        cited_pages = sorted(pages)[: self.max_cited_pages]
        metrics.retrieved_chunks.observe(len(chunks))

        logger.info(
            f"Retrieved {len(chunks)} chunks for manual {document_id}",
            extra={
                "document_id": document_id,
                "similarity_scores": [round(c.similarity, 4) for c in chunks],
                "cited_pages": cited_pages,
                "response_time_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return RetrievalResult(
            context=format_context(chunks),
            cited_pages=cited_pages,
            chunks=chunks,
        )

    def page_images(self, document_id: str, result: RetrievalResult) -> List[PageImage]:
        return self.storage.page_images(document_id, result.cited_pages)
