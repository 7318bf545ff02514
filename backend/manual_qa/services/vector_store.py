"""Vector store service using Qdrant."""
import os
import hashlib
from typing import List, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import Distance, VectorParams, PointStruct

from manual_qa.models.document import ChunkRecord
from manual_qa.utils.logger import logger


class VectorStore:
    """Nearest-neighbour search over chunk embeddings, one collection per manual."""

    def __init__(self, db_path: str = "./qdrant_db"):
        """
        Initialize Qdrant client.

        Args:
            db_path: Path to Qdrant persistent storage directory, or ":memory:"
        """
        self.db_path = db_path
        if db_path == ":memory:":
            self.client = QdrantClient(location=":memory:")
        else:
            os.makedirs(db_path, exist_ok=True)
            # Local/embedded mode for persistent storage
            self.client = QdrantClient(path=db_path)
        logger.info(f"Qdrant initialized at {db_path}")

    def _get_collection_name(self, document_id: str) -> str:
        return f"doc_{document_id}"

    def _generate_point_id(self, document_id: str, chunk_index: int) -> int:
        """
        Derive a stable integer point id from manual id and chunk index.

        Re-embedding a chunk overwrites its point instead of adding another.
        """
        combined = f"{document_id}_{chunk_index}".encode("utf-8")
        hash_bytes = hashlib.md5(combined).digest()[:8]
        return int.from_bytes(hash_bytes, byteorder="big") & 0x7FFFFFFFFFFFFFFF

    def _collection_exists(self, collection_name: str) -> bool:
        collections = self.client.get_collections().collections
        return collection_name in [col.name for col in collections]

    def _ensure_collection(self, collection_name: str, vector_size: int) -> None:
        if not self._collection_exists(collection_name):
            self.client.create_collection(
                collection_name=collection_name,
                vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
            )
            logger.debug(f"Created Qdrant collection: {collection_name}")

    def upsert_chunk_vectors(
        self, document_id: str, items: List[Tuple[ChunkRecord, List[float]]]
    ) -> int:
        """
        Store embeddings for chunks of one manual.

        Args:
            document_id: Owning manual
            items: (chunk, embedding) pairs

        Returns:
            Number of points written
        """
        if not items:
            return 0

        collection_name = self._get_collection_name(document_id)
        self._ensure_collection(collection_name, len(items[0][1]))

        points = []
        for chunk, embedding in items:
            if chunk.document_id != document_id:
                raise ValueError(
                    f"Chunk {chunk.chunk_index} belongs to {chunk.document_id}, not {document_id}"
                )
            points.append(
                PointStruct(
                    id=self._generate_point_id(document_id, chunk.chunk_index),
                    vector=embedding,
                    payload={
                        "content": chunk.content,
                        "chunk_index": chunk.chunk_index,
                        "page_number": chunk.page_number,
                        "document_id": document_id,
                    },
                )
            )

        self.client.upsert(collection_name=collection_name, points=points)
        logger.debug(f"Stored {len(points)} vectors for manual {document_id}")
        return len(points)

    def search(
        self,
        document_id: str,
        query_embedding: List[float],
        limit: int = 8,
        threshold: float = 0.25,
    ) -> List[dict]:
        """
        Return chunks of one manual whose similarity exceeds threshold.

        Similarity is cosine similarity (1 - cosine distance). Results are
        sorted by descending similarity.
        """
        collection_name = self._get_collection_name(document_id)
        if not self._collection_exists(collection_name):
            logger.warning(
                f"No vectors stored for manual {document_id}",
                extra={"document_id": document_id},
            )
            return []

        query_result = self.client.query_points(
            collection_name=collection_name,
            query=query_embedding,
            limit=limit,
            with_payload=True,
        )

        results = []
        for point in query_result.points:
            similarity = float(point.score)
            payload = point.payload or {}
            if similarity <= threshold:
                continue
            if payload.get("document_id") != document_id:
                continue
            results.append(
                {
                    "content": payload.get("content", ""),
                    "chunk_index": payload.get("chunk_index", 0),
                    "page_number": payload.get("page_number"),
                    "similarity": similarity,
                }
            )

        results.sort(key=lambda r: r["similarity"], reverse=True)
        return results

    def count(self, document_id: str) -> int:
        collection_name = self._get_collection_name(document_id)
        if not self._collection_exists(collection_name):
            return 0
        return self.client.count(collection_name=collection_name, exact=True).count

    def delete_document(self, document_id: str) -> None:
        """Drop every vector of a manual."""
        collection_name = self._get_collection_name(document_id)
        if self._collection_exists(collection_name):
            self.client.delete_collection(collection_name=collection_name)
            logger.info(f"Deleted vectors for manual {document_id}")

    def close(self) -> None:
        self.client.close()
