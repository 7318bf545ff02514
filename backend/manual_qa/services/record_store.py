"""SQLite-backed store for manuals and their chunk rows.

Uses ``aiosqlite`` for async I/O. Embedding vectors live in the vector store;
a chunk row records only whether (and when) its embedding was stored.
"""
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from manual_qa.exceptions import DocumentNotFoundError, PersistenceFailure
from manual_qa.models.document import ChunkRecord, Document, DocumentStatus
from manual_qa.utils.logger import logger

INSERT_BATCH_SIZE = 50

_CREATE_MANUALS_SQL = """\
CREATE TABLE IF NOT EXISTS manuals (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    file_path     TEXT,
    file_size     INTEGER,
    status        TEXT NOT NULL DEFAULT 'pending',
    chunk_count   INTEGER NOT NULL DEFAULT 0,
    processed_at  TEXT,
    created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_CHUNKS_SQL = """\
CREATE TABLE IF NOT EXISTS document_chunks (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    manual_id    TEXT    NOT NULL REFERENCES manuals(id) ON DELETE CASCADE,
    chunk_index  INTEGER NOT NULL,
    content      TEXT    NOT NULL,
    metadata     TEXT    NOT NULL DEFAULT '{}',
    page_number  INTEGER,
    embedded_at  TEXT,
    claim_token  TEXT,
    claimed_at   TEXT,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_chunks_manual ON document_chunks(manual_id, chunk_index);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_pending ON document_chunks(manual_id, embedded_at);",
]

_MANUAL_COLUMNS = (
    "id, name, file_path, file_size, status, chunk_count, processed_at, created_at, updated_at"
)

_CHUNK_COLUMNS = "id, manual_id, chunk_index, content, metadata, page_number, embedded_at"

_INSERT_CHUNK_SQL = """\
INSERT INTO document_chunks (manual_id, chunk_index, content, metadata, page_number, embedded_at)
VALUES (?, ?, ?, ?, ?, ?);
"""

# Stamp a claim token on up to N unembedded rows that are unclaimed or whose
# claim has gone stale. One statement, so concurrent callers get disjoint rows.
_CLAIM_SQL = """\
UPDATE document_chunks
SET claim_token = ?, claimed_at = ?
WHERE id IN (
    SELECT id FROM document_chunks
    WHERE manual_id = ?
      AND embedded_at IS NULL
      AND (claim_token IS NULL OR claimed_at < ?)
    ORDER BY chunk_index
    LIMIT ?
);
"""

_MARK_EMBEDDED_SQL = """\
UPDATE document_chunks
SET embedded_at = ?, claim_token = NULL, claimed_at = NULL
WHERE id = ? AND claim_token = ? AND embedded_at IS NULL;
"""

_UPDATABLE_FIELDS = {"name", "file_path", "file_size", "status", "chunk_count", "processed_at"}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_document(row: aiosqlite.Row) -> Document:
    return Document(
        id=row["id"],
        name=row["name"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        status=DocumentStatus(row["status"]),
        chunk_count=row["chunk_count"],
        processed_at=row["processed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: aiosqlite.Row) -> ChunkRecord:
    return ChunkRecord(
        id=row["id"],
        document_id=row["manual_id"],
        chunk_index=row["chunk_index"],
        content=row["content"],
        metadata=json.loads(row["metadata"] or "{}"),
        page_number=row["page_number"],
        embedded_at=row["embedded_at"],
    )


class RecordStore:
    """Persistence for manuals and chunk rows."""

    def __init__(self, db_path: str = "./data/manual_qa.db"):
        self._db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        try:
            async with aiosqlite.connect(str(self._db_path), timeout=30) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON;")
                yield db
        except aiosqlite.Error as e:
            logger.error(f"Record store operation failed: {str(e)}", exc_info=True)
            raise PersistenceFailure(f"Database operation failed: {str(e)}")

    async def initialize(self) -> None:
        """Create tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL;")
            await db.execute(_CREATE_MANUALS_SQL)
            await db.execute(_CREATE_CHUNKS_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info(f"Record store initialized at {self._db_path}")

    # ------------------------------------------------------------------
    # Manuals
    # ------------------------------------------------------------------

    async def create_document(
        self,
        name: str,
        file_path: Optional[str] = None,
        file_size: Optional[int] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        document_id = document_id or str(uuid.uuid4())
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO manuals (id, name, file_path, file_size) VALUES (?, ?, ?, ?)",
                (document_id, name, file_path, file_size),
            )
            await db.commit()
        return await self.require_document(document_id)

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_MANUAL_COLUMNS} FROM manuals WHERE id = ?",
                (document_id,),
            )
            row = await cursor.fetchone()
        return _row_to_document(row) if row else None

    async def require_document(self, document_id: str) -> Document:
        """Return a manual or raise DocumentNotFoundError."""
        document = await self.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Manual {document_id} not found")
        return document

    async def list_documents(self) -> List[Document]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_MANUAL_COLUMNS} FROM manuals ORDER BY created_at DESC"
            )
            rows = await cursor.fetchall()
        return [_row_to_document(r) for r in rows]

    async def update_document(self, document_id: str, **fields: Any) -> Document:
        """
        Update columns of a manual.

        Args:
            document_id: Manual to update
            **fields: Column values; status may be a DocumentStatus

        Returns:
            The updated manual
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update manual fields: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for key, value in fields.items():
            values[key] = value.value if isinstance(value, DocumentStatus) else value
        values["updated_at"] = utc_now()

        assignments = ", ".join(f"{key} = ?" for key in values)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE manuals SET {assignments} WHERE id = ?",
                (*values.values(), document_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise DocumentNotFoundError(f"Manual {document_id} not found")
        return await self.require_document(document_id)

    async def delete_document(self, document_id: str) -> bool:
        """Delete a manual. Its chunk rows are removed by the foreign key cascade."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM manuals WHERE id = ?", (document_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def delete_chunks(self, document_id: str) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM document_chunks WHERE manual_id = ?",
                (document_id,),
            )
            await db.commit()
            deleted = cursor.rowcount
        logger.info(
            f"Deleted {deleted} chunks for manual {document_id}",
            extra={"document_id": document_id},
        )
        return deleted

    async def insert_chunks(self, records: List[ChunkRecord]) -> int:
        """Insert chunk rows in batches. Returns the number of rows inserted."""
        if not records:
            return 0

        async with self._connect() as db:
            for start in range(0, len(records), INSERT_BATCH_SIZE):
                batch = records[start:start + INSERT_BATCH_SIZE]
                await db.executemany(
                    _INSERT_CHUNK_SQL,
                    [
                        (
                            r.document_id,
                            r.chunk_index,
                            r.content,
                            json.dumps(r.metadata),
                            r.page_number,
                            r.embedded_at,
                        )
                        for r in batch
                    ],
                )
            await db.commit()
        return len(records)

    async def count_chunks(self, document_id: str, unembedded_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM document_chunks WHERE manual_id = ?"
        if unembedded_only:
            sql += " AND embedded_at IS NULL"
        async with self._connect() as db:
            cursor = await db.execute(sql, (document_id,))
            row = await cursor.fetchone()
        return row[0]

    async def list_chunks(self, document_id: str) -> List[ChunkRecord]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM document_chunks "
                "WHERE manual_id = ? ORDER BY chunk_index",
                (document_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_chunk(r) for r in rows]

    async def max_chunk_index(self, document_id: str) -> Optional[int]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT MAX(chunk_index) FROM document_chunks WHERE manual_id = ?",
                (document_id,),
            )
            row = await cursor.fetchone()
        return row[0]

    async def claim_unembedded(
        self,
        document_id: str,
        limit: int,
        claim_token: str,
        claim_ttl_seconds: float = 300,
    ) -> List[ChunkRecord]:
        """
        Claim up to ``limit`` unembedded chunks for one embedding step.

        Returns only the rows stamped with ``claim_token``, in chunk order.
        """
        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(seconds=claim_ttl_seconds)).isoformat()

        async with self._connect() as db:
            await db.execute(
                _CLAIM_SQL,
                (claim_token, now.isoformat(), document_id, stale_before, limit),
            )
            await db.commit()
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM document_chunks "
                "WHERE manual_id = ? AND claim_token = ? AND embedded_at IS NULL "
                "ORDER BY chunk_index",
                (document_id, claim_token),
            )
            rows = await cursor.fetchall()
        return [_row_to_chunk(r) for r in rows]

    async def mark_embedded(self, chunk_id: int, claim_token: str) -> bool:
        """Record a stored embedding. False if the claim was lost to another step."""
        async with self._connect() as db:
            cursor = await db.execute(_MARK_EMBEDDED_SQL, (utc_now(), chunk_id, claim_token))
            await db.commit()
            return cursor.rowcount > 0

    async def release_claim(self, chunk_id: int, claim_token: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE document_chunks SET claim_token = NULL, claimed_at = NULL "
                "WHERE id = ? AND claim_token = ?",
                (chunk_id, claim_token),
            )
            await db.commit()
