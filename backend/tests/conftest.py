"""Pytest configuration and fixtures."""
import asyncio
import hashlib
from typing import List
from unittest.mock import AsyncMock, Mock

import fitz
import pytest
import pytest_asyncio

from manual_qa.services.embedding_service import EmbeddingService
from manual_qa.services.ingestion_service import IngestionCoordinator
from manual_qa.services.record_store import RecordStore
from manual_qa.services.storage import FileStorage
from manual_qa.services.vector_store import VectorStore


def fake_vector(text: str) -> List[float]:
    """Deterministic, never-zero 8-dimensional vector for a text."""
    digest = hashlib.md5(text.encode("utf-8")).digest()
    return [1.0 + b / 255.0 for b in digest[:8]]


def section_text(count: int) -> str:
    """Text that the structural chunker splits into exactly ``count`` chunks at chunk_size=300."""
    sections = []
    for i in range(1, count + 1):
        body = f"This paragraph describes procedure {i} in detail. " * 6
        sections.append(f"Section {i}\n{body.strip()}")
    return "\n".join(sections)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and only yields control."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for tests."""
    return tmp_path


@pytest_asyncio.fixture
async def record_store(tmp_path):
    store = RecordStore(db_path=str(tmp_path / "manual_qa.db"))
    await store.initialize()
    return store


@pytest.fixture
def vector_store():
    store = VectorStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def storage(tmp_path):
    return FileStorage(root=str(tmp_path / "storage"), url_prefix="/storage")


@pytest.fixture
def mock_embedding_service():
    """Mock embedding service returning a deterministic vector per text."""
    service = Mock(spec=EmbeddingService)

    async def embed(text: str) -> List[float]:
        return fake_vector(text)

    service.embed = AsyncMock(side_effect=embed)
    service.close = AsyncMock()
    return service


@pytest.fixture
def coordinator(record_store, vector_store, mock_embedding_service, sleep_recorder):
    """Ingestion coordinator over real stores with a fake embedding oracle."""
    return IngestionCoordinator(
        record_store=record_store,
        vector_store=vector_store,
        embedding_service=mock_embedding_service,
        chunk_size=300,
        chunk_overlap=0,
        inline_batch_size=5,
        inline_batch_delay=0.5,
        step_size=5,
        item_delay=0.1,
        sleep=sleep_recorder,
    )


def make_pdf(pages: List[str]) -> bytes:
    """Build a text PDF with one page per entry."""
    pdf = fitz.open()
    for text in pages:
        page = pdf.new_page()
        page.insert_text((72, 72), text, fontsize=10)
    data = pdf.tobytes()
    pdf.close()
    return data
