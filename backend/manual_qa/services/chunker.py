"""Text chunking strategies for manual ingestion."""
import re
from enum import Enum
from typing import List, Optional

from manual_qa.models.document import ChunkRecord


# Lines that open a new structural unit: headings, sections, pages,
# decimal rule numbers, bold labels, rules and short rule codes like "G1".
SECTION_MARKER_PATTERN = re.compile(
    r"^(#{1,6}\s|Section\s|Page\s|\d+\.\d+|\*\*|Rule\s|[A-Z]{1,3}\d+)",
    re.IGNORECASE,
)

PAGE_MARKER_PATTERN = re.compile(r"---\s*Page\s+(\d+)\s*---", re.IGNORECASE)

MIN_FLUSH_LENGTH = 100
MIN_CHUNK_LENGTH = 50


class ChunkStrategy(str, Enum):
    """Selectable chunking strategies."""

    STRUCTURAL = "structural"
    WINDOW = "window"


def _overlap_seed(buffer: str, overlap: int) -> str:
    """Return the trailing overlap of a flushed buffer, cut back to a sentence or line end."""
    if overlap <= 0:
        return ""
    tail = buffer[max(0, len(buffer) - overlap):]
    break_point = max(tail.rfind(". "), tail.rfind("\n"))
    if break_point > 0:
        return tail[break_point + 1:].strip()
    return tail


def chunk_structural(
    text: str,
    target_size: int = 1500,
    overlap: int = 200,
    min_chunk_length: int = MIN_CHUNK_LENGTH,
) -> List[str]:
    """
    Split line-structured text into overlapping chunks that respect section markers.

    A buffer is flushed once the next line would push it past target_size and it
    already holds more than MIN_FLUSH_LENGTH characters. The next buffer starts with
    the tail of the flushed one unless the incoming line is a section marker, in
    which case it starts with that line alone. A single line longer than
    target_size is kept whole.

    Args:
        text: Extracted text, newline separated
        target_size: Target chunk length in characters
        overlap: Maximum characters carried over between chunks
        min_chunk_length: Trailing buffers at or below this length are dropped

    Returns:
        Ordered list of chunk strings
    """
    chunks: List[str] = []
    current = ""

    for line in text.split("\n"):
        potential = f"{current}\n{line}" if current else line

        if len(potential) > target_size and len(current) > MIN_FLUSH_LENGTH:
            chunks.append(current.strip())

            if SECTION_MARKER_PATTERN.match(line):
                current = line
            else:
                seed = _overlap_seed(current, overlap)
                if len(seed) >= overlap:
                    # Seed and its joining newline fit in overlap
                    seed = seed[len(seed) - overlap + 1:]
                current = f"{seed}\n{line}" if seed else line
        else:
            current = potential

    if len(current.strip()) > min_chunk_length:
        chunks.append(current.strip())

    return chunks


def chunk_windows(
    text: str,
    window_size: int = 1500,
    overlap: int = 200,
    min_chunk_length: int = MIN_CHUNK_LENGTH,
) -> List[str]:
    """
    Split flat text into fixed-size overlapping windows.

    Each window is cut back to the last paragraph or sentence break when that
    break lies past half of the window. Consecutive windows start
    (window length - overlap) characters apart.
    """
    if not text:
        return []

    chunks: List[str] = []
    start = 0
    text_length = len(text)

    while start < text_length:
        end = min(start + window_size, text_length)

        if end < text_length:
            window = text[start:end]
            break_point = max(window.rfind("\n\n"), window.rfind(". "))
            if break_point > window_size * 0.5:
                end = start + break_point + 1

        piece = text[start:end].strip()
        if len(piece) >= min_chunk_length:
            chunks.append(piece)

        if end >= text_length:
            break

        # Always make progress even when overlap >= the shortened window
        start = max(end - overlap, start + 1)

    return chunks


def chunk_text(
    text: str,
    target_size: int = 1500,
    overlap: int = 200,
    strategy: ChunkStrategy = ChunkStrategy.STRUCTURAL,
    min_chunk_length: int = MIN_CHUNK_LENGTH,
) -> List[str]:
    """Chunk text with the selected strategy."""
    strategy = ChunkStrategy(strategy)
    if strategy == ChunkStrategy.WINDOW:
        return chunk_windows(text, target_size, overlap, min_chunk_length)
    return chunk_structural(text, target_size, overlap, min_chunk_length)


def first_page_marker(text: str) -> Optional[int]:
    """Return the first page number marked in text, if any."""
    match = PAGE_MARKER_PATTERN.search(text)
    return int(match.group(1)) if match else None


def page_markers(text: str) -> List[int]:
    """Return every page number marked in text, in order of appearance."""
    return [int(n) for n in PAGE_MARKER_PATTERN.findall(text)]


def build_chunk_records(document_id: str, chunks: List[str], start_index: int = 0) -> List[ChunkRecord]:
    """
    Attach position metadata to chunk strings.

    The page number of a chunk is its first page marker, or the page in effect
    at the end of the preceding chunk when it has none.
    """
    records = []
    total = len(chunks)
    page_in_effect: Optional[int] = None

    for offset, content in enumerate(chunks):
        markers = page_markers(content)
        page_number = markers[0] if markers else page_in_effect
        if markers:
            page_in_effect = markers[-1]

        index = start_index + offset
        metadata = {
            "chunk_index": index,
            "total_chunks": total,
            "char_count": len(content),
        }
        if page_number is not None:
            metadata["page_number"] = page_number

        records.append(
            ChunkRecord(
                document_id=document_id,
                chunk_index=index,
                content=content,
                metadata=metadata,
                page_number=page_number,
            )
        )

    return records
