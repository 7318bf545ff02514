"""PDF text and page-image extraction with page markers."""
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import fitz  # PyMuPDF
import httpx
import pdfplumber

from manual_qa.exceptions import ExtractionFailure, ValidationError
from manual_qa.models.document import ExtractedDocument, PageImage
from manual_qa.services.storage import FileStorage
from manual_qa.utils.logger import logger
from manual_qa.utils.text_cleaner import clean_text


def format_page_marker(page_number: int) -> str:
    return f"--- Page {page_number} ---"


def join_pages(pages: List[Tuple[int, str]]) -> str:
    """Join page texts into one document, each page opened by its page marker."""
    return "\n\n".join(f"{format_page_marker(n)}\n{text}" for n, text in pages)


def extract_text_from_pdf(file_path: str, max_pages: Optional[int] = None) -> List[Tuple[int, str]]:
    """
    Extract text from each page of a PDF using pdfplumber.

    Args:
        file_path: Path to PDF file
        max_pages: Only read this many leading pages

    Returns:
        List of (page_number, page_text) tuples

    Raises:
        ExtractionFailure: If the PDF cannot be opened
    """
    pages_data = []
    try:
        with pdfplumber.open(file_path) as pdf:
            pages = pdf.pages[:max_pages] if max_pages else pdf.pages
            for page_num, page in enumerate(pages, 1):
                try:
                    text = page.extract_text() or ""
                except Exception as e:
                    logger.warning(f"Error extracting text from PDF page {page_num}: {str(e)}")
                    text = ""
                pages_data.append((page_num, clean_text(text)))
    except Exception as e:
        logger.error(f"Error opening PDF file {file_path}: {str(e)}")
        raise ExtractionFailure(f"Failed to process PDF file: {str(e)}")

    return pages_data


class DocumentProcessor:
    """Extracts marked-up text and page images from manuals."""

    def __init__(
        self,
        storage: FileStorage,
        render_page_images: bool = True,
        page_image_scale: float = 1.2,
        min_text_chars: int = 50,
        max_pages: Optional[int] = None,
        download_timeout: float = 60.0,
        allowed_source_hosts: Optional[Iterable[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.render_page_images = render_page_images
        self.page_image_scale = page_image_scale
        self.min_text_chars = min_text_chars
        self.max_pages = max_pages
        self.download_timeout = download_timeout
        self.allowed_source_hosts = {host.lower() for host in allowed_source_hosts or ()}
        self._transport = transport

    def render_pages(self, file_path: str, document_id: str) -> List[PageImage]:
        """Render every page to JPEG and store it. Failing pages are skipped."""
        images = []
        matrix = fitz.Matrix(self.page_image_scale, self.page_image_scale)
        with fitz.open(file_path) as pdf:
            page_count = min(pdf.page_count, self.max_pages) if self.max_pages else pdf.page_count
            for index in range(page_count):
                page_number = index + 1
                try:
                    pixmap = pdf[index].get_pixmap(matrix=matrix)
                    images.append(
                        self.storage.save_page_image(document_id, page_number, pixmap.tobytes("jpeg"))
                    )
                except Exception as e:
                    logger.warning(f"Failed to render page {page_number} of {document_id}: {str(e)}")
        return images

    def extract(self, file_path: str, document_id: str) -> ExtractedDocument:
        """
        Extract page-marked text and page images from a PDF.

        Args:
            file_path: Path to PDF file
            document_id: Manual the images are stored under

        Returns:
            ExtractedDocument with "--- Page N ---" delimited text

        Raises:
            ExtractionFailure: If the PDF yields (almost) no text
        """
        pages = extract_text_from_pdf(file_path, self.max_pages)
        text = join_pages(pages)

        body_length = sum(len(page_text) for _, page_text in pages)
        if body_length < self.min_text_chars:
            raise ExtractionFailure(
                "No text extracted from PDF (is it scanned?). "
                "Try a text-based PDF or paste the text instead."
            )

        page_images: List[PageImage] = []
        if self.render_page_images:
            page_images = self.render_pages(file_path, document_id)

        logger.info(
            f"Extracted {len(pages)} pages from {Path(file_path).name}",
            extra={"document_id": document_id, "extracted_length": len(text)},
        )
        return ExtractedDocument(text=text, page_count=len(pages), page_images=page_images)

    def check_source(self, source: str) -> None:
        """
        Reject sources the service may not read.

        Local paths must lie inside the storage root. URLs must be http(s) and
        point at one of allowed_source_hosts; with no hosts configured, URL
        sources are refused.

        Raises:
            ValidationError: If the source is outside those bounds
        """
        if "://" in source:
            parsed = urlparse(source)
            if parsed.scheme not in ("http", "https"):
                raise ValidationError(f"Unsupported source scheme: {parsed.scheme}")
            host = (parsed.hostname or "").lower()
            if host not in self.allowed_source_hosts:
                raise ValidationError(f"Downloading sources from {host or source} is not allowed")
            return

        storage_root = self.storage.root.resolve()
        if not Path(source).resolve().is_relative_to(storage_root):
            raise ValidationError("Source path must be inside the manual storage directory")

    async def fetch_source(self, source: str, document_id: str) -> str:
        """
        Resolve a retrievable-content reference to a local PDF path.

        http(s) URLs on an allowed host are downloaded into the manual's storage
        directory; anything else must be an existing file under the storage root.
        """
        self.check_source(source)

        if "://" in source:
            async with httpx.AsyncClient(timeout=self.download_timeout, transport=self._transport) as client:
                try:
                    response = await client.get(source)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    raise ExtractionFailure(f"Failed to download PDF: {str(e)}")
            return self.storage.save_pdf(document_id, "source.pdf", response.content)

        path = Path(source)
        if not path.is_file():
            raise ExtractionFailure(f"Source file not found: {source}")
        return str(path)

    async def extract_from_source(self, source: str, document_id: str) -> ExtractedDocument:
        file_path = await self.fetch_source(source, document_id)
        return self.extract(file_path, document_id)

