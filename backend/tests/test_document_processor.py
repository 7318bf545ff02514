"""Tests for PDF extraction, page images and upload validation."""
from pathlib import Path

import httpx
import pytest

from conftest import make_pdf
from manual_qa.exceptions import ExtractionFailure, ValidationError
from manual_qa.services.document_processor import DocumentProcessor, join_pages
from manual_qa.validators import PDFValidator

PAGE_ONE = "Quick start guide\nConnect the power cable to the rear socket before use."
PAGE_TWO = "Troubleshooting\nIf the display stays dark, hold the reset button for five seconds."


@pytest.fixture
def manual_pdf(tmp_path):
    path = tmp_path / "manual.pdf"
    path.write_bytes(make_pdf([PAGE_ONE, PAGE_TWO]))
    return str(path)


class TestDocumentProcessor:
    """Tests for DocumentProcessor."""

    def test_join_pages(self):
        assert join_pages([(1, "a"), (2, "b")]) == "--- Page 1 ---\na\n\n--- Page 2 ---\nb"

    def test_extract_marks_pages(self, storage, manual_pdf):
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        extracted = processor.extract(manual_pdf, "m1")

        assert extracted.page_count == 2
        assert extracted.text.startswith("--- Page 1 ---\n")
        assert "--- Page 2 ---\n" in extracted.text
        assert "reset button" in extracted.text
        assert extracted.page_images == []

    def test_extract_renders_page_images(self, storage, manual_pdf):
        processor = DocumentProcessor(storage=storage, render_page_images=True, page_image_scale=0.5)

        extracted = processor.extract(manual_pdf, "m1")

        assert [image.page_number for image in extracted.page_images] == [1, 2]
        assert extracted.page_images[0].url == "/storage/m1/pages/page_1.jpg"
        assert storage.page_image_path("m1", 2).read_bytes()[:2] == b"\xff\xd8"

    def test_max_pages(self, storage, manual_pdf):
        processor = DocumentProcessor(storage=storage, render_page_images=False, max_pages=1)

        extracted = processor.extract(manual_pdf, "m1")

        assert extracted.page_count == 1
        assert "--- Page 2 ---" not in extracted.text

    def test_textless_pdf_fails(self, storage, tmp_path):
        path = tmp_path / "scanned.pdf"
        path.write_bytes(make_pdf(["", ""]))
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        with pytest.raises(ExtractionFailure):
            processor.extract(str(path), "m1")

    def test_corrupt_pdf_fails(self, storage, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"%PDF-1.4 not really a pdf")
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        with pytest.raises(ExtractionFailure):
            processor.extract(str(path), "m1")

    @pytest.mark.asyncio
    async def test_missing_source_fails(self, storage):
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        with pytest.raises(ExtractionFailure):
            await processor.extract_from_source(str(storage.manual_dir("m1") / "missing.pdf"), "m1")

    @pytest.mark.asyncio
    async def test_local_source(self, storage, manual_pdf):
        processor = DocumentProcessor(storage=storage, render_page_images=False)
        stored = storage.save_pdf("m1", "manual.pdf", Path(manual_pdf).read_bytes())

        extracted = await processor.extract_from_source(stored, "m1")

        assert extracted.page_count == 2

    @pytest.mark.parametrize(
        "relative",
        [
            "manual.pdf",
            "storage/../manual.pdf",
        ],
    )
    def test_path_outside_storage_is_rejected(self, storage, manual_pdf, tmp_path, relative):
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        with pytest.raises(ValidationError):
            processor.check_source(str(tmp_path / relative))

    @pytest.mark.parametrize(
        "source",
        [
            "http://169.254.169.254/latest/meta-data/",
            "https://manuals.example.com/guide.pdf",
            "file:///etc/passwd",
            "ftp://manuals.example.com/guide.pdf",
        ],
    )
    def test_url_without_allowed_host_is_rejected(self, storage, source):
        processor = DocumentProcessor(storage=storage, render_page_images=False)

        with pytest.raises(ValidationError):
            processor.check_source(source)

    @pytest.mark.asyncio
    async def test_downloads_from_allowed_host(self, storage):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=make_pdf([PAGE_ONE, PAGE_TWO]))

        processor = DocumentProcessor(
            storage=storage,
            render_page_images=False,
            allowed_source_hosts=["Manuals.Example.com"],
            transport=httpx.MockTransport(handler),
        )

        extracted = await processor.extract_from_source("https://manuals.example.com/guide.pdf", "m1")

        assert requested == ["https://manuals.example.com/guide.pdf"]
        assert extracted.page_count == 2
        assert storage.manual_dir("m1").joinpath("source.pdf").exists()

    @pytest.mark.asyncio
    async def test_redirect_is_not_followed(self, storage):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"location": "http://10.0.0.1/secret.pdf"})

        processor = DocumentProcessor(
            storage=storage,
            render_page_images=False,
            allowed_source_hosts=["manuals.example.com"],
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(ExtractionFailure):
            await processor.fetch_source("https://manuals.example.com/guide.pdf", "m1")


class TestFileStorage:
    def test_save_and_delete(self, storage):
        path = storage.save_pdf("m1", "../manual.pdf", b"%PDF-1.4")
        storage.save_page_image("m1", 3, b"jpeg")

        assert path.endswith("manual.pdf")
        assert storage.manual_dir("m1").joinpath("manual.pdf").exists()

        storage.delete_document("m1")
        assert not storage.manual_dir("m1").exists()

    def test_page_image_urls(self, storage):
        images = storage.page_images("m1", [1, 4])

        assert [image.to_event() for image in images] == [
            {"url": "/storage/m1/pages/page_1.jpg", "pageNumber": 1},
            {"url": "/storage/m1/pages/page_4.jpg", "pageNumber": 4},
        ]


class TestPDFValidator:
    """Tests for PDFValidator."""

    def test_validate_file_type_valid(self):
        assert PDFValidator.validate_file_type("manual.PDF") == ".pdf"

    def test_validate_file_type_invalid(self):
        with pytest.raises(ValidationError):
            PDFValidator.validate_file_type("manual.docx")

    def test_validate_file_size(self):
        PDFValidator.validate_file_size(1024, max_size_mb=1)
        with pytest.raises(ValidationError):
            PDFValidator.validate_file_size(0, max_size_mb=1)
        with pytest.raises(ValidationError):
            PDFValidator.validate_file_size(2 * 1024 * 1024, max_size_mb=1)

    def test_validate_header(self):
        with pytest.raises(ValidationError):
            PDFValidator.validate_header(b"PK\x03\x04")

    def test_validate_content(self, manual_pdf):
        assert PDFValidator.validate_content(manual_pdf, max_pages=10) == 2
        with pytest.raises(ValidationError):
            PDFValidator.validate_content(manual_pdf, max_pages=1)
