"""Upload validation for manuals."""
from typing import Any

import pdfplumber

from manual_qa.exceptions import ValidationError


class PDFValidator:
    """Validator for uploaded PDF manuals."""

    SUPPORTED_EXTENSIONS = [".pdf"]

    @classmethod
    def validate_file_type(cls, filename: str) -> str:
        """Validate file type and return clean extension."""
        if not filename:
            raise ValidationError("File name is required.")

        file_extension = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
        full_extension = f".{file_extension}"

        if full_extension not in cls.SUPPORTED_EXTENSIONS:
            raise ValidationError(
                f"Unsupported file type. Supported formats: {', '.join(cls.SUPPORTED_EXTENSIONS)}"
            )
        return full_extension

    @classmethod
    def validate_file_size(cls, file_size_bytes: int, max_size_mb: float) -> None:
        if file_size_bytes == 0:
            raise ValidationError("File is empty.")
        file_size_mb = file_size_bytes / (1024 * 1024)
        if file_size_mb > max_size_mb:
            raise ValidationError(
                f"File size ({file_size_mb:.2f} MB) exceeds maximum allowed size ({max_size_mb} MB)."
            )

    @classmethod
    def validate_header(cls, content: bytes) -> None:
        if not content.startswith(b"%PDF-"):
            raise ValidationError("File is not a valid PDF. PDF files must start with '%PDF-' header.")

    @classmethod
    def validate_content(cls, file_path: str, max_pages: int) -> int:
        """
        Validate PDF content and return page count.

        Args:
            file_path: Path to PDF file
            max_pages: Maximum allowed page count

        Returns:
            Number of pages in the document

        Raises:
            ValidationError: If the PDF is corrupted, empty or too long
        """
        try:
            with pdfplumber.open(file_path) as pdf:
                total_pages = len(pdf.pages)
        except Exception as e:
            raise ValidationError(f"Invalid or corrupted PDF file: {str(e)}")

        if total_pages == 0:
            raise ValidationError("PDF contains no pages. Please provide a valid PDF with content.")
        if total_pages > max_pages:
            raise ValidationError(
                f"PDF has {total_pages} pages, which exceeds the maximum of {max_pages} pages."
            )
        return total_pages


def validate_upload(filename: str, content: bytes, settings: Any) -> None:
    """Checks that need only the raw upload: type, size and header."""
    PDFValidator.validate_file_type(filename)
    PDFValidator.validate_file_size(len(content), settings.max_file_size_mb)
    PDFValidator.validate_header(content)
