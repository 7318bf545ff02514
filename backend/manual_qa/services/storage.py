"""Local file storage for uploaded manuals and rendered page images."""
import shutil
from pathlib import Path
from typing import Iterable, List

from manual_qa.models.document import PageImage
from manual_qa.utils.logger import logger


class FileStorage:
    """Stores files under ``<root>/<document_id>/`` and serves them under ``url_prefix``."""

    def __init__(self, root: str = "./storage", url_prefix: str = "/storage"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")

    def manual_dir(self, document_id: str) -> Path:
        return self.root / document_id

    def save_pdf(self, document_id: str, filename: str, content: bytes) -> str:
        """Write an uploaded PDF and return its path."""
        target = self.manual_dir(document_id) / Path(filename).name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return str(target)

    def page_image_path(self, document_id: str, page_number: int) -> Path:
        return self.manual_dir(document_id) / "pages" / f"page_{page_number}.jpg"

    def page_image_url(self, document_id: str, page_number: int) -> str:
        """Deterministic URL of a page image, whether or not it was rendered."""
        return f"{self.url_prefix}/{document_id}/pages/page_{page_number}.jpg"

    def save_page_image(self, document_id: str, page_number: int, data: bytes) -> PageImage:
        target = self.page_image_path(document_id, page_number)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return PageImage(
            document_id=document_id,
            page_number=page_number,
            url=self.page_image_url(document_id, page_number),
        )

    def page_images(self, document_id: str, page_numbers: Iterable[int]) -> List[PageImage]:
        return [
            PageImage(
                document_id=document_id,
                page_number=n,
                url=self.page_image_url(document_id, n),
            )
            for n in page_numbers
        ]

    def delete_document(self, document_id: str) -> None:
        """Remove the stored PDF and page images of a manual."""
        directory = self.manual_dir(document_id)
        if directory.exists():
            shutil.rmtree(directory)
            logger.info(f"Deleted stored files for manual {document_id}")
