"""Manual upload and management endpoints."""
from typing import Annotated, List

from fastapi import APIRouter, Depends, File, UploadFile

from manual_qa.api.dependencies import (
    get_app_settings,
    get_record_store,
    get_storage,
    get_vector_store,
)
from manual_qa.api.schemas import DocumentResponse
from manual_qa.exceptions import DocumentNotFoundError, ValidationError
from manual_qa.services.record_store import RecordStore
from manual_qa.services.storage import FileStorage
from manual_qa.services.vector_store import VectorStore
from manual_qa.utils.logger import logger
from manual_qa.validators import PDFValidator, validate_upload


router = APIRouter()


def _to_response(document) -> DocumentResponse:
    data = document.to_dict()
    data.pop("file_path", None)
    return DocumentResponse(**data)


@router.post("/documents", response_model=DocumentResponse, status_code=201)
async def upload_document(
    file: Annotated[UploadFile, File(...)],
    record_store: RecordStore = Depends(get_record_store),
    storage: FileStorage = Depends(get_storage),
    app_settings=Depends(get_app_settings),
):
    """
    Upload a PDF manual.

    The manual is stored and created in pending status; ingestion is triggered
    separately.

    Args:
        file: PDF file to upload

    Returns:
        The created manual
    """
    content = await file.read()
    validate_upload(file.filename, content, app_settings)

    document = await record_store.create_document(name=file.filename, file_size=len(content))
    file_path = storage.save_pdf(document.id, file.filename, content)

    try:
        PDFValidator.validate_content(file_path, app_settings.max_pages)
    except ValidationError:
        await record_store.delete_document(document.id)
        storage.delete_document(document.id)
        raise

    document = await record_store.update_document(document.id, file_path=file_path)
    logger.info(
        f"Manual uploaded: {file.filename}",
        extra={"document_id": document.id},
    )
    return _to_response(document)


@router.get("/documents", response_model=List[DocumentResponse])
async def list_documents(record_store: RecordStore = Depends(get_record_store)):
    return [_to_response(d) for d in await record_store.list_documents()]


@router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, record_store: RecordStore = Depends(get_record_store)):
    return _to_response(await record_store.require_document(document_id))


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    record_store: RecordStore = Depends(get_record_store),
    vector_store: VectorStore = Depends(get_vector_store),
    storage: FileStorage = Depends(get_storage),
):
    """Delete a manual with its chunks, vectors, page images and file."""
    if not await record_store.delete_document(document_id):
        raise DocumentNotFoundError(f"Manual {document_id} not found")
    vector_store.delete_document(document_id)
    storage.delete_document(document_id)
    return {"success": True, "id": document_id}
