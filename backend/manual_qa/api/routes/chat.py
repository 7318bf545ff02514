"""Chat endpoint streaming grounded answers as server-sent events."""
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from manual_qa.api.dependencies import get_llm_service, get_record_store, get_retrieval_service
from manual_qa.api.schemas import ChatRequest
from manual_qa.exceptions import ManualQAError, ValidationError
from manual_qa.prompts import build_messages, build_system_prompt
from manual_qa.services.llm_service import LLMService
from manual_qa.services.record_store import RecordStore
from manual_qa.services.retrieval_service import RetrievalService
from manual_qa.utils import metrics
from manual_qa.utils.logger import logger


router = APIRouter()


@router.post("/chat")
async def chat(
    request: ChatRequest,
    record_store: RecordStore = Depends(get_record_store),
    retrieval_service: RetrievalService = Depends(get_retrieval_service),
    llm_service: LLMService = Depends(get_llm_service),
):
    """
    Answer the latest user message from the selected manual.

    Retrieval and the backend request happen before the response starts, so
    validation, rate-limit and quota failures come back as JSON errors.

    Returns:
        text/event-stream of completion chunks, an optional page_images event and [DONE]
    """
    try:
        if not request.document_id:
            raise ValidationError("documentId is required")
        query = request.latest_user_message()
        if not query:
            raise ValidationError("No user message provided")

        document_id = request.document_id
        await record_store.require_document(document_id)

        result = await retrieval_service.retrieve(query, document_id)
        system_prompt = build_system_prompt(result.context)
        stream = await llm_service.open_stream(build_messages(system_prompt, request.history()))

    except ManualQAError as e:
        metrics.chat_requests_total.labels(outcome=type(e).__name__).inc()
        raise

    metrics.chat_requests_total.labels(outcome="streamed").inc()
    logger.info(
        f"Streaming answer with {len(result.chunks)} sources",
        extra={"document_id": document_id, "cited_pages": result.cited_pages},
    )
    page_images = retrieval_service.page_images(document_id, result)
    return StreamingResponse(
        llm_service.relay(stream, page_images),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
