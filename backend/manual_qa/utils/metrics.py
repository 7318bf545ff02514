"""Prometheus metrics for ingestion and chat."""
from prometheus_client import Counter, Histogram

chunks_embedded_total = Counter(
    "manual_qa_chunks_embedded_total",
    "Chunks whose embedding was computed and stored",
)

embedding_failures_total = Counter(
    "manual_qa_embedding_failures_total",
    "Embedding requests that failed after retries",
)

embedding_retries_total = Counter(
    "manual_qa_embedding_retries_total",
    "Embedding requests retried after a rate limit response",
)

ingestion_runs_total = Counter(
    "manual_qa_ingestion_runs_total",
    "Ingestion runs by outcome",
    ["outcome"],
)

chat_requests_total = Counter(
    "manual_qa_chat_requests_total",
    "Chat requests by outcome",
    ["outcome"],
)

retrieved_chunks = Histogram(
    "manual_qa_retrieved_chunks",
    "Chunks above the similarity threshold per query",
    buckets=(0, 1, 2, 4, 8, 16, 32),
)
