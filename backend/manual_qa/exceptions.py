"""Custom exception classes for manual ingestion and chat."""


class ManualQAError(Exception):
    """Base exception for manual QA errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationError(ManualQAError):
    """Raised when a required external credential is missing."""
    status_code = 500


class ValidationError(ManualQAError):
    """Raised when a request is missing required fields or a file is unacceptable."""
    status_code = 400


class DocumentNotFoundError(ManualQAError):
    """Raised when a manual does not exist."""
    status_code = 404


class InvalidStatusTransition(ManualQAError):
    """Raised when a manual's status cannot move to the requested state."""
    status_code = 409


class RateLimitError(ManualQAError):
    """Raised when an external oracle throttles the request."""
    status_code = 429


class QuotaExhaustedError(ManualQAError):
    """Raised when the generation backend reports exhausted credits."""
    status_code = 402


class ExtractionFailure(ManualQAError):
    """Raised when too little text can be extracted from a source."""
    status_code = 422


class EmbeddingFailure(ManualQAError):
    """Raised when the embedding oracle rejects a request."""

    status_code = 502

    def __init__(self, message: str = "", detail: str = ""):
        super().__init__(message)
        self.detail = detail or message


class PersistenceFailure(ManualQAError):
    """Raised when inserting or updating records fails."""
    status_code = 500


class GenerationBackendError(ManualQAError):
    """Raised when the chat completion backend fails before streaming."""
    status_code = 500
