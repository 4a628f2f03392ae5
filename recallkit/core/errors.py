"""Error taxonomy shared by the store, the ingestor and the command pipeline."""

from __future__ import annotations

from typing import Optional


class RecallError(Exception):
    """Base class; ``error_type`` is the tag reported to callers."""

    error_type = "recall_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"type": self.error_type, "message": self.message}


class ValidationError(RecallError):
    error_type = "validation_error"


class StorageError(RecallError):
    error_type = "storage_error"


class ConfigurationError(RecallError):
    error_type = "configuration_error"


class ExtractionError(RecallError):
    """LLM or content extraction failed; retried, then degraded to a fallback."""

    error_type = "extraction_error"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(ExtractionError):
    """Transport, timeout or HTTP failure talking to the completion endpoint."""

    error_type = "provider_error"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.status_code = status_code
