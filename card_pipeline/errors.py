from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for errors raised by the card pipeline."""


class InvalidRequestError(PipelineError, ValueError):
    """Input rejected before any provider call was made."""


class FileUploadUnsupportedError(PipelineError):
    """The configured LLM client cannot upload files."""


class BatchUploadError(PipelineError):
    """Every image in an OCR batch failed to upload."""


class LLMError(PipelineError):
    """Generic provider or network failure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidAPIKeyError(LLMError):
    pass


class RateLimitError(LLMError):
    """HTTP 429 from the provider, optionally carrying a retry-delay hint such as ``"12s"``."""

    def __init__(self, message: str, *, retry_delay: Optional[str] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_delay = retry_delay


class QuotaExceededError(LLMError):
    """Provider quota exhausted; callers abort the remaining batch work."""

    def __init__(self, detail: str = "") -> None:
        message = "LLM quota exceeded. Wait before retrying."
        if detail:
            message = f"{message} Detail: {detail}"
        super().__init__(message, status_code=429)


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, QuotaExceededError):
        return True
    return "quota" in str(exc).lower()


__all__ = [
    "PipelineError",
    "InvalidRequestError",
    "FileUploadUnsupportedError",
    "BatchUploadError",
    "LLMError",
    "InvalidAPIKeyError",
    "RateLimitError",
    "QuotaExceededError",
    "is_quota_error",
]
