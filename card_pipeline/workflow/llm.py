from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from card_pipeline.errors import FileUploadUnsupportedError, InvalidAPIKeyError, LLMError, RateLimitError
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import ImageBlob, UploadedFile

logger = get_logger(__name__)

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


class LLMClient(ABC):
    """Capability boundary for the language model provider."""

    model: str = "unknown"

    @property
    def supports_files(self) -> bool:
        return False

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        ...

    async def upload_file(self, blob: ImageBlob) -> UploadedFile:
        raise FileUploadUnsupportedError(f"{type(self).__name__} cannot upload files")

    async def generate_with_files(self, prompt: str, files: Sequence[UploadedFile]) -> str:
        raise FileUploadUnsupportedError(f"{type(self).__name__} cannot generate from files")


def _retry_hint(exc: openai.APIStatusError) -> Optional[str]:
    headers = getattr(exc.response, "headers", None) or {}
    retry_ms = headers.get("retry-after-ms")
    if retry_ms:
        try:
            return f"{float(retry_ms) / 1000:g}s"
        except ValueError:
            return None
    retry_after = headers.get("retry-after")
    if retry_after and retry_after.strip().isdigit():
        return f"{retry_after.strip()}s"
    return None


def _translate_error(exc: Exception, action: str) -> LLMError:
    if isinstance(exc, openai.AuthenticationError):
        return InvalidAPIKeyError(f"OpenAI rejected the API key during {action}: {exc}", status_code=401)
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(f"OpenAI rate limit during {action}: {exc}", retry_delay=_retry_hint(exc))
    if isinstance(exc, openai.APIStatusError):
        return LLMError(f"OpenAI {action} failed with status {exc.status_code}: {exc}", status_code=exc.status_code)
    return LLMError(f"OpenAI {action} failed: {exc}")


class OpenAILLMClient(LLMClient):
    """OpenAI-backed client: chat completions for text, Files + Responses API for images.

    If no API key is provided, it falls back to a dummy key and remains inactive.
    The SDK's own retries are disabled; ``RetryExecutor`` owns retry policy.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        dummy_key: str = "sk-dummy",
        timeout: float = 120.0,
        temperature: float = 0.1,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", dummy_key)
        self.model = model
        self.dummy_key = dummy_key
        self.temperature = temperature
        self._client: Optional[AsyncOpenAI] = None
        if self.api_key and self.api_key != self.dummy_key:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)

    @property
    def is_active(self) -> bool:
        return self._client is not None

    @property
    def supports_files(self) -> bool:
        return self.is_active

    def _require_client(self) -> AsyncOpenAI:
        if self._client is None:
            raise InvalidAPIKeyError("LLM client is not configured with a valid API key.", status_code=401)
        return self._client

    async def generate(self, prompt: str) -> str:
        client = self._require_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise _translate_error(exc, "generation") from exc
        return response.choices[0].message.content or ""

    async def upload_file(self, blob: ImageBlob) -> UploadedFile:
        client = self._require_client()
        extension = _EXTENSIONS.get(blob.mime_type, "png")
        try:
            uploaded = await client.files.create(file=(f"page.{extension}", blob.data, blob.mime_type), purpose="vision")
        except Exception as exc:
            raise _translate_error(exc, "file upload") from exc
        return UploadedFile(uri=uploaded.id, mime_type=blob.mime_type)

    async def generate_with_files(self, prompt: str, files: Sequence[UploadedFile]) -> str:
        client = self._require_client()
        content: List[dict] = [{"type": "input_text", "text": prompt}]
        content.extend({"type": "input_image", "file_id": file.uri, "detail": "auto"} for file in files)
        try:
            response = await client.responses.create(
                model=self.model,
                temperature=self.temperature,
                input=[{"role": "user", "content": content}],
            )
        except Exception as exc:
            raise _translate_error(exc, "multi-file generation") from exc
        return response.output_text or ""


def build_llm_client(settings) -> LLMClient:
    client = OpenAILLMClient(api_key=settings.openai_api_key or None, model=settings.openai_model, timeout=settings.llm_timeout_seconds)
    if not client.is_active:
        logger.warning("LLM client inactive (missing OPENAI_API_KEY); provider calls will fail with invalid-key errors.")
    return client


__all__ = ["LLMClient", "OpenAILLMClient", "build_llm_client"]
