from __future__ import annotations

import base64
import binascii
import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from card_pipeline.errors import InvalidRequestError
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import BatchUploadResult, ImageBlob, PageImageRef
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.retry import RetryExecutor

logger = get_logger(__name__)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=-]+)*;base64,(?P<data>.*)$", re.DOTALL)


def decode_image_blob(value: str, mime_type: Optional[str] = None) -> ImageBlob:
    """Decode a base64 string or ``data:`` URL into an ``ImageBlob``."""
    text = (value or "").strip()
    match = _DATA_URL.match(text)
    if match:
        mime_type = mime_type or match.group("mime")
        text = match.group("data")
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequestError(f"image blob is not valid base64: {exc}") from exc
    if not data:
        raise InvalidRequestError("image blob is empty")
    return ImageBlob(data=data, mime_type=mime_type or "image/png")


class ImageSource(ABC):
    """Turns an OCR page reference into raw image bytes."""

    @abstractmethod
    async def load(self, ref: PageImageRef) -> ImageBlob:
        ...


class HttpImageSource(ImageSource):
    """Fetches page images over HTTP; inline blobs are returned as-is."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.timeout = timeout
        self._client = client

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> ImageBlob:
        response = await client.get(url)
        response.raise_for_status()
        mime_type = (response.headers.get("content-type") or "image/png").split(";")[0].strip()
        return ImageBlob(data=response.content, mime_type=mime_type or "image/png")

    async def load(self, ref: PageImageRef) -> ImageBlob:
        if ref.image is not None:
            return ref.image
        if not ref.image_url:
            raise InvalidRequestError(f"page {ref.page_number} has no image")
        if ref.image_url.startswith("data:"):
            return decode_image_blob(ref.image_url)

        if self._client is not None:
            return await self._fetch(self._client, ref.image_url)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._fetch(client, ref.image_url)


async def upload_page(llm: LLMClient, image_source: ImageSource, executor: RetryExecutor, page: PageImageRef) -> BatchUploadResult:
    """Load one page image and upload it to the model provider through the retry executor."""
    blob = await image_source.load(page)
    uploaded = await executor.execute(lambda: llm.upload_file(blob), description=f"upload page={page.page_number}")
    return BatchUploadResult(page_number=page.page_number, uri=uploaded.uri, mime_type=uploaded.mime_type)


__all__ = ["ImageSource", "HttpImageSource", "decode_image_blob", "upload_page"]
