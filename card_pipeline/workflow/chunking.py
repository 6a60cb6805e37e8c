from __future__ import annotations

import math
import uuid
from typing import Iterable, List

from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import Chunk, PageText

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS_PER_CHUNK = 4000
OVERSIZED_PAGE_CONFIDENCE = 0.8
_CHUNK_NAMESPACE = uuid.UUID("8d4a3f6e-2c1b-4e57-9a0d-5b6c7e8f9a10")


def estimate_token_count(text: str) -> int:
    """Cheap token estimate: roughly four characters per token."""
    return math.ceil(len(text or "") / 4)


def page_marker(page_number: int) -> str:
    return f"=== Page {page_number} ==="


class PageChunker:
    """Packs consecutive pages into chunks that fit a token budget."""

    def __init__(self, max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK) -> None:
        if max_tokens_per_chunk <= 0:
            raise ValueError("max_tokens_per_chunk must be a positive integer")
        self.max_tokens_per_chunk = max_tokens_per_chunk

    @staticmethod
    def _chunk_id(index: int, page_numbers: List[int]) -> str:
        seed = f"{index}:{','.join(str(p) for p in page_numbers)}"
        return str(uuid.uuid5(_CHUNK_NAMESPACE, seed))

    def _make_chunk(self, index: int, pages: List[PageText], token_count: int, confidence: float) -> Chunk:
        page_numbers = [page.page_number for page in pages]
        text = "\n\n".join(f"{page_marker(page.page_number)}\n{page.text}" for page in pages)
        return Chunk(chunk_id=self._chunk_id(index, page_numbers), page_numbers=page_numbers, text=text, token_count=token_count, confidence=confidence)

    def create_chunks(self, pages: Iterable[PageText]) -> List[Chunk]:
        chunks: List[Chunk] = []
        current: List[PageText] = []
        current_tokens = 0

        for page in pages:
            page_tokens = estimate_token_count(page.text)

            if page_tokens > self.max_tokens_per_chunk:
                if current:
                    chunks.append(self._make_chunk(len(chunks), current, current_tokens, 1.0))
                chunks.append(self._make_chunk(len(chunks), [page], page_tokens, OVERSIZED_PAGE_CONFIDENCE))
                current, current_tokens = [], 0
                continue

            if current and current_tokens + page_tokens > self.max_tokens_per_chunk:
                chunks.append(self._make_chunk(len(chunks), current, current_tokens, 1.0))
                current, current_tokens = [], 0

            current.append(page)
            current_tokens += page_tokens

        if current:
            chunks.append(self._make_chunk(len(chunks), current, current_tokens, 1.0))

        logger.info("Chunking done | chunks=%s tokens=%s", len(chunks), [c.token_count for c in chunks])
        return chunks


def create_chunks(pages: Iterable[PageText], max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK) -> List[Chunk]:
    return PageChunker(max_tokens_per_chunk).create_chunks(pages)
