from __future__ import annotations

import re
import uuid
from typing import Any, Callable, Dict, Iterable, List

from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import AlignedEntry, CandidateProblem, Card, CardMetadata

logger = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.3
DUAL_SOURCE_CONFIDENCE = 0.95
ANSWER_PLACEHOLDER = "(No answer available)"
PROCESSING_TYPE_SINGLE = "enhanced_single_pdf"
PROCESSING_TYPE_DUAL = "dual_pdf_ocr"

_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")


def text_to_structured_doc(text: str) -> Dict[str, Any]:
    """Convert plain/markdown-ish text into a ProseMirror-style document.

    ``#`` lines become headings, every other non-empty line becomes a paragraph.
    """
    content: List[Dict[str, Any]] = []
    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        heading = _HEADING.match(stripped)
        if heading:
            content.append(
                {
                    "type": "heading",
                    "attrs": {"level": len(heading.group(1))},
                    "content": [{"type": "text", "text": heading.group(2)}],
                }
            )
            continue
        content.append({"type": "paragraph", "content": [{"type": "text", "text": stripped}]})
    return {"type": "doc", "content": content}


def build_back_text(answer: str | None, explanation: str | None, placeholder: str = ANSWER_PLACEHOLDER) -> str:
    back = f"## Answer\n{(answer or '').strip() or placeholder}"
    if (explanation or "").strip():
        back += f"\n\n## Explanation\n{explanation.strip()}"
    return back


class CardGenerator:
    """Turns candidate problems or aligned OCR entries into persistable cards."""

    def __init__(
        self,
        text_to_doc: Callable[[str], Dict[str, Any]] = text_to_structured_doc,
        processing_model: str = "gpt-4o-mini",
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        answer_placeholder: str = ANSWER_PLACEHOLDER,
    ) -> None:
        self.text_to_doc = text_to_doc
        self.processing_model = processing_model
        self.min_confidence = min_confidence
        self.answer_placeholder = answer_placeholder

    def from_problems(self, problems: Iterable[CandidateProblem], source_ref: str) -> List[Card]:
        cards: List[Card] = []
        dropped = 0
        for problem in problems:
            if problem.confidence <= self.min_confidence:
                dropped += 1
                continue
            back = build_back_text(problem.answer_text, problem.explanation_text, self.answer_placeholder)
            cards.append(
                Card(
                    front_content=self.text_to_doc(problem.problem_text),
                    back_content=self.text_to_doc(back),
                    source_ref=source_ref,
                    source_page=problem.page_number,
                    metadata=CardMetadata(
                        problem_id=problem.id,
                        confidence_score=problem.confidence,
                        processing_model=self.processing_model,
                        processing_type=PROCESSING_TYPE_SINGLE,
                        chunk_id=problem.chunk_id,
                        answer_text=problem.answer_text or "",
                        explanation_text=problem.explanation_text or "",
                    ),
                )
            )
        logger.info("Cards generated | source=%s cards=%s dropped=%s", source_ref, len(cards), dropped)
        return cards

    def from_aligned(self, entries: Iterable[AlignedEntry], source_ref: str) -> List[Card]:
        cards: List[Card] = []
        for entry in entries:
            if not entry.question_text.strip():
                continue
            back = build_back_text(entry.answer_text, entry.explanation_text, self.answer_placeholder)
            cards.append(
                Card(
                    front_content=self.text_to_doc(entry.question_text),
                    back_content=self.text_to_doc(back),
                    source_ref=source_ref,
                    source_page=entry.page_number,
                    metadata=CardMetadata(
                        problem_id=f"dual-{entry.page_number}-{uuid.uuid4()}",
                        confidence_score=DUAL_SOURCE_CONFIDENCE,
                        processing_model=self.processing_model,
                        processing_type=PROCESSING_TYPE_DUAL,
                        answer_text=entry.answer_text,
                        explanation_text=entry.explanation_text,
                    ),
                )
            )
        logger.info("Aligned cards generated | source=%s cards=%s", source_ref, len(cards))
        return cards


__all__ = ["CardGenerator", "text_to_structured_doc", "build_back_text"]
