from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class PageText:
    """Extracted text for a single source page."""

    page_number: int
    text: str


@dataclass(frozen=True)
class Chunk:
    """Token-bounded group of consecutive pages."""

    chunk_id: str
    page_numbers: List[int]
    text: str
    token_count: int
    confidence: float = 1.0


class ProblemType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    DESCRIPTIVE = "descriptive"
    CALCULATION = "calculation"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value: Optional[str | "ProblemType"]) -> "ProblemType":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.UNKNOWN


@dataclass
class CandidateProblem:
    """Provisional question record produced by extraction, completed by enrichment."""

    id: str
    problem_text: str
    page_number: int
    chunk_id: str
    answer_text: Optional[str] = None
    explanation_text: Optional[str] = None
    problem_type: ProblemType = ProblemType.UNKNOWN
    confidence: float = 0.5

    @property
    def needs_answer(self) -> bool:
        return not (self.answer_text or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "problemText": self.problem_text,
            "answerText": self.answer_text,
            "explanationText": self.explanation_text,
            "problemType": self.problem_type.value,
            "confidence": self.confidence,
            "pageNumber": self.page_number,
            "chunkId": self.chunk_id,
        }


@dataclass(frozen=True)
class CardMetadata:
    problem_id: str
    confidence_score: float
    processing_model: str
    processing_type: str
    chunk_id: Optional[str] = None
    answer_text: str = ""
    explanation_text: str = ""


@dataclass(frozen=True)
class Card:
    """Persistable front/back payload with provenance."""

    front_content: Dict[str, Any]
    back_content: Dict[str, Any]
    source_ref: str
    source_page: int
    metadata: CardMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "front_content": self.front_content,
            "back_content": self.back_content,
            "source_ref": self.source_ref,
            "source_page": self.source_page,
            "metadata": {
                "problem_id": self.metadata.problem_id,
                "confidence_score": self.metadata.confidence_score,
                "chunk_id": self.metadata.chunk_id,
                "answer_text": self.metadata.answer_text,
                "explanation_text": self.metadata.explanation_text,
                "processing_model": self.metadata.processing_model,
                "processing_type": self.metadata.processing_type,
            },
        }


@dataclass(frozen=True)
class ImageBlob:
    data: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class UploadedFile:
    """Reference returned by the LLM provider for an uploaded file."""

    uri: str
    mime_type: str


@dataclass(frozen=True)
class BatchUploadResult:
    page_number: int
    uri: str
    mime_type: str

    @property
    def file(self) -> UploadedFile:
        return UploadedFile(uri=self.uri, mime_type=self.mime_type)


@dataclass(frozen=True)
class PageImageRef:
    """Image input for OCR: either a URL to fetch or an inline blob."""

    page_number: int
    image_url: Optional[str] = None
    image: Optional[ImageBlob] = None


@dataclass(frozen=True)
class ExtractedPage:
    page_number: int
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"pageNumber": self.page_number, "text": self.text}


@dataclass(frozen=True)
class AlignedEntry:
    page_number: int
    question_text: str
    answer_text: str = ""
    explanation_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "questionText": self.question_text,
            "answerText": self.answer_text,
            "explanationText": self.explanation_text,
        }


@dataclass(frozen=True)
class Parsed(Generic[T]):
    """Successful parse; ``rejected`` counts entries dropped by schema validation."""

    value: T
    rejected: int = 0


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    preview: str = ""


ParseResult = Union[Parsed[T], ParseFailure]


@dataclass
class BatchOcrResult:
    success: bool
    message: str
    extracted_pages: List[ExtractedPage] = field(default_factory=list)
    processed_count: int = 0
    skipped_count: int = 0
    suggestion: Optional[str] = None
    quota_denied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.quota_denied:
            if self.suggestion:
                payload["suggestion"] = self.suggestion
            return payload
        if self.success:
            payload["extractedPages"] = [page.to_dict() for page in self.extracted_pages]
        payload["processedCount"] = self.processed_count
        payload["skippedCount"] = self.skipped_count
        return payload


@dataclass
class DualOcrResult:
    success: bool
    message: str
    entries: List[AlignedEntry] = field(default_factory=list)
    processing_time_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "processingTimeMs": self.processing_time_ms,
        }
        if self.success:
            payload["extractedText"] = [entry.to_dict() for entry in self.entries]
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class ProcessingResult:
    """Summary of one text-pipeline run."""

    cards: List[Card]
    problems: List[CandidateProblem]
    total_pages: int
    processing_time_ms: int
    chunks: List[Chunk] = field(default_factory=list)
    rejected_entries: int = 0
    parse_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cards": [card.to_dict() for card in self.cards],
            "detectedProblems": [problem.to_dict() for problem in self.problems],
            "totalPages": self.total_pages,
            "processingTimeMs": self.processing_time_ms,
            "chunks": len(self.chunks),
            "rejectedEntries": self.rejected_entries,
            "parseFailures": self.parse_failures,
        }
