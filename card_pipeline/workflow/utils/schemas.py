from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from card_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _clamp_confidence(value: Any) -> float:
    if value is None:
        return 0.5
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"confidence must be a number, got {type(value).__name__}") from exc
    return max(0.0, min(1.0, number))


class _ModelOutput(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, coerce_numbers_to_str=True)


class ProblemItem(_ModelOutput):
    """One extracted problem as returned by the model."""

    problemText: str = Field(min_length=1)
    pageNumber: StrictInt
    answerText: Optional[str] = None
    explanationText: Optional[str] = None
    problemType: Optional[str] = None
    confidence: float = 0.5

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        return _clamp_confidence(value)


class EnrichmentItem(_ModelOutput):
    answerText: Optional[str] = None
    explanationText: Optional[str] = None
    confidence: float = 0.5

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        return _clamp_confidence(value)


class OcrPageItem(_ModelOutput):
    pageNumber: StrictInt
    extractedText: str = Field(min_length=1)


class AlignedItem(_ModelOutput):
    pageNumber: StrictInt
    questionText: str = Field(min_length=1)
    answerText: Optional[str] = ""
    explanationText: Optional[str] = ""


def validate_items(items: Iterable[Any], model: Type[M], *, context: str = "model output") -> Tuple[List[M], int]:
    """Validate each raw entry against ``model``; returns the valid ones and the rejected count."""
    valid: List[M] = []
    rejected = 0
    for index, item in enumerate(items):
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            rejected += 1
            logger.warning("Rejected entry | context=%s index=%s errors=%s", context, index, exc.errors(include_url=False))
    return valid, rejected


__all__ = ["ProblemItem", "EnrichmentItem", "OcrPageItem", "AlignedItem", "validate_items"]
