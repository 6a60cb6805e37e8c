from __future__ import annotations

import re
from typing import Iterable, List, Set

from card_pipeline.utils.types import CandidateProblem

_WHITESPACE = re.compile(r"\s+")


def normalize_problem_text(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip()).lower()


def remove_duplicate_problems(problems: Iterable[CandidateProblem]) -> List[CandidateProblem]:
    """Keep the first occurrence of each problem text, preserving order."""
    seen: Set[str] = set()
    unique: List[CandidateProblem] = []
    for problem in problems:
        key = normalize_problem_text(problem.problem_text)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(problem)
    return unique
