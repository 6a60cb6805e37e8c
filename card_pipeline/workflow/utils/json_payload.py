from __future__ import annotations

import json
import re
from typing import Any

from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import ParseFailure, Parsed, ParseResult

logger = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?[ \t]*\r?\n([\s\S]*?)```", re.IGNORECASE)
_WHITESPACE_CONTROL = re.compile(r"[\t\r\n]")
_OTHER_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_BRACKETS = {"array": ("[", "]"), "object": ("{", "}")}


def extract_json_payload(raw: str, *, container: str = "array", prefer_longest: bool = False) -> str:
    """Pull the JSON part out of free-form model output.

    Fenced code blocks win over everything else. With ``prefer_longest`` every
    fenced block is collected and the longest one is returned (models that
    emit several attempts tend to put the complete one last and longest);
    otherwise the first block is used. Without fences the substring between
    the first opening and the last closing bracket of ``container`` is returned.
    Falls back to the stripped input.
    """
    text = raw or ""
    fences = [match.group(1).strip() for match in _FENCE_PATTERN.finditer(text)]
    if fences:
        if prefer_longest:
            return max(fences, key=len)
        return fences[0]

    opening, closing = _BRACKETS[container]
    start = text.find(opening)
    end = text.rfind(closing)
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1]
    return text.strip()


def sanitize_json_text(text: str) -> str:
    """Strip control characters; tabs and newlines become spaces so words stay apart."""
    cleaned = _WHITESPACE_CONTROL.sub(" ", text)
    cleaned = _OTHER_CONTROL.sub("", cleaned)
    return cleaned.strip()


def normalize_smart_quotes(text: str) -> str:
    return text.translate(_SMART_QUOTES)


def preview(text: str, length: int = 200) -> str:
    snippet = (text or "")[:length]
    return snippet + ("…" if len(text or "") > length else "")


def parse_json_payload(
    raw: str,
    *,
    container: str = "array",
    prefer_longest: bool = False,
    sanitize: bool = False,
) -> ParseResult[Any]:
    """Extract and decode JSON from model output without raising.

    Returns ``Parsed`` holding the decoded value when it is of the requested
    container type, ``ParseFailure`` otherwise. With ``sanitize`` control
    characters are removed first and smart quotes are normalized on a second
    attempt when the first decode fails.
    """
    payload = extract_json_payload(raw, container=container, prefer_longest=prefer_longest)
    if not payload:
        return ParseFailure(reason="empty response", preview="")

    candidates = [payload]
    if sanitize:
        cleaned = sanitize_json_text(payload)
        candidates = [cleaned]
        quoted = normalize_smart_quotes(cleaned)
        if quoted != cleaned:
            candidates.append(quoted)

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        expected = list if container == "array" else dict
        if not isinstance(data, expected):
            return ParseFailure(reason=f"expected JSON {container}, got {type(data).__name__}", preview=preview(payload))
        return Parsed(value=data)

    logger.warning("JSON parse failed | error=%s preview=%s", last_error, preview(payload))
    return ParseFailure(reason=f"invalid JSON: {last_error}", preview=preview(payload))


__all__ = ["extract_json_payload", "sanitize_json_text", "normalize_smart_quotes", "parse_json_payload", "preview"]
