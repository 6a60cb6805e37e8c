import asyncio
import json

from card_pipeline.utils.types import Chunk, PageText, Parsed, ParseFailure, ProblemType
from card_pipeline.workflow.extraction import BulkProblemExtractor
from conftest import FakeLLMClient


def _fenced(data):
    return "```json\n" + json.dumps(data) + "\n```"


PAGES = [PageText(1, "1. What is 2 + 2?"), PageText(2, "2. Name the capital of France.")]


def test_extracts_valid_entries_and_reports_rejected(executor):
    response = _fenced(
        [
            {"problemText": "What is 2 + 2?", "answerText": "4", "problemType": "calculation", "confidence": 0.9, "pageNumber": 1},
            {"problemText": "Missing page"},
            {"problemText": "   ", "pageNumber": 2},
            {"problemText": "Name the capital of France.", "problemType": "weird", "confidence": 1.7, "pageNumber": 2},
        ]
    )
    llm = FakeLLMClient(generate=lambda prompt: response)

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract(PAGES))

    assert isinstance(result, Parsed)
    assert result.rejected == 2
    first, second = result.value
    assert (first.id, first.page_number, first.answer_text, first.problem_type) == ("bulk-0", 1, "4", ProblemType.CALCULATION)
    assert second.id == "bulk-1"
    assert second.answer_text is None
    assert second.problem_type == ProblemType.UNKNOWN
    assert second.confidence == 1.0
    assert "=== Page 1 ===" in llm.prompts[0]
    assert "=== Page 2 ===" in llm.prompts[0]


def test_missing_optional_fields_get_defaults(executor):
    llm = FakeLLMClient(generate=lambda prompt: '[{"problemText": "Define entropy.", "pageNumber": 3}]')

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract(PAGES))

    problem = result.value[0]
    assert problem.confidence == 0.5
    assert problem.explanation_text is None
    assert problem.needs_answer


def test_unparsable_output_is_a_parse_failure(executor):
    llm = FakeLLMClient(generate=lambda prompt: "Sorry, I cannot help with that.")

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract(PAGES))

    assert isinstance(result, ParseFailure)


def test_empty_document_skips_the_model(executor):
    llm = FakeLLMClient()

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract([]))

    assert result == Parsed(value=[])
    assert llm.prompts == []


def test_chunk_extraction_caps_confidence_at_chunk_confidence(executor):
    chunk = Chunk(chunk_id="c1", page_numbers=[4], text="=== Page 4 ===\nlong page", token_count=9000, confidence=0.8)
    llm = FakeLLMClient(generate=lambda prompt: '[{"problemText": "Q", "confidence": 0.95, "pageNumber": 4}]')

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract_chunk(chunk))

    assert result.value[0].id == "c1-0"
    assert result.value[0].chunk_id == "c1"
    assert result.value[0].confidence == 0.8


def test_non_numeric_confidence_rejects_only_that_entry(executor):
    response = '[{"problemText": "Q1", "pageNumber": 1, "confidence": [0.9]}, {"problemText": "Q2", "pageNumber": 1, "confidence": {"value": 1}}, {"problemText": "Q3", "pageNumber": 1}]'
    llm = FakeLLMClient(generate=lambda prompt: response)

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract(PAGES))

    assert isinstance(result, Parsed)
    assert [p.problem_text for p in result.value] == ["Q3"]
    assert result.rejected == 2


def test_numeric_answers_are_kept_as_text(executor):
    response = '[{"problemText": "2 + 2?", "pageNumber": 1, "answerText": 4, "explanationText": 2.5, "problemType": "calculation", "confidence": 0.9}]'
    llm = FakeLLMClient(generate=lambda prompt: response)

    result = asyncio.run(BulkProblemExtractor(llm, executor).extract(PAGES))

    assert result.rejected == 0
    problem = result.value[0]
    assert (problem.answer_text, problem.explanation_text) == ("4", "2.5")
    assert not problem.needs_answer
