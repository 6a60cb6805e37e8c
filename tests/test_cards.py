import pytest

from card_pipeline.utils.types import AlignedEntry, CandidateProblem
from card_pipeline.workflow.cards import ANSWER_PLACEHOLDER, CardGenerator, build_back_text, text_to_structured_doc


def _problem(confidence, answer="A", explanation=None):
    return CandidateProblem(id="bulk-0", problem_text="Q?", page_number=2, chunk_id="bulk", answer_text=answer, explanation_text=explanation, confidence=confidence)


@pytest.mark.parametrize("confidence, kept", [(0.3, False), (0.31, True), (0.1, False), (1.0, True)])
def test_confidence_threshold_is_exclusive(confidence, kept):
    cards = CardGenerator().from_problems([_problem(confidence)], source_ref="doc.pdf")

    assert bool(cards) is kept


def test_back_text_layout():
    assert build_back_text("42", None) == "## Answer\n42"
    assert build_back_text("42", "Because.") == "## Answer\n42\n\n## Explanation\nBecause."
    assert build_back_text(None, "  ") == f"## Answer\n{ANSWER_PLACEHOLDER}"


def test_structured_doc_has_headings_and_paragraphs():
    doc = text_to_structured_doc("## Answer\n42\n\nsecond line")

    assert doc["type"] == "doc"
    assert [node["type"] for node in doc["content"]] == ["heading", "paragraph", "paragraph"]
    assert doc["content"][0]["attrs"] == {"level": 2}
    assert doc["content"][1]["content"][0]["text"] == "42"


def test_card_from_problem_carries_provenance():
    card = CardGenerator(processing_model="gpt-test").from_problems([_problem(0.8, explanation="why")], source_ref="doc.pdf")[0]
    payload = card.to_dict()

    assert payload["source_ref"] == "doc.pdf"
    assert payload["source_page"] == 2
    assert payload["metadata"]["processing_type"] == "enhanced_single_pdf"
    assert payload["metadata"]["processing_model"] == "gpt-test"
    assert payload["metadata"]["chunk_id"] == "bulk"
    assert payload["metadata"]["explanation_text"] == "why"
    assert payload["front_content"]["content"][0]["content"][0]["text"] == "Q?"


def test_aligned_cards_use_fixed_confidence():
    entries = [AlignedEntry(page_number=3, question_text="Q3", answer_text="B", explanation_text="since"), AlignedEntry(page_number=4, question_text=" ")]

    cards = CardGenerator().from_aligned(entries, source_ref="exam.pdf")

    assert len(cards) == 1
    metadata = cards[0].metadata
    assert metadata.confidence_score == 0.95
    assert metadata.processing_type == "dual_pdf_ocr"
    assert metadata.problem_id.startswith("dual-3-")
