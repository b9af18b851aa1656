import json
from datetime import UTC, datetime

import pytest

from polish_practice.config import settings
from polish_practice.errors import ConceptExtractionError
from polish_practice.flows.concept_extraction import (
    ConceptExtractionFlow,
    merge_extracted_concepts,
    normalize_extracted_concept,
)
from polish_practice.models.common import ConceptCategory, ExtractionStatus, QuestionLevel
from polish_practice.models.concept import Course
from polish_practice.models.extraction import ExtractedConcept, ReviewDecision
from tests.llm_stubs import StubLLM

EXTRACTION = json.dumps(
    {
        "concepts": [
            {
                "name": "Genitive after negation",
                "category": "grammar",
                "description": "Negated verbs take the genitive.",
                "examples": ["Nie mam kota."],
                "sourceContent": "notes",
                "confidence": 0.9,
                "suggestedDifficulty": "a2",
            },
            {"name": "kot", "category": "Vocabulary", "confidence": "high"},
            {"name": "   ", "category": "grammar"},
            "not an object",
        ]
    },
    ensure_ascii=False,
)


@pytest.fixture
def course(store):
    store.courses.save_course(
        Course(
            course_id=12,
            date=datetime(2024, 3, 1, tzinfo=UTC),
            keywords=["negacja", "dopełniacz"],
            notes="Po negacji używamy dopełniacza.",
            practice="Nie mam kota. Nie widzę psa.",
            new_words=["kot", "pies"],
        )
    )
    return store


def test_normalize_defaults_unknown_values():
    concept = normalize_extracted_concept(
        {"name": " Aspekt ", "category": "idiom", "confidence": 3, "difficulty": "Z9"}
    )

    assert concept.name == "Aspekt"
    assert concept.category is ConceptCategory.grammar
    assert concept.confidence == 1.0
    assert concept.suggested_difficulty is QuestionLevel.B1
    assert normalize_extracted_concept({"name": ""}) is None


def test_extract_from_course_builds_review(course, make_concept):
    course.concepts.save_concept(make_concept("existing", name="KOT", category="vocabulary"))
    llm = StubLLM(EXTRACTION)

    review = ConceptExtractionFlow(course, llm=llm).extract_from_course(12)

    assert review.course_name == "Course 12 - negacja, dopełniacz"
    assert [c.name for c in review.extracted_concepts] == ["Genitive after negation", "kot"]
    first, second = review.extracted_concepts
    assert first.suggested_difficulty is QuestionLevel.A2
    assert second.category is ConceptCategory.vocabulary
    assert second.confidence == 0.5
    assert review.total_extracted == 2
    assert review.high_confidence_count == 1
    assert [(d.existing_id, d.duplicate_type) for d in review.duplicates] == [
        ("existing", "case_insensitive")
    ]
    assert "Nie mam kota. Nie widzę psa." in llm.prompts[0]

    stored = course.courses.get_course(12)
    assert stored.extraction_status is ExtractionStatus.completed
    assert stored.extracted_concepts == ["Genitive after negation", "kot"]
    assert stored.extraction_date is not None


def test_extraction_requires_complete_course(store):
    store.courses.save_course(Course(course_id=3, keywords=["x"], notes="", practice="p"))
    flow = ConceptExtractionFlow(store, llm=StubLLM(EXTRACTION))

    with pytest.raises(ConceptExtractionError, match="missing required fields"):
        flow.extract_from_course(3)
    with pytest.raises(ConceptExtractionError, match="Course with ID 99 not found"):
        flow.extract_from_course(99)


@pytest.mark.parametrize("raw", ["no json here", json.dumps({"items": []})])
def test_extraction_rejects_malformed_llm_output(course, raw):
    with pytest.raises(ConceptExtractionError):
        ConceptExtractionFlow(course, llm=StubLLM(raw)).extract_from_course(12)

    assert course.courses.get_course(12).extraction_status is ExtractionStatus.pending


def test_apply_review_decisions(course, make_concept):
    course.concepts.save_concept(make_concept("pies-id", name="pies", category="vocabulary"))
    flow = ConceptExtractionFlow(course, llm=StubLLM())
    genitive = ExtractedConcept(name="Genitive after negation", confidence=0.9)
    decisions = [
        ReviewDecision(action="approve", extracted_concept=genitive),
        ReviewDecision(
            action="edit",
            extracted_concept=ExtractedConcept(name="kot", category="vocabulary"),
            edited_fields={"name": "kot (animal)", "suggested_difficulty": "A1"},
        ),
        ReviewDecision(
            action="link",
            extracted_concept=ExtractedConcept(name="pies", category="vocabulary", confidence=0.7),
            target_concept_id="pies-id",
        ),
        ReviewDecision(action="reject", extracted_concept=ExtractedConcept(name="noise")),
        ReviewDecision(
            action="link",
            extracted_concept=ExtractedConcept(name="ghost"),
            target_concept_id="missing",
        ),
        # 先に承認した概念と同名なので重複エラー
        ReviewDecision(action="approve", extracted_concept=genitive),
    ]

    outcome = flow.apply_review_decisions(12, decisions)

    assert len(outcome.created) == 2
    assert outcome.linked == ["pies-id"]
    assert outcome.rejected == 1
    assert outcome.errors[0] == "Concept with ID missing not found for linking"
    assert outcome.errors[1].startswith('Error processing concept "Genitive after negation"')
    assert outcome.success is False

    created = course.concepts.get_concepts_by_ids(outcome.created)
    assert [c.name for c in created] == ["Genitive after negation", "kot (animal)"]
    assert created[1].difficulty is QuestionLevel.A1
    assert all(c.created_from == ["12"] for c in created)
    assert course.concepts.get_concept("pies-id").created_from == ["12"]
    links = {link.concept_id: link for link in course.courses.list_course_concepts(12)}
    assert set(links) == {*outcome.created, "pies-id"}
    assert links["pies-id"].confidence == 0.7
    assert course.courses.get_course(12).extraction_status is ExtractionStatus.reviewed


def test_apply_review_decisions_requires_course(store):
    with pytest.raises(ConceptExtractionError):
        ConceptExtractionFlow(store, llm=StubLLM()).apply_review_decisions(5, [])


def _concepts(*items: dict) -> str:
    return json.dumps({"concepts": list(items)}, ensure_ascii=False)


@pytest.fixture
def long_course(store, monkeypatch):
    monkeypatch.setattr(settings, "extraction_chunk_max_chars", 60)
    monkeypatch.setattr(settings, "extraction_chunk_min_chars", 20)
    monkeypatch.setattr(settings, "extraction_chunk_overlap_chars", 0)
    store.courses.save_course(
        Course(
            course_id=21,
            keywords=["negacja", "dopełniacz"],
            new_words=["kot"],
            notes="Po negacji używamy dopełniacza.",
            practice="Nie mam kota. Nie widzę psa. Nie ma domu.",
        )
    )
    return store


def test_long_course_is_extracted_chunk_by_chunk(long_course):
    llm = StubLLM(
        _concepts({"name": "Negation", "confidence": 0.6}),
        _concepts(
            {"name": "negation", "confidence": 0.9, "description": "from notes"},
            {"name": "kot", "category": "vocabulary"},
        ),
        _concepts({"name": "Genitive", "confidence": 0.7}),
    )

    review = ConceptExtractionFlow(long_course, llm=llm).extract_from_course(21)

    assert len(llm.prompts) == 3
    assert "part 1 of 3" in llm.prompts[0]
    assert "Keywords and new words:\ndopełniacz, kot, negacja" in llm.prompts[0]
    assert "Notes:\nPo negacji używamy dopełniacza." in llm.prompts[1]
    assert "Practice:\nNie mam kota." in llm.prompts[2]
    # 同名・同カテゴリは信頼度の高い方を最初の位置に残す
    assert [c.name for c in review.extracted_concepts] == ["negation", "kot", "Genitive"]
    assert review.extracted_concepts[0].description == "from notes"
    assert review.total_extracted == 3
    assert review.high_confidence_count == 1
    assert long_course.courses.get_course(21).extracted_concepts == ["negation", "kot", "Genitive"]


def test_failed_chunk_aborts_extraction(long_course):
    llm = StubLLM(_concepts({"name": "Negation"}), "not json")

    with pytest.raises(ConceptExtractionError) as excinfo:
        ConceptExtractionFlow(long_course, llm=llm).extract_from_course(21)

    assert excinfo.value.details["part"] == "notes:2"
    assert long_course.courses.get_course(21).extraction_status is ExtractionStatus.pending


def test_merge_keeps_categories_apart():
    merged = merge_extracted_concepts(
        [
            ExtractedConcept(name="Dom", category="vocabulary", confidence=0.4),
            ExtractedConcept(name="dom", category="grammar", confidence=0.9),
            ExtractedConcept(name=" DOM ", category="vocabulary", confidence=0.8),
        ]
    )

    assert [(c.name, c.category, c.confidence) for c in merged] == [
        (" DOM ", ConceptCategory.vocabulary, 0.8),
        ("dom", ConceptCategory.grammar, 0.9),
    ]
