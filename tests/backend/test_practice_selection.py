from datetime import UTC, datetime, timedelta

import pytest

from polish_practice.models.common import QuestionLevel, QuestionType
from polish_practice.models.concept import ConceptGroup, Course, CourseConcept
from polish_practice.models.session import PracticeSession
from polish_practice.practice.engine import (
    ConceptPracticeEngine,
    detect_question_type,
    infer_difficulty,
)

MIDNIGHT = datetime(2024, 3, 15, tzinfo=UTC)


@pytest.fixture
def engine(store):
    return ConceptPracticeEngine(store)


@pytest.fixture
def seeded(store, make_concept, make_progress, now):
    for cid, name in (("c1", "Genitive"), ("c2", "Locative"), ("c3", "Aspect")):
        store.concepts.save_concept(make_concept(cid, name=name))
    store.progress.save_progress(
        make_progress("c1", next_review=now - timedelta(days=3), mastery_level=0.2)
    )
    store.progress.save_progress(
        make_progress("c2", next_review=MIDNIGHT, mastery_level=0.8, success_rate=0.9)
    )
    store.progress.save_progress(make_progress("c3", next_review=now + timedelta(days=4)))
    return store


def test_select_orders_by_priority_and_explains_choice(engine, seeded, now):
    selection = engine.select_practice_concepts(now=now)

    assert selection.concept_ids == ["c1", "c2"]
    assert selection.priorities["c1"] > selection.priorities["c2"]
    assert selection.rationale == (
        "Selected 1 overdue concept, 1 concept due today, focusing on 1 concept "
        "that need more practice for optimal learning (2 individual concepts)"
    )
    assert [c.id for c in selection.ungrouped_concepts] == ["c1", "c2"]


def test_select_respects_max_concepts(engine, seeded, now):
    selection = engine.select_practice_concepts(max_concepts=1, now=now)

    assert selection.concept_ids == ["c1"]
    assert set(selection.priorities) == {"c1"}


def test_select_mentions_groups_in_rationale(engine, seeded, now):
    seeded.concepts.save_group(
        ConceptGroup(id="g1", name="Cases", member_concepts=["c1", "c2"], level=2)
    )
    seeded.concepts.save_group(
        ConceptGroup(id="g2", name="Retired", member_concepts=["c1"], is_active=False)
    )

    selection = engine.select_practice_concepts(now=now)

    assert [g.id for g in selection.groups] == ["g1"]
    assert selection.ungrouped_concepts == []
    assert selection.rationale.endswith("for optimal learning (organized by Cases)")


def test_new_user_starts_with_a1_concepts(engine, store, make_concept, now):
    store.concepts.save_concept(make_concept("b", name="Być", difficulty="A1"))
    store.concepts.save_concept(make_concept("a", name="Alfabet", difficulty="A1"))
    store.concepts.save_concept(make_concept("x", name="Aspekt", difficulty="B1"))

    selection = engine.select_practice_concepts(now=now)

    assert selection.concept_ids == ["a", "b"]
    assert selection.rationale == (
        "Starting with fundamental A1-level concepts to build your foundation"
    )
    assert store.progress.get_progress("default", "a") is not None
    assert store.progress.get_progress("default", "x") is None


def test_new_user_without_a1_concepts_uses_any_concepts(engine, store, make_concept, now):
    store.concepts.save_concept(make_concept("x", name="Aspekt", difficulty="B1"))
    store.concepts.save_concept(make_concept("y", name="Inactive", is_active=False))

    selection = engine.select_practice_concepts(now=now)

    assert selection.concept_ids == ["x"]
    assert selection.rationale == (
        "Starting with available concepts to begin your learning journey"
    )


def test_course_selection_uses_extraction_confidence(engine, store, make_concept):
    store.concepts.save_concept(make_concept("c1"))
    store.concepts.save_concept(make_concept("c2"))
    store.courses.save_course(Course(course_id=7, date=datetime(2024, 2, 1, tzinfo=UTC)))
    store.courses.link_concept(CourseConcept(course_id=7, concept_id="c1", confidence=0.6))
    store.courses.link_concept(CourseConcept(course_id=7, concept_id="c2", confidence=0.9))

    selection = engine.select_concepts_from_course(7)

    assert selection.concept_ids == ["c2", "c1"]
    assert selection.priorities == {"c2": 0.9, "c1": 0.6}
    assert selection.rationale == (
        "Practice session focused on concepts from new course from 2024-02-01"
    )


def test_course_selection_without_links(engine):
    selection = engine.select_concepts_from_course(99)

    assert selection.concepts == []
    assert selection.rationale == "No concepts have been extracted from course 99 yet"


def test_practice_stats(engine, seeded, make_question, now):
    seeded.progress.save_progress(
        seeded.progress.get_progress("default", "c2").model_copy(
            update={"last_practiced": now - timedelta(days=2)}
        )
    )
    seeded.questions.save_question(make_question("q1", ["c1"]))
    seeded.sessions.save_session(
        PracticeSession(session_id="s-recent", started_at=now - timedelta(days=1))
    )
    seeded.sessions.save_session(
        PracticeSession(session_id="s-old", started_at=now - timedelta(days=10))
    )

    stats = engine.get_practice_stats(now=now)

    assert stats.total_concepts == 3
    assert stats.due_concepts == 2
    assert stats.overdue_concepts == 1
    assert stats.concepts_with_progress == 3
    assert stats.average_mastery == pytest.approx((0.2 + 0.8 + 0.0) / 3)
    assert stats.question_bank_size == 1
    assert stats.recent_activity.practice_sessions_this_week == 1
    assert stats.recent_activity.concepts_practiced_this_week == 1
    assert stats.recent_activity.average_accuracy == pytest.approx(0.9)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Translate into Polish: I am tired.", QuestionType.translation_en),
        ("Przetłumacz: Jestem zmęczony.", QuestionType.translation_pl),
        ("Uzupełnij: Nie mam ___ .", QuestionType.basic_cloze),
        ("Complete: Idę do ___ i ___ .", QuestionType.multi_cloze),
        ("Choose the right word: a) kot b) kota", QuestionType.vocab_choice),
        ("Conjugate the verb 'iść' in the present tense.", QuestionType.case_transform),
        ("Arrange the words: kawę / piję / rano", QuestionType.word_arrangement),
        ("Rewrite the sentence in the past tense.", QuestionType.sentence_transform),
        ("Describe a Polish Christmas tradition.", QuestionType.cultural_context),
        ("Jak się masz?", QuestionType.q_a),
    ],
)
def test_detect_question_type(text, expected):
    assert detect_question_type(text) is expected


def test_infer_difficulty_picks_highest_level(make_concept):
    concepts = [make_concept("a", difficulty="A2"), make_concept("b", difficulty="B2")]

    assert infer_difficulty(concepts) is QuestionLevel.B2
    assert infer_difficulty([]) is QuestionLevel.A1
