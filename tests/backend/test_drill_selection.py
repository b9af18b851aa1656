import pytest

from polish_practice.errors import ConceptSelectionError, ValidationError
from polish_practice.models.concept import ConceptGroup, CourseConcept
from polish_practice.practice.engine import ConceptPracticeEngine


@pytest.fixture
def engine(store):
    return ConceptPracticeEngine(store)


@pytest.fixture
def weak_history(store, make_concept, make_progress):
    for cid in ("w1", "w2", "w3", "strong", "retired"):
        store.concepts.save_concept(make_concept(cid))
    store.progress.save_progress(make_progress("w1", mastery_level=0.1, success_rate=0.2))
    store.progress.save_progress(make_progress("w2", mastery_level=0.3, success_rate=0.9))
    # 習熟度・正答率は高いが不正解が3回ある
    store.progress.save_progress(
        make_progress("w3", mastery_level=0.9, success_rate=0.7, total_attempts=10)
    )
    store.progress.save_progress(
        make_progress("strong", mastery_level=0.9, success_rate=0.9, total_attempts=10)
    )
    store.progress.save_progress(
        make_progress("retired", mastery_level=0.0, is_active=False)
    )
    return store


def test_weakness_drill_sorts_weakest_first(engine, weak_history):
    assert engine.get_drill_concepts_by_weakness(max_concepts=0) == ["w1", "w2", "w3"]
    assert engine.get_drill_concepts_by_weakness(max_concepts=2) == ["w1", "w2"]


def test_select_weakness_drill_gives_equal_priorities(engine, weak_history):
    selection = engine.select_drill_concepts("weakness")

    assert selection.concept_ids == ["w1", "w2", "w3"]
    assert selection.priorities == {"w1": 1.0, "w2": 1.0, "w3": 1.0}
    assert selection.rationale == "Drill session focusing on concepts that need more practice"


def test_weakness_drill_without_history_is_empty(engine):
    selection = engine.select_drill_concepts("weakness")

    assert selection.concepts == []
    assert selection.rationale == "No concepts found for drill mode: weakness"


def test_course_drill(engine, store, make_concept):
    for cid in ("a", "b"):
        store.concepts.save_concept(make_concept(cid))
    store.courses.link_concept(CourseConcept(course_id=3, concept_id="a", confidence=0.4))
    store.courses.link_concept(CourseConcept(course_id=3, concept_id="b", confidence=0.8))
    store.courses.link_concept(
        CourseConcept(course_id=3, concept_id="gone", confidence=0.9, is_active=False)
    )

    selection = engine.select_drill_concepts("course", course_id=3)

    assert selection.concept_ids == ["b", "a"]
    assert selection.rationale == "Drill session for Course 3"


def test_multi_course_drill_merges_by_confidence(engine, store):
    store.courses.link_concept(CourseConcept(course_id=1, concept_id="a", confidence=0.5))
    store.courses.link_concept(CourseConcept(course_id=2, concept_id="b", confidence=0.9))
    store.courses.link_concept(CourseConcept(course_id=2, concept_id="a", confidence=0.7))

    assert engine.get_drill_concepts_by_courses([1, 2]) == ["b", "a"]
    assert engine.get_drill_concepts_by_courses([1, 2], max_concepts=1) == ["b"]


def test_group_drills(engine, store, make_concept):
    for cid in ("a", "b", "c"):
        store.concepts.save_concept(make_concept(cid))
    store.concepts.save_concept(make_concept("off", is_active=False))
    store.concepts.save_group(ConceptGroup(id="g1", name="Motion", member_concepts=["a", "b", "off"]))
    store.concepts.save_group(ConceptGroup(id="g2", name="Aspect", member_concepts=["b", "c"]))
    store.concepts.save_group(
        ConceptGroup(id="g3", name="Archived", member_concepts=["a"], is_active=False)
    )

    single = engine.select_drill_concepts("group", group_id="g1")
    multi = engine.select_drill_concepts("groups", group_ids=["g1", "g2"])

    assert single.concept_ids == ["a", "b"]
    assert single.rationale == "Drill session for group: Motion"
    assert multi.concept_ids == ["a", "b", "c"]
    assert multi.rationale == "Drill session for groups: Motion, Aspect"
    assert engine.get_drill_concepts_by_groups(["g1", "g2"], max_concepts=2) == ["a", "b"]
    assert engine.get_concepts_in_group("g3") == []
    assert engine.get_concepts_in_group("missing") == []


@pytest.mark.parametrize(
    ("drill_type", "kwargs"),
    [("course", {}), ("group", {}), ("groups", {"group_ids": []})],
)
def test_drill_requires_its_target(engine, drill_type, kwargs):
    with pytest.raises(ConceptSelectionError):
        engine.select_drill_concepts(drill_type, **kwargs)


def test_unknown_drill_type_is_rejected(engine):
    with pytest.raises(ValidationError) as excinfo:
        engine.select_drill_concepts("random")

    assert excinfo.value.field == "drill_type"
