from datetime import timedelta

import pytest

from polish_practice.practice.engine import ConceptPracticeEngine
from polish_practice.practice.ranking import (
    NO_HISTORY_WEAKNESS,
    build_due_queue,
    rank_concepts_by_weakness,
    weakness_score,
)


def test_weakness_score_formula(make_progress):
    progress = make_progress("c1", mastery_level=0.4, success_rate=0.5, total_attempts=4)

    # (0.6*100)*0.5 + (0.5*100)*0.3 + min(2*10, 100)*0.2
    assert weakness_score(progress) == pytest.approx(30 + 15 + 4)
    assert weakness_score(None) == NO_HISTORY_WEAKNESS


def test_ranking_puts_unpractised_concepts_first(make_concept, make_progress, now):
    concepts = [
        make_concept("strong", name="Strong"),
        make_concept("new-b", name="B new"),
        make_concept("weak", name="Weak"),
        make_concept("new-a", name="A new"),
    ]
    progress = {
        "strong": make_progress(
            "strong",
            mastery_level=0.9,
            success_rate=1.0,
            next_review=now + timedelta(days=3),
            last_practiced=now - timedelta(days=2, hours=5),
        ),
        "weak": make_progress(
            "weak", mastery_level=0.1, success_rate=0.2, next_review=now - timedelta(hours=1)
        ),
    }

    ranking = rank_concepts_by_weakness(concepts, progress, now)

    assert [e.concept.id for e in ranking.entries] == ["new-a", "new-b", "weak", "strong"]
    weak = ranking.entries[2]
    assert weak.is_overdue is True
    assert weak.days_since_review == 999
    assert ranking.entries[3].days_since_review == 2
    assert ranking.entries[3].is_overdue is False
    assert ranking.summary.total_concepts == 4
    assert ranking.summary.concepts_with_progress == 2
    assert ranking.summary.concepts_without_progress == 2


def test_due_queue_deduplicates_and_drops_missing_concepts(make_concept, make_progress, now):
    overdue = make_progress("late", next_review=now - timedelta(days=4))
    due = [
        overdue,
        make_progress("today", next_review=now - timedelta(hours=12), mastery_level=0.9),
        make_progress("orphan", next_review=now - timedelta(hours=12)),
    ]
    concepts = [make_concept("late"), make_concept("today")]

    queue = build_due_queue(due, [overdue], concepts, now)

    assert queue.total_due == 3
    assert queue.overdue_concepts == 1
    assert queue.is_due_queue_cleared is False
    assert [e.concept.id for e in queue.entries] == ["late", "today"]
    assert queue.entries[0].is_overdue is True
    assert queue.entries[1].is_overdue is False
    assert queue.average_priority == pytest.approx(
        sum(e.priority for e in queue.entries) / 2
    )


def test_empty_due_queue_is_cleared(now):
    queue = build_due_queue([], [], [], now)

    assert queue.is_due_queue_cleared is True
    assert queue.total_due == 0
    assert queue.average_priority == 0.0


def test_engine_views_read_from_store(store, make_concept, make_progress, now):
    store.concepts.save_concept(make_concept("g1", name="Genitive"))
    store.concepts.save_concept(make_concept("v1", name="Kot", category="vocabulary"))
    store.progress.save_progress(make_progress("g1", next_review=now - timedelta(days=2)))
    engine = ConceptPracticeEngine(store)

    ranking = engine.get_concepts_by_weakness(category="vocabulary", now=now)
    queue = engine.get_due_queue(now=now)

    assert [e.concept.id for e in ranking.entries] == ["v1"]
    assert [e.concept.id for e in queue.entries] == ["g1"]
    assert queue.overdue_concepts == 1
