from datetime import datetime, timedelta, UTC

import pytest

from polish_practice.srs import SRSCalculator


def _ids(records):
    return [record.concept_id for record in records]


def test_due_and_overdue_use_day_boundaries(store, make_progress, now):
    midnight = datetime(2024, 3, 15, tzinfo=UTC)
    store.progress.save_progress(make_progress("today", next_review=midnight))
    store.progress.save_progress(make_progress("yesterday", next_review=now - timedelta(days=1, hours=2)))
    store.progress.save_progress(make_progress("later_today", next_review=now - timedelta(hours=4)))
    store.progress.save_progress(
        make_progress("inactive", next_review=now - timedelta(days=5), is_active=False)
    )
    store.progress.save_progress(make_progress("other_user", user_id="u2", next_review=midnight))
    calc = SRSCalculator(store.progress)

    assert _ids(calc.get_concepts_due_for_review(now=now)) == ["yesterday", "today"]
    assert _ids(calc.get_overdue_concepts(now=now)) == ["yesterday"]
    assert _ids(calc.get_concepts_due_for_review("u2", now=now)) == ["other_user"]


def test_initialize_is_idempotent(store, now):
    calc = SRSCalculator(store.progress)

    first = calc.initialize_concept_progress("c1", now=now)
    store.progress.save_progress(first.model_copy(update={"mastery_level": 0.7}))
    second = calc.initialize_concept_progress("c1", now=now + timedelta(days=1))

    assert first.next_review == now
    assert first.easiness_factor == 2.5
    assert second.mastery_level == pytest.approx(0.7)
    assert second.next_review == now


def test_update_progress_applies_answers_in_sequence(store, now):
    calc = SRSCalculator(store.progress)

    after_correct = calc.update_concept_progress("c1", True, 3000, now=now)
    assert after_correct.total_attempts == 1
    assert after_correct.consecutive_correct == 1
    assert after_correct.success_rate == pytest.approx(1.0)
    assert after_correct.mastery_level == pytest.approx(0.1)
    assert after_correct.last_practiced == now
    assert after_correct.next_review == now + timedelta(days=1)

    later = now + timedelta(days=1)
    after_wrong = calc.update_concept_progress("c1", False, 20000, now=later)
    assert after_wrong.total_attempts == 2
    assert after_wrong.consecutive_correct == 0
    assert after_wrong.success_rate == pytest.approx(0.5)
    # 0.1 - 0.2 は 0 で下げ止まる
    assert after_wrong.mastery_level == 0.0
    assert after_wrong.times_incorrect == 1
    assert after_wrong.easiness_factor == pytest.approx(2.2)
    assert after_wrong.interval_days == 1

    stored = store.progress.get_progress("default", "c1")
    assert stored is not None
    assert stored.total_attempts == 2
    assert stored.next_review == later + timedelta(days=1)


def test_update_progress_for_explicit_user(store, now):
    calc = SRSCalculator(store.progress)

    calc.update_concept_progress("c1", True, 1000, user_id="learner-1", now=now)

    assert store.progress.get_progress("learner-1", "c1") is not None
    assert store.progress.get_progress("default", "c1") is None
