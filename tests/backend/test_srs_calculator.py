from datetime import timedelta

import pytest

from polish_practice.errors import SRSCalculationError
from polish_practice.srs import SRSCalculator, end_of_yesterday, start_of_day


def test_first_correct_answer_schedules_next_day(make_progress, now):
    calc = SRSCalculator()
    result = calc.calculate_next_review(make_progress("c1"), True, response_time=3000, now=now)

    assert result.new_interval_days == 1
    assert result.next_review == now + timedelta(days=1)
    # 速い回答のボーナスは上限 2.5 で頭打ち
    assert result.new_easiness_factor == pytest.approx(2.5)
    assert result.mastery_level_change == pytest.approx(0.1)


def test_second_correct_answer_jumps_to_six_days(make_progress, now):
    progress = make_progress("c1", consecutive_correct=1, interval_days=1)

    result = SRSCalculator().calculate_next_review(progress, True, response_time=8000, now=now)

    assert result.new_interval_days == 6
    assert result.next_review == now + timedelta(days=6)


def test_later_correct_answers_multiply_interval_rounding_half_up(make_progress, now):
    progress = make_progress("c1", consecutive_correct=2, interval_days=3, easiness_factor=2.5)

    result = SRSCalculator().calculate_next_review(progress, True, response_time=8000, now=now)

    assert result.new_interval_days == 8


def test_interval_is_capped_at_one_year(make_progress, now):
    progress = make_progress("c1", consecutive_correct=5, interval_days=200, easiness_factor=2.5)

    result = SRSCalculator().calculate_next_review(progress, True, response_time=8000, now=now)

    assert result.new_interval_days == 365


def test_difficulty_rating_adjusts_easiness(make_progress, now):
    progress = make_progress("c1", easiness_factor=2.0)
    calc = SRSCalculator()

    # 1 = hard, 5 = easy
    hard = calc.calculate_next_review(progress, True, response_time=8000, difficulty_rating=1, now=now)
    easy = calc.calculate_next_review(progress, True, response_time=8000, difficulty_rating=5, now=now)

    assert hard.new_easiness_factor == pytest.approx(2.1)
    assert easy.new_easiness_factor == pytest.approx(1.9)


def test_wrong_answer_resets_interval_and_lowers_easiness(make_progress, now):
    progress = make_progress("c1", consecutive_correct=3, interval_days=15, easiness_factor=2.5)
    calc = SRSCalculator()

    quick = calc.calculate_next_review(progress, False, response_time=4000, now=now)
    slow = calc.calculate_next_review(progress, False, response_time=20000, now=now)

    assert quick.new_interval_days == 1
    assert quick.new_easiness_factor == pytest.approx(2.3)
    assert quick.mastery_level_change == pytest.approx(-0.2)
    assert slow.new_easiness_factor == pytest.approx(2.2)


def test_easiness_never_drops_below_floor(make_progress, now):
    progress = make_progress("c1", easiness_factor=1.4)

    result = SRSCalculator().calculate_next_review(progress, False, response_time=20000, now=now)

    assert result.new_easiness_factor == pytest.approx(1.3)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"response_time": -1},
        {"response_time": 100, "difficulty_rating": 0},
        {"response_time": 100, "difficulty_rating": 6},
    ],
)
def test_invalid_inputs_raise(make_progress, now, kwargs):
    with pytest.raises(SRSCalculationError):
        SRSCalculator().calculate_next_review(make_progress("c1"), True, now=now, **kwargs)


def test_priority_combines_overdue_days_and_weakness(make_progress, now):
    progress = make_progress(
        "c1",
        next_review=now - timedelta(days=3),
        mastery_level=0.5,
        success_rate=0.5,
        easiness_factor=2.0,
    )

    # 3日超過*2 + (1-0.5)*10 + (1-0.5)*5 + (2.5-2.0)*2
    assert SRSCalculator().calculate_priority(progress, now=now) == pytest.approx(14.5)


def test_priority_counts_only_whole_overdue_days(make_progress, now):
    progress = make_progress(
        "c1",
        next_review=now - timedelta(days=1, hours=12),
        mastery_level=1.0,
        success_rate=1.0,
    )

    assert SRSCalculator().calculate_priority(progress, now=now) == pytest.approx(2.0)


def test_priority_of_mastered_future_concept_is_zero(make_progress, now):
    progress = make_progress(
        "c1", next_review=now + timedelta(days=2), mastery_level=1.0, success_rate=1.0
    )

    assert SRSCalculator().calculate_priority(progress, now=now) == 0.0


def test_day_boundaries_are_utc_midnight(now):
    assert start_of_day(now).isoformat() == "2024-03-15T00:00:00+00:00"
    assert end_of_yesterday(now) == start_of_day(now) - timedelta(milliseconds=1)
