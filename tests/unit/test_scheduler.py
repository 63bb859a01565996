import pytest
from datetime import datetime, timedelta, timezone

from flashdeck.study import ReviewScheduler, CardReviewStats, apply_review

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _stats(difficulty, correct=2, wrong=1):
    return CardReviewStats(correct_count=correct, wrong_count=wrong, difficulty=difficulty, due_date=NOW, last_study_time=NOW - timedelta(days=2))


@pytest.mark.unit
def test_first_review_correct_seeds_easy_difficulty():
    s = ReviewScheduler().apply(None, True, now=NOW)
    assert (s.correct_count, s.wrong_count) == (1, 0)
    assert s.difficulty == pytest.approx(0.3)
    assert s.due_date == NOW + timedelta(days=3)
    assert s.last_study_time == NOW


@pytest.mark.unit
def test_first_review_wrong_seeds_hard_difficulty():
    s = ReviewScheduler().apply(None, False, now=NOW)
    assert (s.correct_count, s.wrong_count) == (0, 1)
    assert s.difficulty == pytest.approx(0.7)
    assert s.due_date == NOW + timedelta(days=1)


@pytest.mark.unit
def test_correct_answer_lowers_difficulty_and_counts():
    s = apply_review(_stats(0.5), True, now=NOW)
    assert s.difficulty == pytest.approx(0.4)
    assert (s.correct_count, s.wrong_count) == (3, 1)
    assert s.due_date == NOW + timedelta(days=3)


@pytest.mark.unit
def test_wrong_answer_raises_difficulty_and_counts():
    s = apply_review(_stats(0.5), False, now=NOW)
    assert s.difficulty == pytest.approx(0.6)
    assert (s.correct_count, s.wrong_count) == (2, 2)
    assert s.due_date == NOW + timedelta(days=1)


@pytest.mark.unit
def test_difficulty_is_clamped():
    assert apply_review(_stats(0.05), True, now=NOW).difficulty == 0.0
    assert apply_review(_stats(0.95), False, now=NOW).difficulty == 1.0
    assert apply_review(_stats(0.0), True, now=NOW).difficulty == 0.0
    assert apply_review(_stats(1.0), False, now=NOW).difficulty == 1.0


@pytest.mark.unit
def test_due_date_ignores_previous_schedule():
    prev = _stats(0.5)
    later = NOW + timedelta(days=10)
    assert apply_review(prev, True, now=later).due_date == later + timedelta(days=3)


@pytest.mark.unit
def test_defaults_to_current_time():
    before = datetime.now(timezone.utc)
    s = ReviewScheduler().apply(None, True)
    assert before <= s.last_study_time <= datetime.now(timezone.utc)


@pytest.mark.unit
def test_repeated_correct_answers_bottom_out_at_zero():
    s = ReviewScheduler().apply(None, True, now=NOW)
    for _ in range(20):
        s = apply_review(s, True, now=NOW)
    assert s.difficulty == 0.0
    assert s.correct_count == 21
