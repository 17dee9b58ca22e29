import random
from datetime import timedelta
from types import SimpleNamespace

import pytest

from review_engine.config import Settings
from review_engine.models.feedback import ReviewFeedback
from review_engine.services.policy import (
    PolicyParameters,
    SpacedRepetitionPolicy,
    round_half_up,
)

from tests.conftest import T0


def state(interval=1, ease=2.5, failures=0):
    return SimpleNamespace(interval_days=interval, ease_factor=ease, consecutive_failures=failures)


@pytest.fixture
def policy():
    return SpacedRepetitionPolicy()


def test_good_multiplies_interval_by_ease(policy):
    """GOOD on a 6 day interval at ease 2.5 gives 15 days, ease unchanged."""
    nxt = policy.next_state(state(6, 2.5), ReviewFeedback.GOOD, T0)
    assert nxt.interval_days == 15
    assert nxt.ease_factor == 2.5
    assert nxt.next_review_at == T0 + timedelta(days=15)
    assert nxt.consecutive_failures == 0


def test_again_resets_interval_and_lowers_ease(policy):
    nxt = policy.next_state(state(10, 2.5, failures=1), ReviewFeedback.AGAIN, T0)
    assert nxt.interval_days == 1
    assert nxt.ease_factor == 2.3
    assert nxt.consecutive_failures == 2
    assert nxt.next_review_at == T0 + timedelta(days=1)


def test_again_never_drops_ease_below_floor(policy):
    nxt = policy.next_state(state(3, 1.1), ReviewFeedback.AGAIN, T0)
    assert nxt.ease_factor == 1.0


def test_hard_lowers_ease_before_multiplying(policy):
    nxt = policy.next_state(state(10, 2.5, failures=2), ReviewFeedback.HARD, T0)
    assert nxt.ease_factor == 2.35
    assert nxt.interval_days == 24  # 23.5 rounds half up
    assert nxt.consecutive_failures == 0


def test_easy_caps_ease_at_ceiling(policy):
    nxt = policy.next_state(state(2, 4.95), ReviewFeedback.EASY, T0)
    assert nxt.ease_factor == 5.0
    assert nxt.interval_days == 10


def test_easy_always_grows_until_cap(policy):
    current = state(1, 1.0)
    previous = current.interval_days
    for _ in range(60):
        nxt = policy.next_state(current, ReviewFeedback.EASY, T0)
        if previous < 365:
            assert nxt.interval_days > previous
        else:
            assert nxt.interval_days == 365
        previous = nxt.interval_days
        current = state(nxt.interval_days, nxt.ease_factor)
    assert previous == 365


def test_bounds_hold_for_any_feedback_sequence(policy):
    rng = random.Random(7)
    current = state()
    for _ in range(2000):
        feedback = rng.choice(list(ReviewFeedback))
        nxt = policy.next_state(current, feedback, T0)
        assert 1.0 <= nxt.ease_factor <= 5.0
        assert 1 <= nxt.interval_days <= 365
        current = state(nxt.interval_days, nxt.ease_factor, nxt.consecutive_failures)


@pytest.mark.parametrize(
    "feedback, interval, ease, failures",
    [
        (ReviewFeedback.AGAIN, 1, 2.3, 1),
        (ReviewFeedback.HARD, 1, 2.35, 0),
        (ReviewFeedback.GOOD, 1, 2.5, 0),
        (ReviewFeedback.EASY, 4, 2.65, 0),
    ],
)
def test_initial_state(policy, feedback, interval, ease, failures):
    nxt = policy.initial_state(feedback, T0)
    assert nxt.interval_days == interval
    assert nxt.ease_factor == ease
    assert nxt.consecutive_failures == failures
    assert nxt.next_review_at == T0 + timedelta(days=interval)


@pytest.mark.parametrize("bad", [state(0, 2.5), state(3, 0.9), state(3, 5.1)])
def test_invalid_state_is_a_programming_error(policy, bad):
    with pytest.raises(ValueError):
        policy.next_state(bad, ReviewFeedback.GOOD, T0)


def test_parameters_come_from_settings():
    params = PolicyParameters.from_settings(Settings(again_penalty=0.3, easy_initial_interval=3))
    policy = SpacedRepetitionPolicy(params)
    assert policy.next_state(state(5, 2.5), ReviewFeedback.AGAIN, T0).ease_factor == 2.2
    assert policy.initial_state(ReviewFeedback.EASY, T0).interval_days == 3


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2
