"""
Tests for BackoffPolicy.

delay(attempt) must stay inside [2^attempt * 30 * 0.75, 2^attempt * 30 * 1.25]
whatever the jitter draws, and never exceed max_delay_seconds.
"""

import random

import pytest

from orchestrator.backoff import BackoffPolicy


@pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5, 8])
def test_delay_within_jitter_bounds(attempt):
    policy = BackoffPolicy(rng=random.Random(attempt))
    low = (2 ** attempt) * 30 * 0.75
    high = (2 ** attempt) * 30 * 1.25
    for _ in range(200):
        assert low - 1 <= policy.delay(attempt) <= high


def test_documented_examples():
    """Delay(1) ∈ [45,75], Delay(3) ∈ [180,300]."""
    policy = BackoffPolicy()
    for _ in range(100):
        assert 45 <= policy.delay(1) <= 75
        assert 180 <= policy.delay(3) <= 300


def test_extreme_jitter_draws():
    """Pin the RNG to both ends of the jitter range."""

    class Fixed(random.Random):
        def __init__(self, value):
            super().__init__()
            self.value = value

        def uniform(self, a, b):
            return self.value

    assert BackoffPolicy(rng=Fixed(0.75)).delay(1) == 45
    assert BackoffPolicy(rng=Fixed(1.25)).delay(1) == 75
    assert BackoffPolicy(rng=Fixed(1.0)).delay(2) == 120


def test_delay_grows_with_attempt():
    """Without jitter, every attempt doubles the wait."""
    policy = BackoffPolicy(jitter_low=1.0, jitter_high=1.0)
    delays = [policy.delay(a) for a in range(1, 6)]
    assert delays == [60, 120, 240, 480, 960]


def test_custom_base():
    policy = BackoffPolicy(base_delay_seconds=1, jitter_low=1.0, jitter_high=1.0)
    assert policy.delay(1) == 2
    assert policy.delay(3) == 8


def test_delay_is_at_least_one_second():
    policy = BackoffPolicy(base_delay_seconds=1, jitter_low=0.1, jitter_high=0.1)
    assert policy.delay(1) == 1


def test_delay_capped_at_max():
    """Once the exponential passes the cap, every draw returns the cap."""
    policy = BackoffPolicy(max_delay_seconds=3600, rng=random.Random(7))
    for attempt in (8, 10, 20):
        for _ in range(50):
            assert policy.delay(attempt) == 3600
    # below the cap the jitter still applies
    assert 45 <= policy.delay(1) <= 75


@pytest.mark.parametrize("attempt", [32, 64, 1100, 5000])
def test_huge_attempt_does_not_overflow(attempt):
    """2^attempt outgrows a float long before a big retry budget runs out."""
    policy = BackoffPolicy()
    assert policy.delay(attempt) == 24 * 60 * 60


def test_default_cap_is_one_day():
    assert BackoffPolicy().max_delay_seconds == 86400


def test_attempt_zero_rejected():
    with pytest.raises(ValueError):
        BackoffPolicy().delay(0)


def test_invalid_configuration():
    with pytest.raises(ValueError):
        BackoffPolicy(base_delay_seconds=0)
    with pytest.raises(ValueError):
        BackoffPolicy(jitter_low=1.5, jitter_high=1.0)
    with pytest.raises(ValueError):
        BackoffPolicy(max_delay_seconds=0)
