from __future__ import annotations

import random

import pytest

from gpiobridge.backoff import BackoffPolicy


def test_base_delay_doubles_until_cap() -> None:
    policy = BackoffPolicy(1.0, 60.0, 0.0)
    assert [policy.base_delay(n) for n in range(8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]


def test_huge_attempt_does_not_overflow() -> None:
    policy = BackoffPolicy(1.0, 60.0, 0.0)
    assert policy.delay(10_000) == 60.0


def test_jittered_delays_are_non_decreasing_and_capped() -> None:
    rng = random.Random(1234)
    for _ in range(50):
        policy = BackoffPolicy(0.5, 30.0, 1.0, rng=rng.uniform)
        delays = [policy.delay(n) for n in range(20)]
        assert delays == sorted(delays)
        assert max(delays) <= 30.0


def test_jitter_is_applied_from_rng() -> None:
    policy = BackoffPolicy(1.0, 60.0, 0.1, rng=lambda low, high: high)
    assert policy.delay(0) == pytest.approx(1.1)
    assert policy.delay(2) == pytest.approx(4.4)
    assert policy.delay(6) == 60.0


@pytest.mark.parametrize(
    ("base", "cap", "jitter"),
    [(0.0, 60.0, 0.1), (10.0, 5.0, 0.1), (1.0, 60.0, 1.5), (1.0, 60.0, -0.1)],
)
def test_invalid_arguments_rejected(base: float, cap: float, jitter: float) -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(base, cap, jitter)


def test_negative_attempt_rejected() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy().delay(-1)
