"""Tests for dual-limit evaluation (calls + minutes)."""
import pytest

from trialmeter.features.usage.evaluator import ceil_minutes, evaluate_usage, warning_level
from trialmeter.features.variants.service import builtin_variant_table
from trialmeter.models.usage import LimitingDimension


@pytest.fixture
def variants():
    return builtin_variant_table().variants


@pytest.mark.parametrize(
    "seconds,minutes",
    [(0, 0), (1, 1), (59, 1), (60, 1), (61, 2), (1500, 25), (1501, 26)],
)
def test_ceil_minutes(seconds, minutes):
    assert ceil_minutes(seconds) == minutes


def test_no_usage_has_no_limiting_dimension(variants):
    decision = evaluate_usage(0, 0, variants["control"])
    assert decision.exceeded is False
    assert decision.limiting_dimension == LimitingDimension.NONE
    assert decision.percent_used == 0.0


def test_call_limit_reached_blocks_on_calls(variants):
    # control: 10 calls / 25 minutes; ten 1-minute calls
    decision = evaluate_usage(10, 600, variants["control"])
    assert decision.exceeded is True
    assert decision.calls_exceeded is True
    assert decision.duration_exceeded is False
    assert decision.limiting_dimension == LimitingDimension.CALLS
    assert decision.percent_used == 100.0


def test_one_call_short_of_limit_is_not_exceeded(variants):
    decision = evaluate_usage(9, 540, variants["control"])
    assert decision.exceeded is False
    assert decision.limiting_dimension == LimitingDimension.CALLS
    assert decision.percent_used == 90.0


def test_duration_limit_uses_rounded_up_minutes(variants):
    # 24 minutes and one second round up to 25 minutes == limit
    decision = evaluate_usage(3, 24 * 60 + 1, variants["control"])
    assert decision.minutes_used == 25
    assert decision.exceeded is True
    assert decision.limiting_dimension == LimitingDimension.DURATION


def test_closer_dimension_wins_when_neither_exceeded(variants):
    # 2/10 calls (20%) vs 15/25 minutes (60%)
    decision = evaluate_usage(2, 15 * 60, variants["control"])
    assert decision.exceeded is False
    assert decision.limiting_dimension == LimitingDimension.DURATION
    assert decision.percent_used == pytest.approx(60.0)


def test_tie_goes_to_calls(variants):
    # generous: 10/20 calls and 25/50 minutes
    decision = evaluate_usage(10, 25 * 60, variants["generous"])
    assert decision.limiting_dimension == LimitingDimension.CALLS
    assert decision.percent_used == 50.0


def test_both_exceeded_picks_larger_overshoot(variants):
    # 10/10 calls (100%) vs 30/25 minutes (120%)
    decision = evaluate_usage(10, 30 * 60, variants["control"])
    assert decision.exceeded is True
    assert decision.limiting_dimension == LimitingDimension.DURATION
    assert decision.percent_used == pytest.approx(120.0)


def test_soft_variant_never_exceeds(variants):
    decision = evaluate_usage(15, 40 * 60, variants["soft"])
    assert decision.exceeded is False
    assert decision.calls_exceeded is True
    assert decision.duration_exceeded is True
    assert decision.limiting_dimension == LimitingDimension.DURATION
    assert decision.percent_used > 100.0


def test_evaluation_is_deterministic(variants):
    first = evaluate_usage(4, 700, variants["strict"])
    second = evaluate_usage(4, 700, variants["strict"])
    assert first == second


def test_warning_level_highest_threshold_reached(variants):
    assert warning_level(evaluate_usage(6, 60, variants["control"]), [70, 90]) is None
    assert warning_level(evaluate_usage(7, 60, variants["control"]), [70, 90]) == 70
    assert warning_level(evaluate_usage(9, 60, variants["control"]), [70, 90]) == 90
    assert warning_level(evaluate_usage(12, 60, variants["soft"]), [70, 90]) == 90


def test_nine_short_calls_limited_by_calls(variants):
    # nine 100s calls: 9/10 calls vs 15/25 minutes
    decision = evaluate_usage(9, 9 * 100, variants["control"])
    assert decision.exceeded is False
    assert decision.limiting_dimension == LimitingDimension.CALLS
    assert decision.minutes_used == 15
    assert decision.percent_used == 90.0
