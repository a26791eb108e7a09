"""
trialmeter/features/usage/evaluator.py

Dual-limit evaluation (call count + call minutes).

Pure functions only: the same period counters and variant always produce the
same BlockDecision. Durations are rounded up to whole minutes here and
nowhere else.
"""

from typing import Iterable, Optional

from trialmeter.models.trial_variant import TrialBehavior, TrialVariant
from trialmeter.models.usage import BlockDecision, LimitingDimension


def ceil_minutes(seconds: int) -> int:
    """61s -> 2, 60s -> 1, 0s -> 0."""
    if seconds <= 0:
        return 0
    return -(-int(seconds) // 60)


def _pick_dimension(calls_used: int, calls_limit: int, minutes_used: int, minutes_limit: int,
                    calls_exceeded: bool, duration_exceeded: bool) -> LimitingDimension:
    if calls_used == 0 and minutes_used == 0:
        return LimitingDimension.NONE
    # Only exceeded dimensions compete, unless neither is exceeded
    if calls_exceeded and not duration_exceeded:
        return LimitingDimension.CALLS
    if duration_exceeded and not calls_exceeded:
        return LimitingDimension.DURATION

    # calls_used / calls_limit vs minutes_used / minutes_limit, exact
    calls_side = calls_used * minutes_limit
    duration_side = minutes_used * calls_limit
    if duration_side > calls_side:
        return LimitingDimension.DURATION
    return LimitingDimension.CALLS


def evaluate_usage(calls_used: int, duration_seconds: int, variant: TrialVariant) -> BlockDecision:
    minutes_used = ceil_minutes(duration_seconds)
    minutes_limit = ceil_minutes(variant.duration_limit_seconds)
    calls_limit = variant.call_limit

    calls_exceeded = calls_used >= calls_limit
    duration_exceeded = minutes_used >= minutes_limit

    dimension = _pick_dimension(
        calls_used, calls_limit, minutes_used, minutes_limit, calls_exceeded, duration_exceeded
    )
    percent_used = max(calls_used * 100 / calls_limit, minutes_used * 100 / minutes_limit)

    if variant.behavior == TrialBehavior.SOFT:
        exceeded = False
    else:
        exceeded = calls_exceeded or duration_exceeded

    return BlockDecision(
        exceeded=exceeded,
        limiting_dimension=dimension,
        percent_used=percent_used,
        calls_used=calls_used,
        calls_limit=calls_limit,
        minutes_used=minutes_used,
        minutes_limit=minutes_limit,
        calls_exceeded=calls_exceeded,
        duration_exceeded=duration_exceeded,
    )


def evaluate(period, variant: TrialVariant) -> BlockDecision:
    """Evaluate a UsagePeriod against its tenant's variant."""
    return evaluate_usage(period.calls_consumed, period.duration_consumed_seconds, variant)


def warning_level(decision: BlockDecision, thresholds: Iterable[int]) -> Optional[int]:
    """Highest threshold (percent) reached, or None."""
    reached = [t for t in thresholds if decision.percent_used >= t]
    return max(reached) if reached else None
