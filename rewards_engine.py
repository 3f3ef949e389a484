"""Activity scoring: intensity from pace, FIT earned from minutes x intensity x trust.

Pure functions only (no DB, no Flask). The claim flow feeds them values from
models_rewards.Activity and app.config.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from models_rewards import ACTIVITY_RUN, ACTIVITY_WALK


SCORED_ACTIVITY_TYPES = (ACTIVITY_RUN, ACTIVITY_WALK)

# Score used when there is no usable speed (manual entries, indoor sessions).
NO_SPEED_INTENSITY = 10

DEFAULT_BASE_FIT_PER_MINUTE = 0.5
DEFAULT_GENUINE_SCORE = 80

# ((speed, score) reference points, floor, ceiling)
# Piecewise linear between the points; the end segments extend past the outer
# points and the result is clamped to [floor, ceiling].
_INTENSITY_CURVES = {
    ACTIVITY_WALK: (((0.8, 20), (1.5, 70), (2.2, 90)), 10, 95),
    ACTIVITY_RUN: (((2.0, 30), (3.3, 70), (5.0, 95)), 10, 98),
}


def clamp(n, lo, hi):
    return max(lo, min(hi, n))


def round_half_up(x: float) -> int:
    # Half-up, not banker's rounding: 62.5 -> 63.
    return int(math.floor(x + 0.5))


def is_scored_type(activity_type: str) -> bool:
    return activity_type in SCORED_ACTIVITY_TYPES


def _interpolate(points, x: float) -> float:
    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        if x <= x1:
            break
    return y0 + (x - x0) / (x1 - x0) * (y1 - y0)


def compute_intensity(activity_type: str, avg_speed_mps: float | None) -> int:
    """Map average speed (m/s) to a 0-100 intensity score for RUN/WALK."""
    if not avg_speed_mps or avg_speed_mps <= 0:
        return NO_SPEED_INTENSITY

    # Anything that is not a walk is scored on the run curve.
    points, floor, ceiling = _INTENSITY_CURVES.get(activity_type, _INTENSITY_CURVES[ACTIVITY_RUN])
    return int(clamp(round_half_up(_interpolate(points, avg_speed_mps)), floor, ceiling))


def compute_fit_earned(
    duration_sec: float,
    intensity_score: float,
    genuine_score: float,
    base_fit_per_minute: float = DEFAULT_BASE_FIT_PER_MINUTE,
) -> float:
    minutes = (duration_sec or 0) / 60

    # 0.6x .. 2.0x
    intensity_multiplier = 0.6 + (clamp(intensity_score, 0, 100) / 100) * 1.4
    genuine_multiplier = clamp(genuine_score, 0, 100) / 100

    return max(0.0, minutes * base_fit_per_minute * intensity_multiplier * genuine_multiplier)


@dataclass(frozen=True)
class ActivityScore:
    intensity_score: int
    genuine_score: int
    fit_earned: float


def score_activity(
    activity,
    base_fit_per_minute: float = DEFAULT_BASE_FIT_PER_MINUTE,
    default_genuine_score: int = DEFAULT_GENUINE_SCORE,
) -> ActivityScore:
    """Score an Activity row, reusing its cached intensity when one was stored."""
    genuine = activity.genuine_score if activity.genuine_score is not None else default_genuine_score
    if activity.intensity_score and activity.intensity_score > 0:
        intensity = activity.intensity_score
    else:
        intensity = compute_intensity(activity.type, activity.avg_speed_mps)

    fit = compute_fit_earned(activity.duration_sec, intensity, genuine, base_fit_per_minute)
    return ActivityScore(intensity_score=int(intensity), genuine_score=int(genuine), fit_earned=fit)


@dataclass(frozen=True)
class DayWindow:
    day_key: str
    start: datetime
    end: datetime


def to_naive_utc(now: datetime) -> datetime:
    """DateTime columns hold naive UTC. Naive inputs are taken as UTC already."""
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def utc_day_window(now: datetime) -> DayWindow:
    """UTC calendar day containing `now`."""
    now = to_naive_utc(now)
    start = datetime(now.year, now.month, now.day)
    return DayWindow(day_key=start.date().isoformat(), start=start, end=start + timedelta(days=1))
