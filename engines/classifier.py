"""Difficulty bands and speed buckets for multiplication facts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

DifficultyBand = Literal["basic", "intermediate", "advanced"]
SpeedBucket = Literal["fast", "medium", "slow"]

DIFFICULTY_BANDS: tuple[DifficultyBand, ...] = ("basic", "intermediate", "advanced")
SPEED_BUCKETS: tuple[SpeedBucket, ...] = ("fast", "medium", "slow")

MIN_FACTOR = 1
MAX_FACTOR = 12


@dataclass(frozen=True)
class TimeThresholds:
    """Upper bounds (seconds) for the fast and medium speed buckets."""

    fast: float = 5.0
    medium: float = 15.0

    def as_dict(self) -> dict[str, float]:
        return {"fast_threshold": self.fast, "medium_threshold": self.medium}


DEFAULT_THRESHOLDS = TimeThresholds()


def difficulty_band(multiplicand: int, multiplier: int) -> DifficultyBand:
    """Classify a fact by its largest factor (not by its product)."""

    largest = max(multiplicand, multiplier)
    if largest <= 5:
        return "basic"
    if largest <= 9:
        return "intermediate"
    return "advanced"


def speed_bucket(seconds: float, fast_threshold: float, medium_threshold: float) -> SpeedBucket:
    # The two comparisons are independent so a misordered pair still classifies.
    if seconds < fast_threshold:
        return "fast"
    if seconds <= medium_threshold:
        return "medium"
    return "slow"


def classify_time(seconds: float, thresholds: TimeThresholds = DEFAULT_THRESHOLDS) -> SpeedBucket:
    return speed_bucket(seconds, thresholds.fast, thresholds.medium)


def calculate_accuracy(correct: int, total: int) -> int:
    if total == 0:
        return 0
    return round_half_up((correct / total) * 100)


def round_half_up(value: float) -> int:
    """Round halves upwards for non-negative values (``round`` rounds half to even)."""

    return int(math.floor(value + 0.5))


def calculate_average_time(total_time: float, total_attempts: int) -> float:
    if total_attempts == 0:
        return 0.0
    return round(total_time / total_attempts, 2)


def is_valid_fact(multiplicand: int, multiplier: int) -> bool:
    return MIN_FACTOR <= multiplicand <= MAX_FACTOR and MIN_FACTOR <= multiplier <= MAX_FACTOR
