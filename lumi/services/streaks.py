"""Consecutive-day streaks over a student's reading days.

Streaks are counted per calendar day: several logs on one day count once.
The current streak is anchored on today, so a student who read every day up
to yesterday but not yet today has a current streak of 0.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class StreakSummary:
    current_streak: int
    longest_streak: int
    total_reading_days: int


def current_streak(days: Iterable[date], today: date) -> int:
    reading_days = set(days)
    streak = 0
    while today - streak * ONE_DAY in reading_days:
        streak += 1
    return streak


def longest_streak(days: Iterable[date], current: int = 0) -> int:
    ordered = sorted(set(days), reverse=True)
    if not ordered:
        return current
    longest = run = 1
    for newer, older in zip(ordered, ordered[1:]):
        if newer - older == ONE_DAY:
            run += 1
            longest = max(longest, run)
        else:
            run = 1
    return max(longest, current)


def compute_streaks(days: Iterable[date], today: date) -> StreakSummary:
    reading_days = set(days)
    current = current_streak(reading_days, today)
    return StreakSummary(
        current_streak=current,
        longest_streak=longest_streak(reading_days, current),
        total_reading_days=len(reading_days),
    )
