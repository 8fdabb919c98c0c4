"""
Commit streaks over calendar days.

current_streak counts back from today. Today may still be empty (the day is
not over), so a streak that ended yesterday is still current:

  commits on {today-2, today-1, today} → 3
  commits on {today-2, today-1}        → 2
  commits on {today-3, today-1}        → 1
  commits on {today-2}                 → 0

longest_streak is the longest run of consecutive dates anywhere in history.
"""
from datetime import date, timedelta
from typing import Mapping


def current_streak(commits_by_day: Mapping[date, int], today: date) -> int:
    active = {d for d, n in commits_by_day.items() if n > 0}
    day = today if today in active else today - timedelta(days=1)
    streak = 0
    while day in active:
        streak += 1
        day -= timedelta(days=1)
    return streak


def longest_streak(commits_by_day: Mapping[date, int]) -> int:
    days = sorted(d for d, n in commits_by_day.items() if n > 0)
    longest = run = 0
    previous = None
    for d in days:
        run = run + 1 if previous is not None and d - previous == timedelta(days=1) else 1
        longest = max(longest, run)
        previous = d
    return longest
