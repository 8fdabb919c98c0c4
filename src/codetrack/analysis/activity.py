"""
Commit activity bucketing.

Converts stored commit ActivityRecords into lightweight CommitPoints and
groups them by day, ISO week, month, hour of day and weekday. Pure
functions: no DB access, no clock reads (callers pass `today`).

Days are UTC calendar days, matching the naive-UTC timestamps in the DB.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from codetrack.models.activity import ActivityRecord, ActivityType

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@dataclass
class CommitPoint:
    """One commit, reduced to what the analytics need."""
    created_at: datetime
    project_name: str
    title: str = ""
    message: str = ""
    additions: int = 0
    deletions: int = 0
    sha: str = ""
    web_url: Optional[str] = None

    @property
    def day(self) -> date:
        return self.created_at.date()


def records_to_points(records: Iterable[ActivityRecord]) -> List[CommitPoint]:
    """Keep commit records only, newest first."""
    points = []
    for r in records:
        if r.activity_type != ActivityType.COMMIT:
            continue
        meta = r.metadata_dict
        points.append(CommitPoint(
            created_at=r.activity_created_at,
            project_name=r.project_name,
            title=r.title,
            message=r.message,
            additions=int(meta.get("additions") or 0),
            deletions=int(meta.get("deletions") or 0),
            sha=r.remote_id,
            web_url=r.web_url,
        ))
    points.sort(key=lambda p: p.created_at, reverse=True)
    return points


def iso_week_key(d: date) -> str:
    """date(2024, 1, 1) → "2024-W01" (ISO year, which may differ from d.year)."""
    year, week, _ = d.isocalendar()
    return f"{year}-W{week:02d}"


def commits_by_day(points: Iterable[CommitPoint]) -> Dict[date, int]:
    return dict(Counter(p.day for p in points))


def commits_by_week(points: Iterable[CommitPoint]) -> Dict[str, int]:
    return dict(Counter(iso_week_key(p.day) for p in points))


def commits_by_month(points: Iterable[CommitPoint]) -> Dict[str, int]:
    return dict(Counter(p.created_at.strftime("%Y-%m") for p in points))


def commits_by_hour(points: Iterable[CommitPoint]) -> Dict[int, int]:
    """Every hour 0-23 is present, zero-filled."""
    counts = Counter(p.created_at.hour for p in points)
    return {h: counts.get(h, 0) for h in range(24)}


def commits_by_weekday(points: Iterable[CommitPoint]) -> Dict[str, int]:
    """Monday-first, zero-filled."""
    counts = Counter(p.created_at.weekday() for p in points)
    return {name: counts.get(i, 0) for i, name in enumerate(WEEKDAYS)}


def commits_since(points: Iterable[CommitPoint], today: date, days: int) -> int:
    """Commits on the last `days` calendar days, today included."""
    start = today - timedelta(days=days - 1)
    return sum(1 for p in points if start <= p.day <= today)


def weekly_activity(points: Iterable[CommitPoint], today: date, weeks: int = 12) -> List[Dict[str, object]]:
    """
    Commit counts for the last `weeks` ISO weeks, oldest first, zero-filled.

    Returns:
        [{"week": "2024-W09", "commits": 4}, ...]
    """
    by_week = commits_by_week(points)
    monday = today - timedelta(days=today.weekday())
    keys = [iso_week_key(monday - timedelta(weeks=i)) for i in range(weeks - 1, -1, -1)]
    return [{"week": k, "commits": by_week.get(k, 0)} for k in keys]
