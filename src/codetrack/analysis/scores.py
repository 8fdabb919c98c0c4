"""
Productivity and quality scores.

productivity_score (0-100):
    min(commits/days*10, 50) + min(mrs/days*20, 30) + min(issues/days*15, 20)

quality_score (0-100):
    commit message quality * 30
    + share of MRs with a description over 50 chars * 40
    + share of MRs with at least one review note * 30

Both are rounded half-up to an int. The sums are not re-normalized, so
typical scores sit well below 100.
"""
import math
from collections import Counter
from datetime import date, timedelta
from typing import Dict, Iterable, Sequence

from codetrack.analysis.activity import CommitPoint
from codetrack.models.activity import ActivityRecord


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def productivity_score(commits: int, merge_requests: int, issues: int, days: int) -> int:
    if days <= 0:
        return 0
    score = (
        min(commits / days * 10, 50)
        + min(merge_requests / days * 20, 30)
        + min(issues / days * 15, 20)
    )
    return _round_half_up(score)


def is_quality_message(message: str) -> bool:
    """11-99 chars and not a bare "fix ..."/"update ..." style message."""
    text = (message or "").lower()
    return 10 < len(text) < 100 and "fix" not in text and "update" not in text


def commit_message_quality(commits: Sequence[CommitPoint]) -> float:
    """Share of commits (0.0-1.0) whose message passes is_quality_message()."""
    if not commits:
        return 0.0
    good = sum(1 for c in commits if is_quality_message(c.message or c.title))
    return good / len(commits)


def _was_reviewed(mr: ActivityRecord) -> bool:
    return int(mr.metadata_dict.get("user_notes_count") or 0) > 0


def review_coverage(merge_requests: Sequence[ActivityRecord]) -> float:
    if not merge_requests:
        return 0.0
    return sum(1 for mr in merge_requests if _was_reviewed(mr)) / len(merge_requests)


def quality_score(commits: Sequence[CommitPoint], merge_requests: Sequence[ActivityRecord]) -> int:
    commit_part = commit_message_quality(commits) * 30
    if merge_requests:
        described = sum(1 for mr in merge_requests if len(mr.message or "") > 50)
        mr_part = described / len(merge_requests) * 40
    else:
        mr_part = 0.0
    review_part = review_coverage(merge_requests) * 30
    return _round_half_up(commit_part + mr_part + review_part)


def _state_counts(records: Iterable[ActivityRecord]) -> Counter:
    return Counter(r.metadata_dict.get("state") for r in records)


def merge_request_stats(merge_requests: Sequence[ActivityRecord]) -> Dict[str, int]:
    states = _state_counts(merge_requests)
    return {
        "total": len(merge_requests),
        "opened": states.get("opened", 0),
        "merged": states.get("merged", 0),
        "closed": states.get("closed", 0),
    }


def issue_stats(issues: Sequence[ActivityRecord]) -> Dict[str, int]:
    states = _state_counts(issues)
    return {
        "total": len(issues),
        "opened": states.get("opened", 0),
        "closed": states.get("closed", 0),
    }


def productivity_trend(commits: Sequence[CommitPoint], today: date, days: int) -> str:
    """
    Compare the commit rate of the recent half of the window with the older half.

    Returns:
        "increasing" (>20% up), "decreasing" (>20% down), "stable", or
        "insufficient_data" for windows shorter than two weeks.
    """
    if days < 14:
        return "insufficient_data"
    mid = days // 2
    boundary = today - timedelta(days=mid)
    window_start = today - timedelta(days=days)
    older = sum(1 for c in commits if window_start < c.day <= boundary)
    recent = sum(1 for c in commits if boundary < c.day <= today)
    older_rate = older / (days - mid)
    recent_rate = recent / mid
    if recent_rate > older_rate * 1.2:
        return "increasing"
    if recent_rate < older_rate * 0.8:
        return "decreasing"
    return "stable"
