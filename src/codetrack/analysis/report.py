"""
ActivityReport assembler.

Reads a user's stored ActivityRecords for a window and runs the pure
analysis functions over them, producing the ActivityReport served by
GET /gitlab/analytics. Nothing here calls GitLab.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from codetrack.analysis.activity import (
    CommitPoint,
    commits_by_day,
    commits_by_hour,
    commits_by_month,
    commits_by_weekday,
    commits_since,
    records_to_points,
    weekly_activity,
)
from codetrack.analysis.heatmap import HeatmapDay, heatmap
from codetrack.analysis.scores import (
    commit_message_quality,
    issue_stats,
    merge_request_stats,
    productivity_score,
    productivity_trend,
    quality_score,
    review_coverage,
)
from codetrack.analysis.streaks import current_streak, longest_streak
from codetrack.gitlab.store import IntegrationStore
from codetrack.models.activity import ActivityType

RECENT_COMMITS = 20
TOP_REPOSITORIES = 10
HEATMAP_DAYS = 90


@dataclass
class RepositoryStats:
    name: str
    commits: int = 0
    additions: int = 0
    deletions: int = 0
    last_commit: Optional[datetime] = None


@dataclass
class ActivitySummary:
    total_commits: int = 0
    total_issues: int = 0
    total_merge_requests: int = 0
    total_additions: int = 0
    total_deletions: int = 0
    active_repositories: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    weekly_commits: int = 0
    monthly_commits: int = 0


@dataclass
class ActivityReport:
    """
    Analytics for one user over `days` days ending `today`.

    `stats` is only filled when the report is built with include_stats=True.
    """
    user_id: str
    days: int
    start: datetime
    end: datetime
    summary: ActivitySummary
    heatmap: List[HeatmapDay]
    weekly_activity: List[Dict[str, Any]]
    repository_stats: List[RepositoryStats]
    recent_commits: List[CommitPoint]
    stats: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form with camelCase keys."""
        s = self.summary
        return {
            "period": {"days": self.days, "startDate": self.start.isoformat(), "endDate": self.end.isoformat()},
            "summary": {
                "totalCommits": s.total_commits,
                "totalIssues": s.total_issues,
                "totalMergeRequests": s.total_merge_requests,
                "totalAdditions": s.total_additions,
                "totalDeletions": s.total_deletions,
                "activeRepositories": s.active_repositories,
                "currentStreak": s.current_streak,
                "longestStreak": s.longest_streak,
                "weeklyCommits": s.weekly_commits,
                "monthlyCommits": s.monthly_commits,
            },
            "commitHeatmap": [
                {"date": c.date.isoformat(), "count": c.count, "level": c.level} for c in self.heatmap
            ],
            "weeklyActivity": self.weekly_activity,
            "repositoryStats": [
                {
                    "name": r.name,
                    "commits": r.commits,
                    "additions": r.additions,
                    "deletions": r.deletions,
                    "lastCommit": r.last_commit.isoformat() if r.last_commit else None,
                }
                for r in self.repository_stats
            ],
            "recentCommits": [
                {
                    "id": c.sha,
                    "title": c.title,
                    "message": c.message,
                    "createdAt": c.created_at.isoformat(),
                    "project": c.project_name,
                    "webUrl": c.web_url,
                    "stats": {"additions": c.additions, "deletions": c.deletions},
                }
                for c in self.recent_commits
            ],
            "stats": self.stats,
        }


def _repository_stats(points: List[CommitPoint]) -> List[RepositoryStats]:
    repos: Dict[str, RepositoryStats] = {}
    for p in points:
        repo = repos.setdefault(p.project_name, RepositoryStats(name=p.project_name))
        repo.commits += 1
        repo.additions += p.additions
        repo.deletions += p.deletions
        if repo.last_commit is None or p.created_at > repo.last_commit:
            repo.last_commit = p.created_at
    ranked = sorted(repos.values(), key=lambda r: r.commits, reverse=True)
    return ranked[:TOP_REPOSITORIES]


def build_activity_report(
    engine,
    user_id: str,
    days: int = 90,
    include_stats: bool = False,
    now: Optional[datetime] = None,
) -> ActivityReport:
    """
    Assemble an ActivityReport from stored records.

    Args:
        engine: SQLAlchemy engine.
        user_id: Application user id.
        days: Window length; records created before now - days are ignored.
        include_stats: Add time distributions and scores.
        now: Naive-UTC reference time. Defaults to datetime.utcnow().

    Raises:
        ValueError: days is not positive.
    """
    if days <= 0:
        raise ValueError("days must be positive")
    now = now or datetime.utcnow()
    today: date = now.date()
    start = now - timedelta(days=days)

    records = IntegrationStore(engine).list_activities(user_id, since=start)
    commit_records = [r for r in records if r.activity_type == ActivityType.COMMIT]
    issues = [r for r in records if r.activity_type == ActivityType.ISSUE]
    merge_requests = [r for r in records if r.activity_type == ActivityType.MERGE_REQUEST]

    points = records_to_points(commit_records)
    by_day = commits_by_day(points)

    summary = ActivitySummary(
        total_commits=len(points),
        total_issues=len(issues),
        total_merge_requests=len(merge_requests),
        total_additions=sum(p.additions for p in points),
        total_deletions=sum(p.deletions for p in points),
        active_repositories=len({p.project_name for p in points}),
        current_streak=current_streak(by_day, today),
        longest_streak=longest_streak(by_day),
        weekly_commits=commits_since(points, today, 7),
        monthly_commits=commits_since(points, today, 30),
    )

    report = ActivityReport(
        user_id=user_id,
        days=days,
        start=start,
        end=now,
        summary=summary,
        heatmap=heatmap(by_day, today, window_days=HEATMAP_DAYS),
        weekly_activity=weekly_activity(points, today),
        repository_stats=_repository_stats(points),
        recent_commits=points[:RECENT_COMMITS],
    )

    if include_stats:
        report.stats = {
            "commitsByHour": commits_by_hour(points),
            "commitsByWeekday": commits_by_weekday(points),
            "commitsByMonth": commits_by_month(points),
            "productivityScore": productivity_score(
                len(points), len(merge_requests), len(issues), days
            ),
            "qualityScore": quality_score(points, merge_requests),
            "commitMessageQuality": commit_message_quality(points),
            "reviewCoverage": review_coverage(merge_requests),
            "productivityTrend": productivity_trend(points, today, days),
            "mergeRequests": merge_request_stats(merge_requests),
            "issues": issue_stats(issues),
        }
    return report
