"""
GitLab API response normalizer.

Converts raw GitLab JSON into field dicts that map directly onto
ActivityRecord and TrackedRepository columns. No DB access here; the sync
service handles persistence.

Type-specific details (commit stats and authors, issue/MR state, labels,
assignees) go into the record's metadata_json bag.

GitLab timestamps are ISO 8601 with an offset ("2024-03-01T10:15:00.000+05:30"
or "...Z"). They are converted to naive UTC to match the rest of the schema.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from codetrack.models.activity import ActivityType


def parse_gitlab_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse a GitLab timestamp to naive UTC. Returns None for empty or unparseable input."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _assignees(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"id": a.get("id"), "username": a.get("username"), "name": a.get("name")}
        for a in raw.get("assignees") or []
    ]


def _project_fields(project: Optional[Dict[str, Any]], fallback_id: Any = None) -> Dict[str, Any]:
    project = project or {}
    return {
        "project_id": project.get("id") or fallback_id or 0,
        "project_name": project.get("name") or "Unknown Project",
        "project_path": project.get("path_with_namespace") or "",
        "project_url": project.get("web_url") or "",
    }


def normalize_commit(raw: Dict[str, Any], project: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """
    Normalize a commit from /projects/:id/repository/commits.

    Args:
        raw: Commit JSON (fetched with with_stats=true).
        project: The project JSON the commit was fetched from.
        user_id: Owning application user.
    """
    stats = raw.get("stats") or {}
    metadata = {
        "sha": raw.get("id"),
        "short_id": raw.get("short_id"),
        "author_name": raw.get("author_name"),
        "author_email": raw.get("author_email"),
        "committer_name": raw.get("committer_name"),
        "committer_email": raw.get("committer_email"),
        "project_visibility": project.get("visibility"),
        "additions": stats.get("additions") or 0,
        "deletions": stats.get("deletions") or 0,
        "total": stats.get("total") or 0,
        "parent_ids": raw.get("parent_ids") or [],
    }
    created = (
        parse_gitlab_datetime(raw.get("created_at"))
        or parse_gitlab_datetime(raw.get("committed_date"))
        or datetime.utcnow()
    )
    return {
        "user_id": user_id,
        "activity_type": ActivityType.COMMIT,
        "remote_id": str(raw["id"]),
        **_project_fields(project),
        "title": raw.get("title") or "No title",
        "message": raw.get("message") or "",
        "web_url": raw.get("web_url"),
        "activity_created_at": created,
        "activity_updated_at": None,
        "metadata_json": json.dumps(metadata),
    }


def normalize_issue(raw: Dict[str, Any], user_id: str, project: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Normalize an issue from /issues. `project` fills in names the issue JSON lacks."""
    milestone = raw.get("milestone")
    metadata = {
        "iid": raw.get("iid"),
        "state": raw.get("state"),
        "labels": raw.get("labels") or [],
        "assignees": _assignees(raw),
        "milestone": {
            "id": milestone.get("id"),
            "title": milestone.get("title"),
            "description": milestone.get("description"),
        } if milestone else None,
        "closed_at": raw.get("closed_at"),
    }
    return {
        "user_id": user_id,
        "activity_type": ActivityType.ISSUE,
        "remote_id": str(raw["id"]),
        **_project_fields(project, raw.get("project_id")),
        "title": raw.get("title") or "No title",
        "message": raw.get("description") or "",
        "web_url": raw.get("web_url"),
        "activity_created_at": parse_gitlab_datetime(raw.get("created_at")) or datetime.utcnow(),
        "activity_updated_at": parse_gitlab_datetime(raw.get("updated_at")),
        "metadata_json": json.dumps(metadata),
    }


def normalize_merge_request(
    raw: Dict[str, Any], user_id: str, project: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Normalize a merge request from /merge_requests."""
    changes = raw.get("changes_count")
    metadata = {
        "iid": raw.get("iid"),
        "state": raw.get("state"),
        "source_branch": raw.get("source_branch"),
        "target_branch": raw.get("target_branch"),
        # GitLab returns changes_count as a string ("12", "1000+")
        "changes_count": changes if changes is not None else 0,
        "merge_status": raw.get("merge_status"),
        "merged_at": raw.get("merged_at"),
        "user_notes_count": raw.get("user_notes_count") or 0,
        "labels": raw.get("labels") or [],
        "assignees": _assignees(raw),
    }
    return {
        "user_id": user_id,
        "activity_type": ActivityType.MERGE_REQUEST,
        "remote_id": str(raw["id"]),
        **_project_fields(project, raw.get("project_id")),
        "title": raw.get("title") or "No title",
        "message": raw.get("description") or "",
        "web_url": raw.get("web_url"),
        "activity_created_at": parse_gitlab_datetime(raw.get("created_at")) or datetime.utcnow(),
        "activity_updated_at": parse_gitlab_datetime(raw.get("updated_at")),
        "metadata_json": json.dumps(metadata),
    }


def normalize_project(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a project from /projects into TrackedRepository fields."""
    return {
        "project_id": raw["id"],
        "name": raw.get("name") or "Unknown Project",
        "full_path": raw.get("path_with_namespace"),
        "url": raw.get("web_url") or "",
        "description": raw.get("description"),
        "visibility": raw.get("visibility") or "private",
        "last_activity": parse_gitlab_datetime(raw.get("last_activity_at")),
    }
