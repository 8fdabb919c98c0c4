"""Activity records: one row per remote commit, issue or merge request."""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class ActivityType(str, Enum):
    COMMIT = "commit"
    ISSUE = "issue"
    MERGE_REQUEST = "merge_request"


class ActivityRecord(SQLModel, table=True):
    """
    A GitLab event attributed to one user.

    Identity is (user_id, activity_type, remote_id): commit SHA for commits,
    global id for issues and merge requests. Re-syncing overwrites content and
    metadata in place and keeps the same row.
    """

    __table_args__ = (
        UniqueConstraint("user_id", "activity_type", "remote_id", name="uq_activityrecord_identity"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    activity_type: ActivityType = Field(index=True)
    remote_id: str

    # Project context
    project_id: int = Field(default=0, index=True)
    project_name: str = "Unknown Project"
    project_path: str = ""
    project_url: str = ""

    # Content
    title: str = "No title"
    message: str = ""
    web_url: Optional[str] = None
    activity_created_at: datetime = Field(index=True)  # remote creation time
    activity_updated_at: Optional[datetime] = None

    # Type-specific bag: commit stats/authors, issue/MR state, labels, assignees ...
    metadata_json: Optional[str] = None

    synced_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)
