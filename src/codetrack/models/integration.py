"""GitLab integration models: connection record, tracked repositories, error log."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class TokenType(str, Enum):
    OAUTH = "oauth"
    PERSONAL_ACCESS_TOKEN = "personal_access_token"


class GitLabIntegration(SQLModel, table=True):
    """
    One row per user: stored credentials plus sync bookkeeping.

    access_token / refresh_token hold TokenVault ciphertext, never plaintext.
    Personal access tokens have no refresh token and usually no expiry.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)

    # Remote identity
    gitlab_user_id: int = Field(index=True)
    gitlab_username: str
    gitlab_email: Optional[str] = None
    profile_name: Optional[str] = None
    profile_avatar_url: Optional[str] = None
    profile_web_url: Optional[str] = None

    # Credentials
    access_token: str
    refresh_token: Optional[str] = None
    token_type: TokenType = Field(default=TokenType.OAUTH)
    token_expires_at: Optional[datetime] = None

    # Instance
    gitlab_instance: str = "https://code.swecha.org"
    api_base: str = "https://code.swecha.org/api/v4"

    # JSON list of repository names a PAT connection asked to track (empty = all)
    specific_repositories_json: Optional[str] = None

    connected_at: datetime = Field(default_factory=datetime.utcnow)
    is_active: bool = Field(default=True, index=True)

    # Sync bookkeeping
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    # Set while a run holds the per-user claim, shared by every process on this DB
    sync_started_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class TrackedRepository(SQLModel, table=True):
    """A GitLab project observed for an integration, kept in enumeration order."""

    __table_args__ = (
        UniqueConstraint("integration_id", "project_id", name="uq_trackedrepository_project"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key="gitlabintegration.id", index=True)
    position: int = 0

    project_id: int = Field(index=True)
    name: str
    full_path: Optional[str] = None  # path_with_namespace
    url: str = ""
    description: Optional[str] = None
    visibility: str = "private"  # "private", "internal", "public"
    is_tracked: bool = True
    last_activity: Optional[datetime] = None
    added_at: datetime = Field(default_factory=datetime.utcnow)
    last_sync_at: Optional[datetime] = None


class SyncErrorEntry(SQLModel, table=True):
    """Append-only log of fatal sync and token failures for an integration."""

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key="gitlabintegration.id", index=True)
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
