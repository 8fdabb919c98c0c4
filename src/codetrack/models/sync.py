"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """Records each sync attempt for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    mode: str = "incremental"  # "incremental", "full", "custom"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error"
    projects_scanned: int = 0
    commits_processed: int = 0
    new_records: int = 0
    updated_records: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
