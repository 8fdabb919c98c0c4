"""
IntegrationStore: persistence for integrations, tracked repositories, the
integration error log and activity records.

Every method opens and commits its own Session (the run claim uses a single
Core UPDATE), so callers never hold a session across an await.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from codetrack.models.activity import ActivityRecord, ActivityType
from codetrack.models.integration import GitLabIntegration, SyncErrorEntry, TrackedRepository
from codetrack.models.sync import SyncLog

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


class IntegrationStore:
    """Reads and writes integration state for one database."""

    def __init__(self, engine):
        self.engine = engine

    # ─── Integrations ─────────────────────────────────────────────────────────

    def get_by_user(self, user_id: str, *, active_only: bool = False) -> Optional[GitLabIntegration]:
        with Session(self.engine) as s:
            stmt = select(GitLabIntegration).where(GitLabIntegration.user_id == user_id)
            if active_only:
                stmt = stmt.where(GitLabIntegration.is_active == True)  # noqa: E712
            return s.exec(stmt).first()

    def list_active(self) -> List[GitLabIntegration]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(GitLabIntegration)
                    .where(GitLabIntegration.is_active == True)  # noqa: E712
                    .order_by(GitLabIntegration.id)
                ).all()
            )

    def save_connection(self, user_id: str, **fields: Any) -> GitLabIntegration:
        """
        Create the user's integration, or overwrite credentials and profile on
        the existing one.

        A (re)connect marks the integration active and clears sync timestamps
        so the next incremental sync starts from the default window.
        """
        now = datetime.utcnow()
        with Session(self.engine) as s:
            integration = s.exec(
                select(GitLabIntegration).where(GitLabIntegration.user_id == user_id)
            ).first()
            if integration is None:
                integration = GitLabIntegration(user_id=user_id, **fields)
            else:
                for k, v in fields.items():
                    setattr(integration, k, v)
            integration.is_active = True
            integration.connected_at = now
            integration.last_sync_at = None
            integration.last_successful_sync_at = None
            integration.updated_at = now
            s.add(integration)
            s.commit()
            s.refresh(integration)
            return integration

    def update_tokens(
        self,
        integration_id: int,
        *,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> GitLabIntegration:
        """Persist freshly encrypted tokens after an OAuth refresh."""
        with Session(self.engine) as s:
            integration = s.get(GitLabIntegration, integration_id)
            integration.access_token = access_token
            if refresh_token:
                integration.refresh_token = refresh_token
            integration.token_expires_at = token_expires_at
            integration.updated_at = datetime.utcnow()
            s.add(integration)
            s.commit()
            s.refresh(integration)
            return integration

    def mark_synced(self, integration_id: int, *, now: datetime, successful: bool) -> None:
        with Session(self.engine) as s:
            integration = s.get(GitLabIntegration, integration_id)
            if integration is None:
                return
            integration.last_sync_at = now
            if successful:
                integration.last_successful_sync_at = now
            integration.updated_at = now
            s.add(integration)
            s.commit()

    def specific_repositories(self, integration: GitLabIntegration) -> List[str]:
        if not integration.specific_repositories_json:
            return []
        return json.loads(integration.specific_repositories_json)

    def update_api_base(self, integration_id: int, api_base: str) -> GitLabIntegration:
        with Session(self.engine) as s:
            integration = s.get(GitLabIntegration, integration_id)
            integration.api_base = api_base
            integration.updated_at = datetime.utcnow()
            s.add(integration)
            s.commit()
            s.refresh(integration)
            return integration

    # ─── Run claim ────────────────────────────────────────────────────────────

    def claim_sync(self, user_id: str, *, now: datetime, stale_after: float) -> bool:
        """
        Take the user's sync claim with one conditional UPDATE.

        Succeeds when no run holds the claim, or the holder started more than
        stale_after seconds ago. The database decides the race, so the API,
        the scheduler and the scripts exclude each other across processes.

        Returns:
            True if this caller now holds the claim. False when another run
            holds it or the user has no integration.
        """
        cutoff = now - timedelta(seconds=stale_after)
        stmt = (
            update(GitLabIntegration)
            .where(GitLabIntegration.user_id == user_id)
            .where(
                or_(
                    GitLabIntegration.sync_started_at.is_(None),
                    GitLabIntegration.sync_started_at < cutoff,
                )
            )
            .values(sync_started_at=now)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def release_sync(self, user_id: str, claimed_at: datetime) -> None:
        """Drop the claim, unless a later run already took it over as stale."""
        stmt = (
            update(GitLabIntegration)
            .where(GitLabIntegration.user_id == user_id)
            .where(GitLabIntegration.sync_started_at == claimed_at)
            .values(sync_started_at=None)
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    # ─── Tracked repositories ─────────────────────────────────────────────────

    def replace_repositories(self, integration_id: int, projects: Sequence[Dict[str, Any]]) -> int:
        """Replace the tracked list with normalized project dicts, in order."""
        with Session(self.engine) as s:
            for repo in s.exec(
                select(TrackedRepository).where(TrackedRepository.integration_id == integration_id)
            ).all():
                s.delete(repo)
            s.flush()
            for position, fields in enumerate(projects):
                s.add(TrackedRepository(integration_id=integration_id, position=position, **fields))
            s.commit()
        return len(projects)

    def refresh_repositories(
        self,
        integration_id: int,
        projects: Sequence[Dict[str, Any]],
        *,
        synced_ids: Iterable[int],
        matched_ids: Iterable[int],
        now: datetime,
    ) -> None:
        """
        Merge projects observed during a sync into the tracked list.

        New projects are appended (tracked only if they had matched activity);
        existing ones get their descriptive fields refreshed. last_sync_at is
        stamped for projects in synced_ids; is_tracked is forced on for
        projects in matched_ids.
        """
        synced = set(synced_ids)
        matched = set(matched_ids)
        with Session(self.engine) as s:
            existing = {
                r.project_id: r
                for r in s.exec(
                    select(TrackedRepository).where(TrackedRepository.integration_id == integration_id)
                ).all()
            }
            position = max((r.position for r in existing.values()), default=-1) + 1
            for fields in projects:
                pid = fields["project_id"]
                repo = existing.get(pid)
                if repo is None:
                    repo = TrackedRepository(
                        integration_id=integration_id,
                        position=position,
                        is_tracked=pid in matched,
                        added_at=now,
                        **fields,
                    )
                    position += 1
                    existing[pid] = repo
                else:
                    for k, v in fields.items():
                        setattr(repo, k, v)
                    if pid in matched:
                        repo.is_tracked = True
                if pid in synced:
                    repo.last_sync_at = now
                s.add(repo)
            s.commit()

    def list_repositories(self, integration_id: int) -> List[TrackedRepository]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(TrackedRepository)
                    .where(TrackedRepository.integration_id == integration_id)
                    .order_by(TrackedRepository.position)
                ).all()
            )

    # ─── Error log ────────────────────────────────────────────────────────────

    def append_sync_error(self, integration_id: int, message: str) -> None:
        with Session(self.engine) as s:
            s.add(SyncErrorEntry(integration_id=integration_id, message=message))
            s.commit()

    def list_sync_errors(self, integration_id: int, limit: int = 10) -> List[SyncErrorEntry]:
        """Most recent first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncErrorEntry)
                    .where(SyncErrorEntry.integration_id == integration_id)
                    .order_by(SyncErrorEntry.timestamp.desc(), SyncErrorEntry.id.desc())
                    .limit(limit)
                ).all()
            )

    # ─── Activity records ─────────────────────────────────────────────────────

    def upsert_activities(self, records: Sequence[Dict[str, Any]]) -> Tuple[int, int]:
        """
        Upsert normalized activity dicts keyed on (user_id, activity_type, remote_id).

        Existing rows keep their id and get every content field overwritten.

        Returns:
            (created, updated) counts.
        """
        created = updated = 0
        now = datetime.utcnow()
        with Session(self.engine) as s:
            for fields in records:
                existing = s.exec(
                    select(ActivityRecord).where(
                        ActivityRecord.user_id == fields["user_id"],
                        ActivityRecord.activity_type == fields["activity_type"],
                        ActivityRecord.remote_id == fields["remote_id"],
                    )
                ).first()
                if existing:
                    for k, v in fields.items():
                        setattr(existing, k, v)
                    existing.synced_at = now
                    s.add(existing)
                    updated += 1
                else:
                    s.add(ActivityRecord(**fields, synced_at=now))
                    created += 1
                # Flush per record so a duplicate within one batch resolves to an update
                s.flush()
            s.commit()
        return created, updated

    def upsert_activity(self, fields: Dict[str, Any]) -> str:
        created, _ = self.upsert_activities([fields])
        return CREATED if created else UPDATED

    def list_activities(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        types: Optional[Iterable[ActivityType]] = None,
    ) -> List[ActivityRecord]:
        """Newest first."""
        with Session(self.engine) as s:
            stmt = select(ActivityRecord).where(ActivityRecord.user_id == user_id)
            if since is not None:
                stmt = stmt.where(ActivityRecord.activity_created_at >= since)
            if types is not None:
                stmt = stmt.where(ActivityRecord.activity_type.in_(list(types)))
            stmt = stmt.order_by(ActivityRecord.activity_created_at.desc())
            return list(s.exec(stmt).all())

    def count_activities(self, user_id: str, activity_type: Optional[ActivityType] = None) -> int:
        with Session(self.engine) as s:
            stmt = select(func.count()).select_from(ActivityRecord).where(ActivityRecord.user_id == user_id)
            if activity_type is not None:
                stmt = stmt.where(ActivityRecord.activity_type == activity_type)
            return s.exec(stmt).one()

    # ─── Sync log ─────────────────────────────────────────────────────────────

    def latest_sync_log(self, user_id: str) -> Optional[SyncLog]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncLog)
                .where(SyncLog.user_id == user_id)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            ).first()

    # ─── Disconnect ───────────────────────────────────────────────────────────

    def disconnect(self, user_id: str) -> Optional[Dict[str, int]]:
        """
        Hard-delete the user's integration with its repositories and error
        log, and every ActivityRecord of the user.

        Returns:
            Deletion counts, or None if the user had no integration.
        """
        with Session(self.engine) as s:
            integration = s.exec(
                select(GitLabIntegration).where(GitLabIntegration.user_id == user_id)
            ).first()
            if integration is None:
                return None

            repos = s.exec(
                select(TrackedRepository).where(TrackedRepository.integration_id == integration.id)
            ).all()
            errors = s.exec(
                select(SyncErrorEntry).where(SyncErrorEntry.integration_id == integration.id)
            ).all()
            activities = s.exec(select(ActivityRecord).where(ActivityRecord.user_id == user_id)).all()
            for row in [*repos, *errors, *activities]:
                s.delete(row)
            s.flush()
            s.delete(integration)
            s.commit()

        counts = {
            "repositories": len(repos),
            "sync_errors": len(errors),
            "activities": len(activities),
        }
        logger.info("Disconnected GitLab for user %s (%s)", user_id, counts)
        return counts
