"""
GitLabSyncService: pulls a user's GitLab activity into ActivityRecord rows.

One run moves through these states, each logged:

  IDLE → AUTHENTICATING → ENUMERATING_PROJECTS → PER_PROJECT_FETCH
       → PERSISTING → COMPLETED | PARTIALLY_FAILED

and FAILED when a fatal error aborts the run.

Flow:
  1. Create SyncLog (status="running")
  2. Resolve the integration and a valid access token (refreshing if due)
  3. List member projects (most recently active first, capped at MAX_PROJECTS)
  4. Fetch issues and merge requests assigned to the user once, user-wide
  5. Per project, at most PROJECT_CONCURRENCY at a time: fetch commit pages
     and keep those is_own_commit() attributes to the user
  6. Upsert commits, then that project's issues and MRs, project by project
  7. Refresh tracked repositories, stamp last_sync_at, finish SyncLog

Per-project failures (404, retries exhausted, anything else) become exactly
one entry in SyncResult.errors and nothing is stored for that project.
Failures in steps 2-3 are fatal: they are appended to the integration error
log, the SyncLog is finished with status="error", and the exception is
re-raised.

Idempotency: records are keyed on (user_id, activity_type, remote_id), so a
repeated run over the same window only updates.

One run per user at a time: sync_user() first claims the integration row
(IntegrationStore.claim_sync), so a nightly run, a manual API sync and a
backfill in separate processes exclude each other. Every GitLab call goes to
the integration's own api_base.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlmodel import Session

from codetrack.config import Settings, get_settings
from codetrack.gitlab.client import GitLabClient
from codetrack.gitlab.errors import (
    GitLabAPIError,
    MalformedResponseError,
    SyncInProgressError,
    TokenRefreshError,
)
from codetrack.gitlab.matching import is_own_commit
from codetrack.gitlab.normalizer import (
    normalize_commit,
    normalize_issue,
    normalize_merge_request,
    normalize_project,
)
from codetrack.gitlab.retry import call_with_retry
from codetrack.gitlab.store import IntegrationStore
from codetrack.models.integration import GitLabIntegration
from codetrack.models.sync import SyncLog

logger = logging.getLogger(__name__)

class SyncState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    ENUMERATING_PROJECTS = "enumerating_projects"
    PER_PROJECT_FETCH = "per_project_fetch"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"  # since last successful sync, else 30 days
    FULL = "full"                # 365 days
    CUSTOM = "custom"            # explicit day count


@dataclass
class ProjectError:
    project: str
    message: str
    project_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"project": self.project, "project_id": self.project_id, "message": self.message}


@dataclass
class SyncResult:
    mode: SyncMode
    since: datetime
    until: datetime
    state: SyncState = SyncState.IDLE
    projects_scanned: int = 0
    commits_processed: int = 0  # every commit the API returned, before author filtering
    commits_matched: int = 0
    new_records: int = 0
    updated_records: int = 0
    issues_processed: int = 0
    merge_requests_processed: int = 0
    errors: List[ProjectError] = field(default_factory=list)


@dataclass
class _ProjectOutcome:
    project: Dict[str, Any]
    commits_fetched: int
    commits: List[Dict[str, Any]]
    issues: List[Dict[str, Any]]
    merge_requests: List[Dict[str, Any]]

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [*self.commits, *self.issues, *self.merge_requests]


class GitLabSyncService:
    """Orchestrates GitLab → DB sync for one user, or all active users."""

    def __init__(
        self,
        client,
        engine,
        token_manager,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            client: GitLabClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            token_manager: TokenManager resolving integrations and tokens.
            settings: Defaults to get_settings().
            sleep: Used for retry backoff and scheduled-run spacing.
        """
        self.client = client
        self.engine = engine
        self.tokens = token_manager
        self.store = IntegrationStore(engine)
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def sync_user(
        self,
        user_id: str,
        mode: SyncMode = SyncMode.INCREMENTAL,
        days: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SyncResult:
        """
        Run one sync for a user.

        Args:
            user_id: Application user id.
            mode: Window selection, see SyncMode.
            days: Window length for SyncMode.CUSTOM.
            deadline_seconds: Ceiling for the per-project phase. Projects not
                finished by then are cancelled and reported in errors.

        Raises:
            SyncInProgressError: a run for this user is already in flight.
            IntegrationNotFoundError, TokenDecryptionError, TokenRefreshError,
            GitLabAPIError: fatal failures (after recording them).
        """
        claimed_at: Optional[datetime] = datetime.utcnow()
        if not self.store.claim_sync(
            user_id, now=claimed_at, stale_after=self.settings.sync_claim_timeout_seconds
        ):
            if self.store.get_by_user(user_id) is not None:
                raise SyncInProgressError(f"A GitLab sync for user {user_id} is already running")
            # No integration row to claim; _run records the not-found failure
            claimed_at = None
        try:
            return await self._run(user_id, SyncMode(mode), days, deadline_seconds)
        finally:
            if claimed_at is not None:
                self.store.release_sync(user_id, claimed_at)

    async def sync_all_active(
        self,
        deadline_seconds: Optional[float] = None,
        delay_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Incremental sync for every active integration, one user at a time.

        A failing user is logged and skipped; the sweep always finishes.
        """
        if delay_seconds is None:
            delay_seconds = self.settings.scheduled_sync_delay_seconds
        integrations = self.store.list_active()
        summary: Dict[str, Any] = {"users": len(integrations), "succeeded": 0, "failed": 0, "results": {}}

        for i, integration in enumerate(integrations):
            if i and delay_seconds:
                await self._sleep(delay_seconds)
            try:
                result = await self.sync_user(
                    integration.user_id, SyncMode.INCREMENTAL, deadline_seconds=deadline_seconds
                )
            except Exception as exc:
                logger.error("Scheduled sync failed for user %s: %s", integration.user_id, exc)
                summary["failed"] += 1
                summary["results"][integration.user_id] = {"error": str(exc)}
                continue
            summary["succeeded"] += 1
            summary["results"][integration.user_id] = {
                "new_records": result.new_records,
                "updated_records": result.updated_records,
                "errors": len(result.errors),
            }

        logger.info(
            "Scheduled sync finished: %d users, %d succeeded, %d failed",
            summary["users"], summary["succeeded"], summary["failed"],
        )
        return summary

    # ─── Run ──────────────────────────────────────────────────────────────────

    async def _run(
        self,
        user_id: str,
        mode: SyncMode,
        days: Optional[int],
        deadline_seconds: Optional[float],
    ) -> SyncResult:
        log = self._create_sync_log(user_id, mode)
        integration: Optional[GitLabIntegration] = None
        state = SyncState.IDLE

        def transition(new_state: SyncState) -> None:
            nonlocal state
            logger.info("Sync %s user=%s: %s → %s", log.id, user_id, state.value, new_state.value)
            state = new_state

        try:
            transition(SyncState.AUTHENTICATING)
            integration = self.tokens.get_active_integration(user_id)
            token = await self.tokens.access_token_for(integration)

            now = datetime.utcnow()
            result = SyncResult(mode=mode, since=self._window_start(integration, mode, days, now), until=now)

            transition(SyncState.ENUMERATING_PROJECTS)
            api_base = integration.api_base
            projects = await self._list_projects(token, api_base)
            issues_by_project, mrs_by_project = await self._fetch_assigned(token, api_base, result)

            transition(SyncState.PER_PROJECT_FETCH)
            outcomes = await self._fetch_projects(
                projects, token, integration, result, issues_by_project, mrs_by_project, deadline_seconds
            )

            transition(SyncState.PERSISTING)
            matched_ids = set()
            for outcome in outcomes:
                created, updated = self.store.upsert_activities(outcome.records)
                result.new_records += created
                result.updated_records += updated
                result.projects_scanned += 1
                result.commits_processed += outcome.commits_fetched
                result.commits_matched += len(outcome.commits)
                result.issues_processed += len(outcome.issues)
                result.merge_requests_processed += len(outcome.merge_requests)
                if outcome.records:
                    matched_ids.add(outcome.project["id"])

            self.store.refresh_repositories(
                integration.id,
                [normalize_project(p) for p in projects],
                synced_ids=[o.project["id"] for o in outcomes],
                matched_ids=matched_ids,
                now=now,
            )
            self.store.mark_synced(
                integration.id,
                now=now,
                successful=(result.new_records + result.updated_records) > 0,
            )

            transition(SyncState.PARTIALLY_FAILED if result.errors else SyncState.COMPLETED)
            result.state = state
            self._finish_sync_log(log, status="partial" if result.errors else "success", result=result)
            logger.info(
                "Sync %s user=%s: %d projects, %d/%d commits matched, %d new, %d updated, %d errors",
                log.id, user_id, result.projects_scanned, result.commits_matched,
                result.commits_processed, result.new_records, result.updated_records, len(result.errors),
            )
            return result

        except asyncio.CancelledError:
            transition(SyncState.FAILED)
            self._finish_sync_log(log, status="error", error_message="Sync cancelled")
            raise

        except Exception as exc:
            transition(SyncState.FAILED)
            logger.error("Sync %s user=%s failed: %s", log.id, user_id, exc)
            # Rejected refreshes are already recorded by TokenManager
            if integration is not None and type(exc) is not TokenRefreshError:
                self.store.append_sync_error(integration.id, f"Sync failed: {exc}")
            self._finish_sync_log(log, status="error", error_message=str(exc))
            raise

    def _window_start(
        self,
        integration: GitLabIntegration,
        mode: SyncMode,
        days: Optional[int],
        now: datetime,
    ) -> datetime:
        if mode == SyncMode.FULL:
            return now - timedelta(days=self.settings.full_sync_days)
        if mode == SyncMode.CUSTOM:
            if not days or days <= 0:
                raise ValueError("Custom sync requires a positive number of days")
            return now - timedelta(days=days)
        if integration.last_successful_sync_at is not None:
            return integration.last_successful_sync_at
        return now - timedelta(days=self.settings.incremental_default_days)

    # ─── Fetching ─────────────────────────────────────────────────────────────

    async def _retrying(self, fn, label: str):
        return await call_with_retry(
            fn,
            rate_limit_retries=self.settings.rate_limit_retries,
            backoff=self.settings.retry_backoff_seconds,
            sleep=self._sleep,
            label=label,
        )

    async def _list_projects(self, token: str, api_base: str) -> List[Dict[str, Any]]:
        per_page = self.settings.per_page
        max_projects = self.settings.max_projects

        async def fetch(page: int) -> List[Dict[str, Any]]:
            try:
                return await self._retrying(
                    lambda: self.client.get_user_projects(
                        token, per_page=per_page, page=page, api_base=api_base
                    ),
                    f"projects page {page}",
                )
            except MalformedResponseError as exc:
                logger.warning("Ignoring malformed projects page %d: %s", page, exc)
                return []

        return await GitLabClient.get_all_pages(
            fetch,
            per_page=per_page,
            max_pages=max(1, math.ceil(max_projects / per_page)),
            max_items=max_projects,
        )

    async def _fetch_assigned(self, token: str, api_base: str, result: SyncResult):
        """Issues and MRs assigned to the user, grouped by project id. Failures are non-fatal."""
        issues = await self._fetch_assigned_kind(
            self.client.get_user_issues, "issues", token, api_base, result
        )
        merge_requests = await self._fetch_assigned_kind(
            self.client.get_user_merge_requests, "merge requests", token, api_base, result
        )
        return issues, merge_requests

    async def _fetch_assigned_kind(
        self, method, label: str, token: str, api_base: str, result: SyncResult
    ) -> Dict[Any, List[Dict[str, Any]]]:
        per_page = self.settings.per_page

        async def fetch(page: int) -> List[Dict[str, Any]]:
            return await self._retrying(
                lambda: method(
                    token, state="all", per_page=per_page, page=page,
                    updated_after=result.since, api_base=api_base,
                ),
                f"{label} page {page}",
            )

        try:
            items = await GitLabClient.get_all_pages(
                fetch, per_page=per_page, max_pages=self.settings.commit_page_limit
            )
        except MalformedResponseError as exc:
            logger.warning("Ignoring malformed %s response: %s", label, exc)
            items = []
        except GitLabAPIError as exc:
            logger.warning("Could not fetch assigned %s: %s", label, exc)
            result.errors.append(ProjectError(project=f"assigned {label}", message=str(exc)))
            items = []

        by_project: Dict[Any, List[Dict[str, Any]]] = {}
        for item in items:
            by_project.setdefault(item.get("project_id"), []).append(item)
        return by_project

    async def _fetch_projects(
        self,
        projects: List[Dict[str, Any]],
        token: str,
        integration: GitLabIntegration,
        result: SyncResult,
        issues_by_project: Dict[int, List[Dict[str, Any]]],
        mrs_by_project: Dict[int, List[Dict[str, Any]]],
        deadline_seconds: Optional[float],
    ) -> List[_ProjectOutcome]:
        """Fetch every project concurrently; return successful outcomes in project order."""
        if not projects:
            return []
        semaphore = asyncio.Semaphore(self.settings.project_concurrency)
        tasks = [
            asyncio.create_task(
                self._fetch_project(
                    semaphore, project, token, integration,
                    issues_by_project.get(project["id"], []),
                    mrs_by_project.get(project["id"], []),
                    result.since,
                )
            )
            for project in projects
        ]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline_seconds)
        except asyncio.CancelledError:
            # Project tasks must finish unwinding before the run claim is released
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for project, task in zip(projects, tasks):
            name = project.get("name") or str(project["id"])
            if task in pending:
                logger.warning("Project %s abandoned: deadline of %ss reached", name, deadline_seconds)
                result.errors.append(ProjectError(
                    project=name,
                    project_id=project["id"],
                    message=f"Sync deadline of {deadline_seconds:g}s exceeded before project finished",
                ))
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("Project %s failed: %s", name, exc)
                result.errors.append(ProjectError(project=name, project_id=project["id"], message=str(exc)))
                continue
            outcomes.append(task.result())
        return outcomes

    async def _fetch_project(
        self,
        semaphore: asyncio.Semaphore,
        project: Dict[str, Any],
        token: str,
        integration: GitLabIntegration,
        issues: List[Dict[str, Any]],
        merge_requests: List[Dict[str, Any]],
        since: datetime,
    ) -> _ProjectOutcome:
        project_id = project["id"]
        per_page = self.settings.per_page

        async def fetch(page: int) -> List[Dict[str, Any]]:
            try:
                return await self._retrying(
                    lambda: self.client.get_project_commits(
                        project_id, token, since=since, per_page=per_page, page=page,
                        with_stats=True, api_base=integration.api_base,
                    ),
                    f"project {project_id} commits page {page}",
                )
            except MalformedResponseError as exc:
                logger.warning("Ignoring malformed commits page for project %s: %s", project_id, exc)
                return []

        async with semaphore:
            raw_commits = await GitLabClient.get_all_pages(
                fetch, per_page=per_page, max_pages=self.settings.commit_page_limit
            )

        user_id = integration.user_id
        return _ProjectOutcome(
            project=project,
            commits_fetched=len(raw_commits),
            commits=[
                normalize_commit(c, project, user_id)
                for c in raw_commits
                if is_own_commit(c, integration)
            ],
            issues=[normalize_issue(i, user_id, project) for i in issues],
            merge_requests=[normalize_merge_request(m, user_id, project) for m in merge_requests],
        )

    # ─── Sync log ─────────────────────────────────────────────────────────────

    def _create_sync_log(self, user_id: str, mode: SyncMode) -> SyncLog:
        log = SyncLog(user_id=user_id, mode=mode.value, started_at=datetime.utcnow(), status="running")
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        result: Optional[SyncResult] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = datetime.utcnow()
            db_log.error_message = error_message
            if result is not None:
                db_log.projects_scanned = result.projects_scanned
                db_log.commits_processed = result.commits_processed
                db_log.new_records = result.new_records
                db_log.updated_records = result.updated_records
                db_log.error_count = len(result.errors)
            s.add(db_log)
            s.commit()
