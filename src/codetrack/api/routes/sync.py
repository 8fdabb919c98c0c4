"""Sync trigger, status and tracked repository routes."""
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from codetrack.api.deps import get_current_user_id, get_store, get_sync_service
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.sync_service import GitLabSyncService, SyncMode, SyncResult
from codetrack.models.activity import ActivityType

logger = logging.getLogger(__name__)

router = APIRouter()

DISCONNECT_POLL_SECONDS = 1.0


def sync_result_to_dict(result: SyncResult) -> Dict[str, Any]:
    return {
        "mode": result.mode.value,
        "state": result.state.value,
        "since": result.since,
        "until": result.until,
        "projectsScanned": result.projects_scanned,
        "commitsProcessed": result.commits_processed,
        "commitsMatched": result.commits_matched,
        "newRecords": result.new_records,
        "updatedRecords": result.updated_records,
        "issuesProcessed": result.issues_processed,
        "mergeRequestsProcessed": result.merge_requests_processed,
        "errors": [
            {"project": e.project, "projectId": e.project_id, "message": e.message}
            for e in result.errors
        ],
    }


async def _cancel_on_disconnect(request: Request, coro):
    """Await coro, cancelling it if the HTTP client goes away first."""
    task = asyncio.create_task(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected from %s, cancelling sync", request.url.path)
                task.cancel()
                return await task
    finally:
        if not task.done():
            task.cancel()


@router.post("/sync")
async def trigger_sync(
    request: Request,
    days: Optional[int] = Query(default=None, ge=1),
    full_sync: bool = Query(default=False, alias="fullSync"),
    user_id: str = Depends(get_current_user_id),
    service: GitLabSyncService = Depends(get_sync_service),
):
    """
    Run a sync for the calling user and return its summary.

    `days` selects a custom window, `fullSync=true` the full year; otherwise
    the sync is incremental from the last successful run.
    """
    if days is not None:
        mode = SyncMode.CUSTOM
    elif full_sync:
        mode = SyncMode.FULL
    else:
        mode = SyncMode.INCREMENTAL

    result = await _cancel_on_disconnect(request, service.sync_user(user_id, mode, days=days))
    return {
        "success": True,
        "message": "GitLab activity synced successfully",
        "syncResults": sync_result_to_dict(result),
    }


@router.get("/status")
def sync_status(
    user_id: str = Depends(get_current_user_id),
    store: IntegrationStore = Depends(get_store),
):
    """Connection state and sync bookkeeping for the calling user."""
    integration = store.get_by_user(user_id)
    if integration is None:
        return {"connected": False}

    repos = store.list_repositories(integration.id)
    log = store.latest_sync_log(user_id)
    return {
        "connected": integration.is_active,
        "username": integration.gitlab_username,
        "email": integration.gitlab_email,
        "name": integration.profile_name,
        "avatarUrl": integration.profile_avatar_url,
        "tokenType": integration.token_type.value,
        "tokenExpiresAt": integration.token_expires_at,
        "instance": integration.gitlab_instance,
        "connectedAt": integration.connected_at,
        "lastSyncAt": integration.last_sync_at,
        "lastSuccessfulSyncAt": integration.last_successful_sync_at,
        "repositoryCount": len(repos),
        "trackedRepositoryCount": sum(1 for r in repos if r.is_tracked),
        "lastSyncStatus": log.status if log else "never_run",
        "activityCounts": {
            "commits": store.count_activities(user_id, ActivityType.COMMIT),
            "issues": store.count_activities(user_id, ActivityType.ISSUE),
            "mergeRequests": store.count_activities(user_id, ActivityType.MERGE_REQUEST),
        },
        "recentErrors": [
            {"message": e.message, "timestamp": e.timestamp}
            for e in store.list_sync_errors(integration.id, limit=5)
        ],
    }


@router.get("/repositories")
def list_repositories(
    user_id: str = Depends(get_current_user_id),
    store: IntegrationStore = Depends(get_store),
):
    """Tracked repositories in enumeration order."""
    integration = store.get_by_user(user_id, active_only=True)
    if integration is None:
        return {"connected": False, "repositories": []}
    return {
        "connected": True,
        "repositories": [
            {
                "projectId": r.project_id,
                "name": r.name,
                "fullPath": r.full_path,
                "url": r.url,
                "description": r.description,
                "visibility": r.visibility,
                "isTracked": r.is_tracked,
                "lastActivity": r.last_activity,
                "lastSyncAt": r.last_sync_at,
            }
            for r in store.list_repositories(integration.id)
        ],
    }
