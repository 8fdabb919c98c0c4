"""Analytics routes."""
from fastapi import APIRouter, Depends, Query

from codetrack.analysis.report import build_activity_report
from codetrack.api.deps import get_current_user_id, get_db_engine
from codetrack.gitlab.errors import IntegrationNotFoundError
from codetrack.gitlab.store import IntegrationStore

router = APIRouter()


@router.get("/analytics")
def analytics(
    days: int = Query(default=90, ge=1, le=3650),
    include_stats: bool = Query(default=False, alias="includeStats"),
    user_id: str = Depends(get_current_user_id),
    engine=Depends(get_db_engine),
):
    """Commit analytics computed from stored activity; GitLab is not called."""
    integration = IntegrationStore(engine).get_by_user(user_id, active_only=True)
    if integration is None:
        raise IntegrationNotFoundError(f"No active GitLab integration for user {user_id}")

    report = build_activity_report(engine, user_id, days=days, include_stats=include_stats)
    return {
        "success": True,
        "username": integration.gitlab_username,
        "lastSyncAt": integration.last_sync_at,
        **report.to_dict(),
    }
