"""
Live GitLab views: the user's merge requests and the language breakdown of
their tracked repositories.

Unlike /analytics these read GitLab directly on every request, against the
integration's own api_base. Nothing is stored.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from codetrack.analysis.languages import language_breakdown
from codetrack.api.deps import get_client, get_current_user_id, get_store, get_token_manager
from codetrack.config import get_settings
from codetrack.gitlab.client import GitLabClient
from codetrack.gitlab.errors import GitLabAPIError
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.tokens import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _merge_request_to_dict(mr: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": mr.get("id"),
        "iid": mr.get("iid"),
        "projectId": mr.get("project_id"),
        "title": mr.get("title"),
        "state": mr.get("state"),
        "sourceBranch": mr.get("source_branch"),
        "targetBranch": mr.get("target_branch"),
        "createdAt": mr.get("created_at"),
        "updatedAt": mr.get("updated_at"),
        "mergedAt": mr.get("merged_at"),
        "userNotesCount": mr.get("user_notes_count", 0),
        "upvotes": mr.get("upvotes", 0),
        "downvotes": mr.get("downvotes", 0),
        "webUrl": mr.get("web_url"),
    }


@router.get("/merge-requests")
async def list_merge_requests(
    state: str = Query(default="all", pattern="^(opened|closed|merged|all)$"),
    limit: int = Query(default=100, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    client: GitLabClient = Depends(get_client),
):
    """Merge requests the user authored, most recently updated first."""
    integration = tokens.get_active_integration(user_id)
    token = await tokens.access_token_for(integration)
    merge_requests = await client.get_user_merge_requests(
        token,
        scope="created_by_me",
        state=state,
        order_by="updated_at",
        per_page=limit,
        api_base=integration.api_base,
    )
    return {
        "success": True,
        "mergeRequests": [_merge_request_to_dict(mr) for mr in merge_requests],
        "total": len(merge_requests),
    }


@router.get("/languages")
async def languages(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    client: GitLabClient = Depends(get_client),
    store: IntegrationStore = Depends(get_store),
):
    """
    Language share across tracked repositories.

    A project whose languages cannot be read is skipped and listed in
    skippedProjects; the breakdown covers the rest.
    """
    integration = tokens.get_active_integration(user_id)
    token = await tokens.access_token_for(integration)
    repos = [r for r in store.list_repositories(integration.id) if r.is_tracked]
    semaphore = asyncio.Semaphore(get_settings().project_concurrency)

    async def fetch(project_id: int) -> Optional[Dict[str, float]]:
        async with semaphore:
            try:
                return await client.get_project_languages(
                    project_id, token, api_base=integration.api_base
                )
            except GitLabAPIError as exc:
                logger.warning("Languages unavailable for project %s: %s", project_id, exc)
                return None

    results = await asyncio.gather(*(fetch(r.project_id) for r in repos))
    return {
        "success": True,
        **language_breakdown([langs for langs in results if langs is not None]),
        "skippedProjects": [r.name for r, langs in zip(repos, results) if langs is None],
    }
