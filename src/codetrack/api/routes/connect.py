"""Connect, test and disconnect routes."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import AnyHttpUrl, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from codetrack.api.deps import (
    get_connection_service,
    get_current_user_id,
    get_store,
    get_sync_service,
    get_token_manager,
)
from codetrack.gitlab.connection import ConnectionService
from codetrack.gitlab.errors import GitLabAPIError, InvalidCredentialsError
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.sync_service import GitLabSyncService, SyncMode
from codetrack.gitlab.tokens import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectTokenRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    personal_access_token: str = ""
    gitlab_username: str = ""
    repositories: Optional[str] = None  # comma-separated project names


class UpdateApiBaseRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    api_base: AnyHttpUrl  # e.g. https://gitlab.example.com/api/v4


def _expiry_from_epoch(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        raise InvalidCredentialsError("X-GitLab-Token-Expires must be epoch seconds")
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


@router.post("/connect-token")
async def connect_token(
    body: ConnectTokenRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
    store: IntegrationStore = Depends(get_store),
):
    """Connect a GitLab account with a personal access token."""
    integration = await service.connect_with_token(
        user_id, body.personal_access_token, body.gitlab_username, body.repositories
    )
    return {
        "success": True,
        "message": "GitLab account connected successfully",
        "integration": {
            "username": integration.gitlab_username,
            "repositoriesCount": len(store.list_repositories(integration.id)),
            "connectedAt": integration.connected_at,
        },
    }


@router.post("/oauth-connect")
async def oauth_connect(
    user_id: str = Depends(get_current_user_id),
    x_gitlab_access_token: Optional[str] = Header(default=None),
    x_gitlab_refresh_token: Optional[str] = Header(default=None),
    x_gitlab_token_expires: Optional[str] = Header(default=None),
    service: ConnectionService = Depends(get_connection_service),
    store: IntegrationStore = Depends(get_store),
    sync_service: GitLabSyncService = Depends(get_sync_service),
):
    """
    Connect with the OAuth tokens from the user's GitLab sign-in.

    The identity provider gateway forwards the session tokens as headers.
    An initial incremental sync runs afterwards; its failure only adds a warning.
    """
    integration = await service.connect_with_oauth(
        user_id,
        x_gitlab_access_token,
        x_gitlab_refresh_token,
        _expiry_from_epoch(x_gitlab_token_expires),
    )

    warning = None
    last_sync_at = None
    try:
        result = await sync_service.sync_user(user_id, SyncMode.INCREMENTAL)
        last_sync_at = result.until
    except (GitLabAPIError, RuntimeError) as exc:
        logger.warning("Initial sync after OAuth connect failed for user %s: %s", user_id, exc)
        warning = "Initial sync failed. Please try syncing manually."

    return {
        "success": True,
        "message": "GitLab account connected successfully via OAuth",
        "integration": {
            "username": integration.gitlab_username,
            "name": integration.profile_name,
            "email": integration.gitlab_email,
            "repositoriesCount": len(store.list_repositories(integration.id)),
            "instance": integration.gitlab_instance,
            "connectedAt": integration.connected_at,
            "lastSyncAt": last_sync_at,
        },
        "warning": warning,
    }


@router.get("/test-connection")
async def test_connection(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
):
    """Check the stored token against GitLab (refreshed first if due)."""
    result = await tokens.test_connection(user_id)
    return {
        "success": result.success,
        "user": result.user,
        "projectCount": result.project_count,
        "apiBase": result.api_base,
        "error": result.error,
        "errorType": result.error_type,
    }


@router.post("/disconnect")
def disconnect(
    user_id: str = Depends(get_current_user_id),
    store: IntegrationStore = Depends(get_store),
):
    """Delete the integration and every activity record of the user."""
    counts = store.disconnect(user_id)
    if counts is None:
        raise HTTPException(status_code=404, detail="GitLab integration not found")
    return {
        "success": True,
        "message": "GitLab account disconnected successfully",
        "deleted": counts,
    }


@router.post("/update-api-base")
def update_api_base(
    body: UpdateApiBaseRequest,
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    store: IntegrationStore = Depends(get_store),
):
    """Point the user's integration at another GitLab API root."""
    integration = tokens.get_active_integration(user_id)
    api_base = str(body.api_base).rstrip("/")
    store.update_api_base(integration.id, api_base)
    logger.info("User %s switched GitLab API base to %s", user_id, api_base)
    return {
        "success": True,
        "message": "GitLab API base URL updated successfully",
        "apiBase": api_base,
    }
