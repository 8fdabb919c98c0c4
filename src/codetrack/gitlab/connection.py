"""
Connecting a user's GitLab account.

Two entry points, one stored shape:

  connect_with_token()  personal access token pasted by the user; the
                        claimed username must match the token owner.
  connect_with_oauth()  access/refresh token pair obtained by the identity
                        provider during GitLab sign-in.

Both validate the token against /user on the configured GITLAB_API_BASE,
encrypt it with the TokenVault, save the integration (resetting its api_base
to that default) and then try to fill the tracked repository list. A failed
repository fetch never fails the connect.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from codetrack.config import Settings, get_settings
from codetrack.gitlab.client import GitLabClient
from codetrack.gitlab.errors import GitLabAPIError, GitLabAuthError, InvalidCredentialsError
from codetrack.gitlab.normalizer import normalize_project
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.vault import TokenVault
from codetrack.models.integration import GitLabIntegration, TokenType

logger = logging.getLogger(__name__)


def parse_repository_filter(repositories: Optional[str]) -> List[str]:
    """'a, b,,c' → ['a', 'b', 'c']"""
    if not repositories:
        return []
    return [r.strip() for r in repositories.split(",") if r.strip()]


class ConnectionService:
    """Creates and refreshes GitLabIntegration rows from user-supplied credentials."""

    def __init__(
        self,
        store: IntegrationStore,
        client: GitLabClient,
        vault: TokenVault,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.client = client
        self.vault = vault
        self.settings = settings or get_settings()

    async def connect_with_token(
        self,
        user_id: str,
        personal_access_token: str,
        gitlab_username: str,
        repositories: Optional[str] = None,
    ) -> GitLabIntegration:
        """
        Connect with a personal access token.

        Args:
            repositories: Optional comma-separated project names. When given,
                only those projects start out tracked.

        Raises:
            InvalidCredentialsError: missing fields, token rejected by GitLab,
                or gitlab_username is not the token owner.
            GitLabAPIError: GitLab failed for a reason other than the token.
        """
        if not personal_access_token or not gitlab_username:
            raise InvalidCredentialsError("Personal Access Token and GitLab username are required")

        try:
            user = await self.client.get_current_user(
                personal_access_token, api_base=self.settings.gitlab_api_base
            )
        except GitLabAuthError as exc:
            raise InvalidCredentialsError(
                "Invalid Personal Access Token or insufficient permissions"
            ) from exc

        if user.get("username") != gitlab_username:
            raise InvalidCredentialsError("GitLab username does not match the token owner")

        wanted = parse_repository_filter(repositories)
        integration = self.store.save_connection(
            user_id,
            **self._profile_fields(user),
            access_token=self.vault.encrypt(personal_access_token),
            refresh_token=None,
            token_type=TokenType.PERSONAL_ACCESS_TOKEN,
            token_expires_at=None,
            specific_repositories_json=json.dumps(wanted),
        )
        logger.info("User %s connected GitLab account %s (token)", user_id, user.get("username"))

        await self._populate_repositories(integration, personal_access_token, wanted)
        return integration

    async def connect_with_oauth(
        self,
        user_id: str,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> GitLabIntegration:
        """
        Connect with OAuth tokens from the user's sign-in session.

        Args:
            expires_at: Access token expiry (naive UTC), if the provider gave one.

        Raises:
            InvalidCredentialsError: no access token, or GitLab rejected it.
        """
        if not access_token:
            raise InvalidCredentialsError(
                "No GitLab access token found. Please sign in with GitLab first."
            )

        test = await self.client.test_connection(access_token, api_base=self.settings.gitlab_api_base)
        if not test.success:
            raise InvalidCredentialsError(f"GitLab connection failed: {test.error}")

        integration = self.store.save_connection(
            user_id,
            **self._profile_fields(test.user),
            access_token=self.vault.encrypt(access_token),
            refresh_token=self.vault.encrypt(refresh_token) if refresh_token else None,
            token_type=TokenType.OAUTH,
            token_expires_at=expires_at,
            specific_repositories_json=None,
        )
        logger.info("User %s connected GitLab account %s (oauth)", user_id, test.user.get("username"))

        await self._populate_repositories(integration, access_token, [])
        return integration

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _profile_fields(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "gitlab_user_id": user["id"],
            "gitlab_username": user["username"],
            "gitlab_email": user.get("email"),
            "profile_name": user.get("name"),
            "profile_avatar_url": user.get("avatar_url"),
            "profile_web_url": user.get("web_url"),
            "gitlab_instance": self.settings.gitlab_issuer,
            "api_base": self.settings.gitlab_api_base,
        }

    async def _populate_repositories(
        self, integration: GitLabIntegration, token: str, wanted: List[str]
    ) -> int:
        """Best effort: fill the tracked list from the first page of projects."""
        try:
            projects = await self.client.get_user_projects(
                token, per_page=self.settings.per_page, api_base=integration.api_base
            )
        except GitLabAPIError as exc:
            logger.warning("Could not fetch repositories for user %s: %s", integration.user_id, exc)
            return 0

        rows = []
        for raw in projects[: self.settings.max_projects]:
            fields = normalize_project(raw)
            fields["is_tracked"] = not wanted or fields["name"] in wanted
            rows.append(fields)
        return self.store.replace_repositories(integration.id, rows)
