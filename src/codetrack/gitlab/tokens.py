"""
Token lifecycle for GitLab integrations.

OAuth and personal-access-token integrations share one interface:
get_valid_access_token() and test_connection(). Only OAuth tokens expire;
they are refreshed lazily when a caller asks for a token and the stored
expiry falls inside the refresh margin (5 minutes by default). There is no
background refresh timer.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from codetrack.config import Settings, get_settings
from codetrack.gitlab.client import ConnectionTest, GitLabClient
from codetrack.gitlab.errors import (
    GitLabAPIError,
    IntegrationNotFoundError,
    InvalidRefreshTokenError,
    TokenDecryptionError,
    TokenRefreshError,
)
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.vault import TokenVault
from codetrack.models.integration import GitLabIntegration, TokenType

logger = logging.getLogger(__name__)


class TokenManager:
    """Hands out usable access tokens for a user's GitLab integration."""

    def __init__(
        self,
        store: IntegrationStore,
        vault: TokenVault,
        client: GitLabClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.vault = vault
        self.client = client
        self.settings = settings or get_settings()

    def get_active_integration(self, user_id: str) -> GitLabIntegration:
        """
        Raises:
            IntegrationNotFoundError: no active integration for the user.
        """
        integration = self.store.get_by_user(user_id, active_only=True)
        if integration is None:
            raise IntegrationNotFoundError(f"No active GitLab integration for user {user_id}")
        return integration

    def needs_refresh(self, integration: GitLabIntegration, now: Optional[datetime] = None) -> bool:
        """True for OAuth tokens that expire within the refresh margin (or already expired)."""
        if integration.token_type != TokenType.OAUTH or integration.token_expires_at is None:
            return False
        now = now or datetime.utcnow()
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        return integration.token_expires_at <= now + margin

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Return a plaintext access token that is good for at least the refresh margin.

        Raises:
            IntegrationNotFoundError, TokenDecryptionError, TokenRefreshError.
        """
        integration = self.get_active_integration(user_id)
        return await self.access_token_for(integration)

    async def access_token_for(self, integration: GitLabIntegration) -> str:
        if self.needs_refresh(integration):
            logger.info("Access token for user %s expires soon, refreshing", integration.user_id)
            return await self.refresh_token(integration)

        token = self.vault.decrypt(integration.access_token)
        if token is None:
            raise TokenDecryptionError(
                "Failed to decrypt GitLab access token. Please reconnect your GitLab account."
            )
        return token

    async def refresh_token(self, integration: GitLabIntegration) -> str:
        """
        Exchange the stored refresh token for a new access token and persist both.

        Raises:
            InvalidRefreshTokenError: no refresh token, or it cannot be
                decrypted. Nothing is sent to GitLab.
            TokenRefreshError: GitLab rejected the refresh. Recorded in the
                integration error log.
        """
        refresh_token = self.vault.decrypt(integration.refresh_token)
        if refresh_token is None:
            raise InvalidRefreshTokenError(
                "No usable refresh token available. Please reconnect your GitLab account."
            )

        try:
            tokens = await self.client.refresh_oauth_token(
                integration.gitlab_instance or self.settings.gitlab_issuer,
                refresh_token,
                client_id=self.settings.gitlab_client_id,
                client_secret=self.settings.gitlab_client_secret,
                redirect_uri=self.settings.gitlab_redirect_uri or None,
            )
        except GitLabAPIError as exc:
            message = f"Token refresh failed: {exc}"
            logger.error("GitLab token refresh failed for user %s: %s", integration.user_id, exc)
            self.store.append_sync_error(integration.id, message)
            raise TokenRefreshError(message) from exc

        lifetime = tokens.expires_in or self.settings.default_token_lifetime_seconds
        updated = self.store.update_tokens(
            integration.id,
            access_token=self.vault.encrypt(tokens.access_token),
            refresh_token=self.vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            token_expires_at=datetime.utcnow() + timedelta(seconds=lifetime),
        )
        integration.access_token = updated.access_token
        integration.refresh_token = updated.refresh_token
        integration.token_expires_at = updated.token_expires_at
        logger.info("Refreshed GitLab token for user %s", integration.user_id)
        return tokens.access_token

    async def test_connection(self, user_id: str) -> ConnectionTest:
        """Check the current token against the integration's own instance, refreshing first if needed."""
        integration = self.get_active_integration(user_id)
        token = await self.access_token_for(integration)
        return await self.client.test_connection(token, api_base=integration.api_base)
