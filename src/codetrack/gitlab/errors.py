"""
Exception types for the GitLab integration.

Remote failures carry the HTTP status, the request URL and the parsed
response body so callers can tell auth problems from rate limiting from
missing resources without string matching.

Integration-level failures (no integration, unreadable or unrefreshable
token) mean the user must reconnect; they are never retried.
"""
from typing import Any, Optional


# ── Remote API errors ─────────────────────────────────────────────────────────

class GitLabAPIError(Exception):
    """A GitLab API call failed."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        url: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.url = url
        self.body = body


class GitLabAuthError(GitLabAPIError):
    """401/403: token expired, revoked, or lacking scopes."""

    def __init__(self, message: str, *, insufficient_scope: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.insufficient_scope = insufficient_scope


class GitLabNotFoundError(GitLabAPIError):
    """404: the resource does not exist (e.g. a project without a repository)."""


class GitLabRateLimitError(GitLabAPIError):
    """429: per-token rate limit exceeded."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class GitLabServerError(GitLabAPIError):
    """5xx from GitLab."""


class GitLabTimeoutError(GitLabAPIError):
    """The request timed out or the connection failed before a response."""


class MalformedResponseError(GitLabAPIError):
    """Body was not JSON, or not the shape the endpoint promises."""


# ── Integration / token errors ────────────────────────────────────────────────

class IntegrationNotFoundError(RuntimeError):
    """No active GitLab integration exists for the user."""


class TokenDecryptionError(RuntimeError):
    """Stored token ciphertext could not be decrypted. Reconnect required."""


class TokenRefreshError(RuntimeError):
    """The OAuth token endpoint rejected the refresh. Reconnect required."""


class InvalidRefreshTokenError(TokenRefreshError):
    """The refresh token is missing or undecryptable; no refresh was attempted."""


class InvalidCredentialsError(ValueError):
    """Connect request rejected: token invalid, or it belongs to another GitLab user."""


class SyncInProgressError(RuntimeError):
    """Another sync run for the same user has not finished yet."""


def classify_error(exc: Exception) -> str:
    """Short machine-readable category for an exception, used in API responses."""
    if isinstance(exc, GitLabAuthError):
        if exc.insufficient_scope:
            return "insufficient_scope"
        return "auth" if exc.status == 401 else "permission"
    if isinstance(exc, GitLabNotFoundError):
        return "not_found"
    if isinstance(exc, GitLabRateLimitError):
        return "rate_limit"
    if isinstance(exc, GitLabTimeoutError):
        return "timeout"
    if isinstance(exc, GitLabServerError):
        return "server_error"
    if isinstance(exc, MalformedResponseError):
        return "malformed_response"
    return "unknown"
