"""
Async GitLab REST client.

Stateless with respect to users: every call takes the bearer token it should
use, and optionally the API root of the user's instance, so one client (and
one connection pool) serves every integration.

Each request carries its own timeout. Non-2xx responses raise the typed errors
from codetrack.gitlab.errors, with status, URL and parsed body attached.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from codetrack.config import get_settings
from codetrack.gitlab.errors import (
    GitLabAPIError,
    GitLabAuthError,
    GitLabNotFoundError,
    GitLabRateLimitError,
    GitLabServerError,
    GitLabTimeoutError,
    MalformedResponseError,
    classify_error,
)

logger = logging.getLogger(__name__)

REQUIRED_SCOPES = "api, read_api, read_user, read_repository"


def _iso(dt: datetime) -> str:
    """Naive-UTC datetime → ISO 8601 string GitLab accepts."""
    return dt.replace(microsecond=0).isoformat() + "Z"


@dataclass
class ConnectionTest:
    """Outcome of GitLabClient.test_connection()."""
    success: bool
    user: Optional[Dict[str, Any]] = None
    project_count: int = 0
    api_base: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None
    status: Optional[int] = None
    projects_error: Optional[str] = None


@dataclass
class OAuthTokens:
    """Parsed response of the OAuth token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class GitLabClient:
    """
    Thin async wrapper over the GitLab v4 REST API.

    Usage:
        async with GitLabClient() as client:
            user = await client.get_current_user(token)
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_base: API root, e.g. https://gitlab.example.com/api/v4.
                      Defaults to GITLAB_API_BASE.
            timeout: Per-request timeout in seconds. Defaults to
                     REQUEST_TIMEOUT_SECONDS.
            transport: Optional httpx transport (httpx.MockTransport in tests).
        """
        settings = get_settings()
        self.api_base = (api_base or settings.gitlab_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        params = {k: v for k, v in (params or {}).items() if v is not None}

        logger.debug("GitLab %s %s", method, url)
        try:
            response = await self._http.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise GitLabTimeoutError(
                f"GitLab API request timed out after {self.timeout:g} seconds", url=url
            ) from exc
        except httpx.TransportError as exc:
            raise GitLabTimeoutError(f"GitLab API connection failed: {exc}", url=url) from exc

        if response.is_error:
            raise self._error_for(response, url)

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Failed to parse GitLab API response as JSON: {url}",
                status=response.status_code,
                url=url,
            ) from exc

    @staticmethod
    def _error_for(response: httpx.Response, url: str) -> GitLabAPIError:
        status = response.status_code
        body: Any
        try:
            body = response.json()
        except ValueError:
            body = response.text
        text = body if isinstance(body, str) else str(body)
        kwargs = {"status": status, "url": url, "body": body}

        if status == 401:
            return GitLabAuthError(
                "GitLab API authentication error: token may have expired or is invalid",
                **kwargs,
            )
        if status == 403:
            if "insufficient_scope" in text:
                return GitLabAuthError(
                    "GitLab API permission error: token has insufficient scopes. "
                    f"Required scopes: {REQUIRED_SCOPES}",
                    insufficient_scope=True,
                    **kwargs,
                )
            return GitLabAuthError(f"GitLab API forbidden: access denied to {url}", **kwargs)
        if status == 404:
            return GitLabNotFoundError(f"GitLab API resource not found: {url}", **kwargs)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_seconds = None
            return GitLabRateLimitError(
                "GitLab API rate limit exceeded", retry_after=retry_seconds, **kwargs
            )
        if status >= 500:
            return GitLabServerError(f"GitLab API server error ({status}): {text}", **kwargs)
        return GitLabAPIError(f"GitLab API error ({status}): {text}", **kwargs)

    def _base(self, api_base: Optional[str]) -> str:
        return api_base.rstrip("/") if api_base else self.api_base

    async def _get(
        self,
        path: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        api_base: Optional[str] = None,
    ) -> Any:
        return await self._request("GET", f"{self._base(api_base)}{path}", token=token, params=params)

    async def _get_list(
        self,
        path: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        api_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        data = await self._get(path, token, params, api_base)
        if not isinstance(data, list):
            raise MalformedResponseError(
                f"Expected a JSON array from {path}, got {type(data).__name__}",
                url=f"{self._base(api_base)}{path}",
                body=data,
            )
        return data

    # ── Endpoints ─────────────────────────────────────────────────────────────

    async def get_current_user(self, token: str, *, api_base: Optional[str] = None) -> Dict[str, Any]:
        """Return the token owner's profile (id, username, email, avatar_url ...)."""
        return await self._get("/user", token, api_base=api_base)

    async def get_user_projects(
        self,
        token: str,
        *,
        per_page: int = 100,
        page: int = 1,
        since: Optional[datetime] = None,
        api_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Projects the token owner is a member of, most recently active first."""
        return await self._get_list(
            "/projects",
            token,
            {
                "membership": "true",
                "per_page": per_page,
                "page": page,
                "order_by": "last_activity_at",
                "sort": "desc",
                "last_activity_after": _iso(since) if since else None,
            },
            api_base,
        )

    async def get_project_commits(
        self,
        project_id: int,
        token: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        author: Optional[str] = None,
        per_page: int = 100,
        page: int = 1,
        with_stats: bool = True,
        api_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Commits on the project's default branch.

        Raises:
            GitLabNotFoundError: the project has no repository.
        """
        return await self._get_list(
            f"/projects/{project_id}/repository/commits",
            token,
            {
                "since": _iso(since) if since else None,
                "until": _iso(until) if until else None,
                "author": author,
                "per_page": per_page,
                "page": page,
                "with_stats": "true" if with_stats else None,
            },
            api_base,
        )

    async def get_user_issues(
        self,
        token: str,
        *,
        state: str = "opened",
        per_page: int = 50,
        page: int = 1,
        updated_after: Optional[datetime] = None,
        api_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Issues assigned to the token owner."""
        return await self._get_list(
            "/issues",
            token,
            {
                "scope": "assigned_to_me",
                "state": state,
                "per_page": per_page,
                "page": page,
                "updated_after": _iso(updated_after) if updated_after else None,
            },
            api_base,
        )

    async def get_user_merge_requests(
        self,
        token: str,
        *,
        state: str = "opened",
        per_page: int = 50,
        page: int = 1,
        updated_after: Optional[datetime] = None,
        scope: str = "assigned_to_me",
        order_by: Optional[str] = None,
        api_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Merge requests in scope: assigned to the token owner, or created_by_me."""
        return await self._get_list(
            "/merge_requests",
            token,
            {
                "scope": scope,
                "order_by": order_by,
                "state": state,
                "per_page": per_page,
                "page": page,
                "updated_after": _iso(updated_after) if updated_after else None,
            },
            api_base,
        )

    async def get_project_languages(
        self, project_id: int, token: str, *, api_base: Optional[str] = None
    ) -> Dict[str, float]:
        """Language share of the project's repository, {"Python": 61.2, ...}."""
        path = f"/projects/{project_id}/languages"
        data = await self._get(path, token, api_base=api_base)
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object from {path}, got {type(data).__name__}",
                url=f"{self._base(api_base)}{path}",
                body=data,
            )
        return data

    async def refresh_oauth_token(
        self,
        instance_url: str,
        refresh_token: str,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: Optional[str] = None,
    ) -> OAuthTokens:
        """
        Exchange a refresh token at {instance_url}/oauth/token.

        Raises:
            GitLabAPIError subclasses on non-2xx, MalformedResponseError if
            the response carries no access_token.
        """
        url = f"{instance_url.rstrip('/')}/oauth/token"
        body = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if redirect_uri:
            body["redirect_uri"] = redirect_uri
        data = await self._request("POST", url, json_body=body)
        if not isinstance(data, dict) or not data.get("access_token"):
            raise MalformedResponseError("No access token in refresh response", url=url, body=data)
        expires_in = data.get("expires_in")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            raw=data,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    async def get_all_pages(
        fetch: Callable[[int], Awaitable[List[Dict[str, Any]]]],
        *,
        per_page: int,
        max_pages: int,
        max_items: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Collect items from page 1 onward until a short page, max_pages, or
        max_items is reached.

        Args:
            fetch: Coroutine factory taking a 1-based page number.
        """
        items: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch = await fetch(page)
            items.extend(batch)
            if max_items is not None and len(items) >= max_items:
                return items[:max_items]
            if len(batch) < per_page:
                break
        return items

    async def test_connection(self, token: str, *, api_base: Optional[str] = None) -> ConnectionTest:
        """Check the token against /user and the first page of /projects."""
        base = self._base(api_base)
        try:
            user = await self.get_current_user(token, api_base=base)
        except GitLabAPIError as exc:
            return ConnectionTest(
                success=False,
                api_base=base,
                error=str(exc),
                error_type=classify_error(exc),
                status=exc.status,
            )

        project_count = 0
        projects_error = None
        try:
            project_count = len(await self.get_user_projects(token, per_page=5, api_base=base))
        except GitLabAPIError as exc:
            projects_error = str(exc)

        return ConnectionTest(
            success=True,
            user={
                "id": user.get("id"),
                "username": user.get("username"),
                "name": user.get("name"),
                "email": user.get("email"),
                "avatar_url": user.get("avatar_url"),
                "web_url": user.get("web_url"),
            },
            project_count=project_count,
            api_base=base,
            projects_error=projects_error,
        )


# Process-wide client (lazy initialization); closed on API shutdown
_client: Optional[GitLabClient] = None


def get_gitlab_client() -> GitLabClient:
    global _client
    if _client is None:
        _client = GitLabClient()
    return _client


async def close_gitlab_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
