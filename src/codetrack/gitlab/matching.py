"""
Commit author attribution.

GitLab commits carry free-text author/committer names and emails from the
local git config, not GitLab account ids, so attribution is heuristic:

  1. author or committer email equals the integration email (case-insensitive)
  2. author name equals the GitLab username (case-insensitive)
  3. the GitLab username appears inside the author or committer name

Rule 3 over-matches short usernames ("al" matches "Alice"). It is kept on
purpose and lives here alone so it can be tightened without touching sync.
"""
from typing import Any, Dict


def _norm(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def is_own_commit(commit: Dict[str, Any], integration) -> bool:
    """
    True when a raw GitLab commit dict should be attributed to the integration's user.

    Args:
        commit: Commit JSON from /projects/:id/repository/commits.
        integration: Anything with gitlab_username and gitlab_email attributes.
    """
    username = _norm(integration.gitlab_username)
    email = _norm(integration.gitlab_email)

    author_email = _norm(commit.get("author_email"))
    committer_email = _norm(commit.get("committer_email"))
    if email and email in (author_email, committer_email):
        return True

    author_name = _norm(commit.get("author_name"))
    committer_name = _norm(commit.get("committer_name"))
    if not username:
        return False
    if author_name == username:
        return True
    return username in author_name or username in committer_name
