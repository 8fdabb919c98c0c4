"""
Interactive setup wizard: connect a GitLab personal access token.

Prompts for the application user id, GitLab username and token, validates
the token against GitLab, and stores it encrypted exactly as
POST /gitlab/connect-token would.

Usage:
    python -m codetrack setup
    python -m codetrack.scripts.setup   (direct invocation)

Requires ENCRYPTION_KEY to be set. Re-run any time to replace the token.
"""
import asyncio
import getpass
import sys


async def _connect(user_id: str, username: str, token: str, repositories: str):
    from codetrack.db.engine import get_engine
    from codetrack.gitlab.client import GitLabClient
    from codetrack.gitlab.connection import ConnectionService
    from codetrack.gitlab.store import IntegrationStore
    from codetrack.gitlab.vault import get_vault

    store = IntegrationStore(get_engine())
    async with GitLabClient() as client:
        service = ConnectionService(store, client, get_vault())
        integration = await service.connect_with_token(user_id, token, username, repositories or None)
    return integration, len(store.list_repositories(integration.id))


def run_setup() -> None:
    from codetrack.config import get_settings
    from codetrack.db.engine import get_engine
    from codetrack.gitlab.store import IntegrationStore

    settings = get_settings()
    print("\ncodetrack — GitLab setup\n")
    print(f"GitLab API: {settings.gitlab_api_base}")
    if not settings.encryption_key:
        print("Error: ENCRYPTION_KEY is not set. Add it to .env first.")
        sys.exit(1)

    user_id = input("Application user id: ").strip()
    if not user_id:
        print("Error: user id cannot be empty.")
        sys.exit(1)

    if IntegrationStore(get_engine()).get_by_user(user_id):
        print("An existing GitLab integration was found for this user.")
        overwrite = input("Replace it? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing integration unchanged.")
            sys.exit(0)

    username = input("GitLab username: ").strip()
    if not username:
        print("Error: username cannot be empty.")
        sys.exit(1)

    token = getpass.getpass("Personal access token (scopes: read_api, read_user, read_repository): ")
    if not token:
        print("Error: token cannot be empty.")
        sys.exit(1)

    repositories = input("Only track these projects (comma-separated, blank for all): ").strip()

    print("\nValidating token with GitLab...")
    try:
        integration, repo_count = asyncio.run(_connect(user_id, username, token, repositories))
    except Exception as exc:
        print(f"\nConnection failed: {exc}")
        sys.exit(1)

    print(f"\nConnected as {integration.gitlab_username} ({repo_count} repositories found).")
    print("Run a first sync with:  python -m codetrack.scripts.backfill "
          f"--user-id {user_id} --days 30\n")


if __name__ == "__main__":
    run_setup()
