"""
FastAPI dependencies.

The calling user arrives in the X-User-Id header, set by the identity
provider gateway in front of this service. It is trusted as given.

Tests override get_db_engine and get_client with in-memory fixtures.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from codetrack.db.engine import get_engine
from codetrack.gitlab.client import GitLabClient, get_gitlab_client
from codetrack.gitlab.connection import ConnectionService
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.sync_service import GitLabSyncService
from codetrack.gitlab.tokens import TokenManager
from codetrack.gitlab.vault import TokenVault, get_vault


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def get_db_engine():
    return get_engine()


def get_client() -> GitLabClient:
    return get_gitlab_client()


def get_token_vault() -> TokenVault:
    return get_vault()


def get_store(engine=Depends(get_db_engine)) -> IntegrationStore:
    return IntegrationStore(engine)


def get_token_manager(
    store: IntegrationStore = Depends(get_store),
    vault: TokenVault = Depends(get_token_vault),
    client: GitLabClient = Depends(get_client),
) -> TokenManager:
    return TokenManager(store, vault, client)


def get_connection_service(
    store: IntegrationStore = Depends(get_store),
    vault: TokenVault = Depends(get_token_vault),
    client: GitLabClient = Depends(get_client),
) -> ConnectionService:
    return ConnectionService(store, client, vault)


def get_sync_service(
    engine=Depends(get_db_engine),
    client: GitLabClient = Depends(get_client),
    tokens: TokenManager = Depends(get_token_manager),
) -> GitLabSyncService:
    return GitLabSyncService(client, engine, tokens)
