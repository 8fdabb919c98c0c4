"""Shared test fixtures."""
from datetime import datetime
from typing import Any, Generator, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from codetrack.models.activity import ActivityRecord  # noqa: F401
from codetrack.models.integration import GitLabIntegration, SyncErrorEntry, TokenType, TrackedRepository  # noqa: F401
from codetrack.models.sync import SyncLog  # noqa: F401

from codetrack.config import Settings
from codetrack.gitlab.store import IntegrationStore
from codetrack.gitlab.vault import TokenVault

from fakes import API_BASE, INSTANCE, FakeGitLab


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Explicit settings so tests never depend on a local .env."""
    return Settings(
        _env_file=None,
        gitlab_api_base=API_BASE,
        gitlab_issuer=INSTANCE,
        gitlab_client_id="client-id",
        gitlab_client_secret="client-secret",
        encryption_key="test-encryption-secret",
        per_page=100,
        max_projects=50,
        commit_page_limit=10,
        project_concurrency=5,
        rate_limit_retries=3,
        retry_backoff_seconds=2.0,
        scheduled_sync_delay_seconds=2.0,
    )


@pytest.fixture(name="vault")
def vault_fixture(settings) -> TokenVault:
    return TokenVault(settings.encryption_key)


@pytest.fixture(name="store")
def store_fixture(engine) -> IntegrationStore:
    return IntegrationStore(engine)


@pytest.fixture(name="make_integration")
def make_integration_fixture(store, vault):
    """
    Factory for persisted integrations.

    Tokens are given in plaintext and stored encrypted. Pass
    access_token_ciphertext to store raw (e.g. corrupt) ciphertext instead.
    """

    def _make(
        user_id: str = "user-1",
        *,
        username: str = "alice",
        email: Optional[str] = "alice@example.com",
        access_token: str = "access-plain",
        refresh_token: Optional[str] = None,
        token_type: TokenType = TokenType.PERSONAL_ACCESS_TOKEN,
        token_expires_at: Optional[datetime] = None,
        access_token_ciphertext: Optional[str] = None,
        **fields: Any,
    ) -> GitLabIntegration:
        return store.save_connection(
            user_id,
            gitlab_user_id=fields.pop("gitlab_user_id", 1001),
            gitlab_username=username,
            gitlab_email=email,
            access_token=access_token_ciphertext or vault.encrypt(access_token),
            refresh_token=vault.encrypt(refresh_token) if refresh_token else None,
            token_type=token_type,
            token_expires_at=token_expires_at,
            gitlab_instance=INSTANCE,
            api_base=fields.pop("api_base", API_BASE),
            **fields,
        )

    return _make


@pytest.fixture(name="fake_gitlab")
def fake_gitlab_fixture() -> FakeGitLab:
    return FakeGitLab()
