from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    gitlab_api_base: str = "https://code.swecha.org/api/v4"
    gitlab_issuer: str = "https://code.swecha.org"  # instance base; hosts /oauth/token
    gitlab_client_id: str = ""
    gitlab_client_secret: str = ""
    gitlab_redirect_uri: str = ""
    encryption_key: str = ""
    database_url: str = "sqlite:///./codetrack.db"

    # GitLab client
    request_timeout_seconds: float = 30.0
    per_page: int = 100
    max_projects: int = 50
    commit_page_limit: int = 10
    project_concurrency: int = 5
    rate_limit_retries: int = 3
    retry_backoff_seconds: float = 2.0

    # Token lifecycle
    token_refresh_margin_seconds: int = 300
    default_token_lifetime_seconds: int = 7200

    # Sync windows
    incremental_default_days: int = 30
    full_sync_days: int = 365

    # Scheduled sync
    scheduled_sync_hour: int = 3
    scheduled_sync_timeout_seconds: float = 120.0
    scheduled_sync_delay_seconds: float = 2.0

    # A run claim older than this is treated as abandoned by a dead process
    sync_claim_timeout_seconds: float = 3600.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
