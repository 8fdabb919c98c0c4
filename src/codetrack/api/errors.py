"""Map domain exceptions raised inside routes to JSON error responses."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from codetrack.gitlab.errors import (
    GitLabAPIError,
    IntegrationNotFoundError,
    InvalidCredentialsError,
    SyncInProgressError,
    TokenDecryptionError,
    TokenRefreshError,
    classify_error,
)

logger = logging.getLogger(__name__)


def integration_not_found_handler(request: Request, exc: IntegrationNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "GitLab not connected", "connected": False},
    )


def token_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Token unusable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": str(exc), "reconnect_required": True},
    )


def sync_in_progress_handler(request: Request, exc: SyncInProgressError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": str(exc)})


def invalid_credentials_handler(request: Request, exc: InvalidCredentialsError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


def gitlab_error_handler(request: Request, exc: GitLabAPIError) -> JSONResponse:
    logger.warning("GitLab call failed on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": str(exc), "error_type": classify_error(exc)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntegrationNotFoundError, integration_not_found_handler)
    app.add_exception_handler(TokenDecryptionError, token_error_handler)
    app.add_exception_handler(TokenRefreshError, token_error_handler)
    app.add_exception_handler(SyncInProgressError, sync_in_progress_handler)
    app.add_exception_handler(InvalidCredentialsError, invalid_credentials_handler)
    app.add_exception_handler(GitLabAPIError, gitlab_error_handler)
