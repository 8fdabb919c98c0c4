"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from codetrack.api.errors import register_exception_handlers
from codetrack.api.routes import analytics, connect, insights, sync as sync_routes
from codetrack.db.engine import dispose_engine
from codetrack.gitlab.client import close_gitlab_client


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await close_gitlab_client()
        dispose_engine()

    app = FastAPI(
        title="codetrack API",
        description="GitLab activity sync and analytics",
        version="0.1.0",
        lifespan=lifespan,
    )

    register_exception_handlers(app)
    app.include_router(connect.router, prefix="/gitlab", tags=["connection"])
    app.include_router(sync_routes.router, prefix="/gitlab", tags=["sync"])
    app.include_router(analytics.router, prefix="/gitlab", tags=["analytics"])
    app.include_router(insights.router, prefix="/gitlab", tags=["insights"])

    return app


# Module-level app instance for uvicorn
app = create_app()
