"""FastAPI application factory — entry point for the billing service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from canvas_billing.config import get_settings
from canvas_billing.routers import api, webhooks
from canvas_billing.utils import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from canvas_billing.db.session import engine
    from canvas_billing.models import Base

    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    if settings.resend_api_key:
        import resend
        resend.api_key = settings.resend_api_key

    # Shared clients: httpx for the provider API, ARQ for notifications
    from canvas_billing.http_client import init_http_client, close_http_client
    from canvas_billing.queue import init_queue, close_queue
    await init_http_client()
    await init_queue()

    yield

    await close_queue()
    await close_http_client()
    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(api.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
