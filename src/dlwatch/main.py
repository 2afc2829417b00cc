"""FastAPI application factory.

The app's lifespan owns the job scheduler, so running the app runs the
worker and exposes its status surface.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dlwatch.config import get_settings
from dlwatch.database import close_db, create_all, get_session_factory, init_db
from dlwatch.health.router import router as health_router
from dlwatch.middleware import setup_middleware
from dlwatch.redis_client import close_redis, get_redis, init_redis
from dlwatch.scheduler.jobs import create_scheduler
from dlwatch.status.router import router as status_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    if settings.create_tables_on_startup:
        await create_all()

    scheduler = create_scheduler(settings, get_session_factory(), get_redis())
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    await scheduler.shutdown()
    app.state.scheduler = None
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="dlwatch",
        description="Account poller and rule automation worker for a bulk-download service",
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(status_router)

    return app


app = create_app()
