"""
FastAPI application entry point.

WHAT: Marketplace negotiation & messaging API
WHY: Exposes offers, conversations, messages and notification streams over HTTP/SSE
HOW: Lifespan owns the store and the change feed; routers live under /api/v1
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1.router import api_router
from .core.config import settings
from .core.database import close_db, init_db
from .core.feed import change_feed
from .middleware.error_handler import register_exception_handlers
from .utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Store and feed lifecycle.

    Tables are created before the first request. On shutdown queued change
    events are delivered before channels are cancelled, then the engine is
    disposed.
    """
    init_db()
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} ready")

    yield

    pending = len(change_feed.active_channels)
    await change_feed.drain()
    await change_feed.remove_all_channels()
    close_db()
    logger.info(f"{settings.APP_NAME} stopped ({pending} feed channels closed)")


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-User-Id", "Last-Event-ID"],
    )
    register_exception_handlers(application)
    application.include_router(api_router)

    @application.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "api": "/api/v1",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sportswap.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
