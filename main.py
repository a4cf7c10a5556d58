"""
Social content sync service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.encryption import is_encryption_enabled
from connectors.registry import PlatformRegistry
from connectors.routes import router as social_router
from database.session import create_tables

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Social Content Sync",
        version="1.0.0",
        description="TikTok / Instagram account linking and content import.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(social_router, prefix="/api/v1/social")

    @app.on_event("startup")
    async def on_startup():
        logger.info("Discovering platform clients…")
        registry = PlatformRegistry()
        registry.discover()
        if not registry.list_platforms():
            logger.warning("No platform configured — set TIKTOK_* / INSTAGRAM_* credentials")

        is_encryption_enabled()

        if config.auto_create_tables:
            await create_tables()
            logger.info("Database tables ensured")

        logger.info("Application ready to accept requests.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
