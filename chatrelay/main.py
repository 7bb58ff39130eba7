"""
ChatRelay - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.agent.structured_logging import configure_logging
from chatrelay.api import auth_router, chat_router, github_router, jobs_router, telegram_router
from chatrelay.config import settings
from chatrelay.container import build_services
from chatrelay.db import init_db

logger = logging.getLogger(__name__)

_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    configure_logging(settings.log_level, settings.log_json)
    logger.info(f"[STARTUP] {settings.app_name} starting up")

    await init_db()
    logger.info("[STARTUP] Database initialized")

    services = build_services(settings)
    app.state.services = services

    if not settings.api_key:
        logger.warning("[STARTUP] API_KEY not set: key-authenticated routes will reject every request")
    if not services.token_cell:
        logger.info("[STARTUP] No Telegram bot token yet (set one via /telegram/register)")

    yield

    logger.info("[SHUTDOWN] Waiting for background tasks")
    await services.shutdown()
    logger.info(f"[SHUTDOWN] {settings.app_name} shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Channel-unified message dispatch for one conversational agent: web chat, Telegram and GitHub job notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix=settings.api_prefix)
app.include_router(chat_router, prefix=settings.api_prefix)
app.include_router(telegram_router, prefix=settings.api_prefix)
app.include_router(github_router, prefix=settings.api_prefix)
app.include_router(jobs_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    """Health check with database probe and uptime."""
    db_status = "connected"
    try:
        from sqlalchemy import text
        from chatrelay.db.database import async_session_maker
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {e}"

    services = getattr(app.state, "services", None)
    uptime = time.time() - _app_start_time if _app_start_time else 0
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "agent_model": settings.agent_model,
        "channels": {
            "web": "enabled",
            "telegram": "enabled" if services and services.token_cell else "disabled",
            "github_job": "enabled" if services and services.github_channel.can_notify else "disabled",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "chatrelay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
