from chatrelay.api.auth import router as auth_router
from chatrelay.api.chat import router as chat_router
from chatrelay.api.github import router as github_router
from chatrelay.api.jobs import router as jobs_router
from chatrelay.api.telegram import router as telegram_router

__all__ = [
    "auth_router",
    "chat_router",
    "github_router",
    "jobs_router",
    "telegram_router",
]
