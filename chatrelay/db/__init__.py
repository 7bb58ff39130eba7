from chatrelay.db.models import (
    Base, User, UserRole, Chat, ChatMessage, TurnRole, AgentMemoryEntry,
)
from chatrelay.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Chat",
    "ChatMessage",
    "TurnRole",
    "AgentMemoryEntry",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
