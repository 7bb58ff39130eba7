"""
Database models for ChatRelay

- Users back the web chat login session
- Chats (threads) and ChatMessages (turns) form the durable, append-only
  conversation history shown in the UI
- AgentMemoryEntry rows are the agent runtime's own per-thread state; the
  conversation store never reads them
"""

from datetime import datetime
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import String, Text, DateTime, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

Base = declarative_base()


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class User(Base):
    """Web chat user (session auth)"""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.ADMIN.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Chat(Base):
    """A conversation thread. ``id`` is the channel's thread identity."""
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Channel-level owner: a web user ID, or e.g. "telegram"
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(500), default="New Chat")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    messages: Mapped[List["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="chat",
        order_by="ChatMessage.created_at",
        passive_deletes=True,
    )


class ChatMessage(Base):
    """A persisted turn. Immutable once written."""
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_chat_created", "chat_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    chat_id: Mapped[str] = mapped_column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(20))  # "user" | "assistant"
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    chat: Mapped["Chat"] = relationship("Chat", back_populates="messages")


class AgentMemoryEntry(Base):
    """One message in the agent runtime's memory for a thread."""
    __tablename__ = "agent_memory"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    thread_id: Mapped[str] = mapped_column(String(64), index=True)
    role: Mapped[str] = mapped_column(String(20))  # "user" | "assistant"
    content_json: Mapped[str] = mapped_column(Text)  # str or list of content blocks, JSON-encoded
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    # Marks entries injected without inference (e.g. job summaries)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
