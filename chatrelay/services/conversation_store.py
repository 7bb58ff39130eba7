"""
Conversation Store — Durable, append-only history per thread.

Threads (``Chat``) are created lazily on the first message; turns
(``ChatMessage``) are immutable once written and strictly ordered by
``created_at`` within a thread.

This history is what the UI shows. The agent's own memory lives elsewhere
(``AgentMemoryEntry``, owned by the agent runtime) and is never read here.

On the message path, persistence is best-effort: ``persist_turn`` never
raises, it returns a ``PersistResult`` the caller can log or assert on.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.db.models import Chat, ChatMessage, TurnRole

logger = logging.getLogger(__name__)

TITLE_SYSTEM_PROMPT = (
    "Generate a short (3-6 word) title for this chat based on the user's first message. "
    "Return ONLY the title, nothing else."
)
TITLE_MAX_TOKENS = 50
TITLE_MAX_LEN = 500

# ── Monotonic clock ──────────────────────────────────────
_clock_lock = threading.Lock()
_last_ts: Optional[datetime] = None


def monotonic_utcnow() -> datetime:
    """UTC now, strictly greater than any previous value in this process."""
    global _last_ts
    with _clock_lock:
        now = datetime.utcnow()
        if _last_ts is not None and now <= _last_ts:
            now = _last_ts + timedelta(microseconds=1)
        _last_ts = now
        return now


@dataclass(frozen=True)
class PersistResult:
    """Outcome of a best-effort write. ``reason`` is set when ``ok`` is False."""
    ok: bool
    reason: Optional[str] = None
    turn_id: Optional[str] = None

    @classmethod
    def success(cls, turn_id: str) -> "PersistResult":
        return cls(ok=True, turn_id=turn_id)

    @classmethod
    def failed(cls, reason: str) -> "PersistResult":
        return cls(ok=False, reason=reason)


class ConversationStore:
    """Thread and turn persistence over an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        default_title: str = "New Chat",
        llm=None,
        title_model: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self.default_title = default_title
        self.llm = llm
        self.title_model = title_model

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def ensure_thread(self, thread_id: str, owner_id: str, title: Optional[str] = None) -> Chat:
        """Get-or-create. Idempotent; concurrent creators converge on one row."""
        async with self._session_factory() as db:
            chat = await db.get(Chat, thread_id)
            if chat is not None:
                return chat

            now = monotonic_utcnow()
            chat = Chat(
                id=thread_id,
                user_id=owner_id,
                title=title or self.default_title,
                created_at=now,
                updated_at=now,
            )
            db.add(chat)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await db.get(Chat, thread_id)
                if existing is None:
                    raise
                return existing
            logger.info(f"[STORE] Created thread {thread_id} for {owner_id}")
            return chat

    async def get_thread(self, thread_id: str, owner_id: Optional[str] = None) -> Optional[Chat]:
        async with self._session_factory() as db:
            chat = await db.get(Chat, thread_id)
            if chat is None or (owner_id is not None and chat.user_id != owner_id):
                return None
            return chat

    async def list_threads(self, owner_id: str) -> List[Chat]:
        """Threads owned by ``owner_id``, most recently active first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Chat)
                .where(Chat.user_id == owner_id)
                .order_by(Chat.updated_at.desc())
            )
            return list(result.scalars().all())

    async def update_title(self, thread_id: str, title: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Chat)
                .where(Chat.id == thread_id)
                .values(title=title[:TITLE_MAX_LEN], updated_at=monotonic_utcnow())
            )
            await db.commit()
            return result.rowcount > 0

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread's turns, then the thread."""
        async with self._session_factory() as db:
            await db.execute(delete(ChatMessage).where(ChatMessage.chat_id == thread_id))
            result = await db.execute(delete(Chat).where(Chat.id == thread_id))
            await db.commit()
            deleted = result.rowcount > 0
        if deleted:
            logger.info(f"[STORE] Deleted thread {thread_id}")
        return deleted

    async def delete_all_threads(self, owner_id: str) -> int:
        """Delete every thread owned by ``owner_id``. Returns the count."""
        async with self._session_factory() as db:
            owned = select(Chat.id).where(Chat.user_id == owner_id)
            await db.execute(delete(ChatMessage).where(ChatMessage.chat_id.in_(owned)))
            result = await db.execute(delete(Chat).where(Chat.user_id == owner_id))
            await db.commit()
            count = result.rowcount or 0
        logger.info(f"[STORE] Deleted {count} thread(s) for {owner_id}")
        return count

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def append_turn(self, thread_id: str, role: TurnRole, content: str) -> ChatMessage:
        """Append a turn and bump the thread's ``updated_at``."""
        role = TurnRole(role)
        async with self._session_factory() as db:
            now = monotonic_utcnow()
            turn = ChatMessage(
                chat_id=thread_id,
                role=role.value,
                content=content,
                created_at=now,
            )
            db.add(turn)
            await db.execute(
                update(Chat).where(Chat.id == thread_id).values(updated_at=now)
            )
            await db.commit()
            return turn

    async def persist_turn(
        self,
        thread_id: str,
        owner_id: str,
        role: TurnRole,
        content: str,
        title: Optional[str] = None,
    ) -> PersistResult:
        """``ensure_thread`` + ``append_turn``. Never raises."""
        try:
            await self.ensure_thread(thread_id, owner_id, title)
            turn = await self.append_turn(thread_id, role, content)
            return PersistResult.success(turn.id)
        except SQLAlchemyError as e:
            logger.error(f"[STORE] Failed to persist {TurnRole(role).value} turn for {thread_id}: {e}")
            return PersistResult.failed(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"[STORE] Unexpected error persisting turn for {thread_id}")
            return PersistResult.failed(f"{type(e).__name__}: {e}")

    async def get_turns(self, thread_id: str) -> List[ChatMessage]:
        """Turns of a thread in creation order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ChatMessage)
                .where(ChatMessage.chat_id == thread_id)
                .order_by(ChatMessage.created_at, ChatMessage.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Auto-title
    # ------------------------------------------------------------------

    async def auto_title(self, thread_id: str, first_message: str) -> bool:
        """
        Replace the sentinel title with a generated one.

        Only a thread still titled with the sentinel is touched, and the
        write itself is conditional on it, so a title is replaced at most
        once. Returns True when the title changed.
        """
        if self.llm is None or not first_message.strip():
            return False

        chat = await self.get_thread(thread_id)
        if chat is None or chat.title != self.default_title:
            return False

        try:
            response = await self.llm.complete(
                messages=[
                    {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                    {"role": "user", "content": first_message},
                ],
                model=self.title_model,
                max_tokens=TITLE_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning(f"[STORE] Title generation failed for {thread_id}: {e}")
            return False

        title = (response.content or "").strip().strip("\"'").strip()
        if not title:
            return False

        async with self._session_factory() as db:
            result = await db.execute(
                update(Chat)
                .where(Chat.id == thread_id, Chat.title == self.default_title)
                .values(title=title[:TITLE_MAX_LEN])
            )
            await db.commit()
            changed = result.rowcount > 0
        if changed:
            logger.info(f"[STORE] Titled thread {thread_id}: {title!r}")
        return changed
