"""
Agent Runtime — The shared conversational agent, addressed by thread ID.

The runtime owns the agent's per-thread memory (``AgentMemoryEntry`` rows).
Each invocation replays the thread's recent memory behind the system
prompt, calls the model, and on completion appends the user and assistant
entries. Callers never read this memory; the conversation store keeps the
user-visible history separately.

A stream closed early by its consumer records exactly the text it emitted.
A stream that fails or times out records nothing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.db.models import AgentMemoryEntry, TurnRole

logger = logging.getLogger(__name__)

# str, or a list of OpenAI content blocks
Content = Union[str, List[Dict[str, Any]]]

IMAGE_PLACEHOLDER = "[image]"


class AgentRuntime(ABC):
    """Interface the agent gateway drives."""

    @abstractmethod
    async def invoke(self, thread_id: str, content: Content) -> str:
        """Run one turn and return the complete response."""

    @abstractmethod
    def stream(
        self, thread_id: str, content: Content, timeout: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Run one turn, yielding text deltas. ``timeout`` bounds the whole stream."""

    @abstractmethod
    async def append(
        self, thread_id: str, role: TurnRole, content: Content, source: Optional[str] = None
    ) -> None:
        """Append an entry to the thread's memory without inference."""


def load_system_prompt(prompt: str, prompt_file: Optional[str] = None) -> str:
    """Contents of ``prompt_file`` when readable, else ``prompt``."""
    if prompt_file and os.path.isfile(prompt_file):
        try:
            with open(prompt_file, encoding="utf-8") as f:
                text = f.read().strip()
            if text:
                return text
        except OSError as e:
            logger.warning(f"[AGENT] Could not read system prompt file {prompt_file}: {e}")
    return prompt


def _storable(content: Content) -> Content:
    """Memory copy of ``content`` with image payloads replaced by a placeholder."""
    if isinstance(content, str):
        return content
    blocks = []
    for block in content:
        if block.get("type") == "image_url":
            blocks.append({"type": "text", "text": IMAGE_PLACEHOLDER})
        else:
            blocks.append(block)
    return blocks


class OpenAIAgentRuntime(AgentRuntime):
    """Chat-completions agent with database-backed per-thread memory."""

    def __init__(
        self,
        llm,
        session_factory: async_sessionmaker,
        system_prompt: str,
        history_limit: int = 40,
        context_tokens: Optional[int] = None,
    ):
        self.llm = llm
        self._session_factory = session_factory
        self.system_prompt = system_prompt
        self.history_limit = history_limit
        self.context_tokens = context_tokens

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def load_history(self, thread_id: str) -> List[Dict[str, Any]]:
        """Most recent memory entries for the thread, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AgentMemoryEntry)
                .where(AgentMemoryEntry.thread_id == thread_id)
                .order_by(AgentMemoryEntry.id.desc())
                .limit(self.history_limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()

        history = [{"role": r.role, "content": json.loads(r.content_json)} for r in rows]
        return self._trim_to_budget(history)

    def _trim_to_budget(self, history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not self.context_tokens or not history:
            return history
        kept: List[Dict[str, Any]] = []
        used = 0
        for message in reversed(history):
            cost = self.llm.count_message_tokens(message)
            if kept and used + cost > self.context_tokens:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        if len(kept) < len(history):
            logger.debug(f"[AGENT] Trimmed history {len(history)} -> {len(kept)} entries")
        return kept

    async def append(
        self, thread_id: str, role: TurnRole, content: Content, source: Optional[str] = None
    ) -> None:
        async with self._session_factory() as db:
            db.add(AgentMemoryEntry(
                thread_id=thread_id,
                role=TurnRole(role).value,
                content_json=json.dumps(_storable(content)),
                source=source,
            ))
            await db.commit()

    async def _record_exchange(self, thread_id: str, content: Content, reply: str) -> None:
        async with self._session_factory() as db:
            db.add(AgentMemoryEntry(
                thread_id=thread_id,
                role=TurnRole.USER.value,
                content_json=json.dumps(_storable(content)),
            ))
            db.add(AgentMemoryEntry(
                thread_id=thread_id,
                role=TurnRole.ASSISTANT.value,
                content_json=json.dumps(reply),
            ))
            await db.commit()

    async def _build_messages(self, thread_id: str, content: Content) -> List[Dict[str, Any]]:
        history = await self.load_history(thread_id)
        return [
            {"role": "system", "content": self.system_prompt},
            *history,
            {"role": "user", "content": content},
        ]

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(self, thread_id: str, content: Content) -> str:
        messages = await self._build_messages(thread_id, content)
        response = await self.llm.complete(messages)
        reply = response.content
        await self._record_exchange(thread_id, content, reply)
        logger.info(f"[AGENT] Thread {thread_id}: {len(reply)} chars")
        return reply

    async def stream(
        self, thread_id: str, content: Content, timeout: Optional[float] = None
    ) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        messages = await self._build_messages(thread_id, content)
        chunks = self.llm.stream(messages).__aiter__()
        parts: List[str] = []
        try:
            while True:
                remaining = None if deadline is None else max(deadline - loop.time(), 0)
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), remaining)
                except StopAsyncIteration:
                    break
                if chunk.content:
                    parts.append(chunk.content)
                    yield chunk.content
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer stopped: memory keeps what was emitted
            if parts:
                await asyncio.shield(self._record_exchange(thread_id, content, "".join(parts)))
            raise
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        await self._record_exchange(thread_id, content, "".join(parts))
        logger.info(f"[AGENT] Thread {thread_id}: streamed {sum(len(p) for p in parts)} chars")
