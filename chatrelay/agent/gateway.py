"""
Agent Gateway — Single entry point to the shared agent.

Every channel reaches the agent through here, keyed by thread ID. The agent
sees prior turns through the runtime's own memory, not through the
conversation store.

Any runtime failure, including a timeout, surfaces as
``AgentInvocationFailed``. Text already streamed is not retracted.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import AsyncIterator, List, Optional

from chatrelay.agent.channels.base import Attachment, AttachmentCategory
from chatrelay.agent.runtime import AgentRuntime, Content
from chatrelay.db.models import TurnRole
from chatrelay.errors import AgentInvocationFailed

logger = logging.getLogger(__name__)

MAX_INLINE_DOCUMENT_CHARS = 50_000

_TEXT_MIME_PREFIXES = ("text/",)
_TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/javascript",
    "application/x-sh",
}


def _is_text_document(attachment: Attachment) -> bool:
    mime = (attachment.mime_type or "").split(";")[0].strip().lower()
    return mime.startswith(_TEXT_MIME_PREFIXES) or mime in _TEXT_MIME_TYPES


def build_content(text: str, attachments: List[Attachment]) -> Content:
    """
    Agent payload for a message: plain ``text`` without attachments,
    otherwise a list of text and ``image_url`` blocks.
    """
    if not attachments:
        return text

    blocks = []
    if text:
        blocks.append({"type": "text", "text": text})

    for att in attachments:
        if att.category == AttachmentCategory.IMAGE:
            encoded = base64.b64encode(att.data).decode("ascii")
            blocks.append({
                "type": "image_url",
                "image_url": {"url": f"data:{att.mime_type};base64,{encoded}"},
            })
        elif _is_text_document(att):
            body = att.data.decode("utf-8", errors="replace")
            if len(body) > MAX_INLINE_DOCUMENT_CHARS:
                body = body[:MAX_INLINE_DOCUMENT_CHARS] + "\n... (truncated)"
            name = att.filename or "document"
            blocks.append({"type": "text", "text": f"File: {name}\n```\n{body}\n```"})
        else:
            name = att.filename or "document"
            blocks.append({
                "type": "text",
                "text": f"[Attached file: {name} ({att.mime_type}), contents not readable]",
            })
    return blocks


class AgentGateway:
    """Timeout-bounded access to an ``AgentRuntime``."""

    def __init__(self, runtime: AgentRuntime, timeout: Optional[float] = 300.0):
        self.runtime = runtime
        self.timeout = timeout

    build_content = staticmethod(build_content)

    async def invoke(self, thread_id: str, content: Content) -> str:
        try:
            return await asyncio.wait_for(self.runtime.invoke(thread_id, content), self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"[AGENT] Invocation timed out after {self.timeout}s ({thread_id})")
            raise AgentInvocationFailed(thread_id, f"Agent timed out after {self.timeout}s")
        except AgentInvocationFailed:
            raise
        except Exception as e:
            logger.error(f"[AGENT] Invocation failed for {thread_id}: {e}")
            raise AgentInvocationFailed(thread_id, str(e)) from e

    async def stream(self, thread_id: str, content: Content) -> AsyncIterator[str]:
        """
        Yield text deltas. Finite and not restartable; closing it early
        stops the underlying invocation.
        """
        deltas = self.runtime.stream(thread_id, content, timeout=self.timeout)
        try:
            async for delta in deltas:
                yield delta
        except asyncio.TimeoutError:
            logger.error(f"[AGENT] Stream timed out after {self.timeout}s ({thread_id})")
            raise AgentInvocationFailed(thread_id, f"Agent timed out after {self.timeout}s")
        except AgentInvocationFailed:
            raise
        except Exception as e:
            logger.error(f"[AGENT] Stream failed for {thread_id}: {e}")
            raise AgentInvocationFailed(thread_id, str(e)) from e
        finally:
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                await aclose()

    async def update_state(self, thread_id: str, text: str, source: str = "injected") -> None:
        """Append a synthetic assistant turn to agent memory, no inference."""
        await self.runtime.append(thread_id, TurnRole.ASSISTANT, text, source=source)
        logger.info(f"[AGENT] Injected {len(text)} chars into {thread_id} memory ({source})")
