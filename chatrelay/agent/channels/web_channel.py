"""
Web Channel Adapter — The authenticated browser chat.

Inbound requests use the UI message format of the chat frontend:

    {"chatId": "<uuid>", "messages": [{"role": "user", "parts": [...]}, ...]}

The last user message supplies the prompt: its ``text`` parts joined with
newlines (or its plain ``content``), plus any ``file`` parts carried as
``data:`` URLs.

Responses are not sent with ``send_response``; they are streamed as
Server-Sent Events using the UI message stream protocol:

    start → text-start → text-delta* → text-end → finish → [DONE]
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from chatrelay.agent.channels.base import (
    Attachment,
    AttachmentCategory,
    BaseChannel,
    ChannelType,
    MessageEnvelope,
)
from chatrelay.errors import AgentInvocationFailed, BadRequestError, DeliveryFailed

logger = logging.getLogger(__name__)

STREAM_ERROR_TEXT = "An error occurred while processing your message."

# Response headers for the UI message stream
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
    "x-vercel-ai-ui-message-stream": "v1",
}


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _parse_data_url(url: str) -> Optional[tuple[str, bytes]]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, bytes)."""
    if not url or not url.startswith("data:") or "," not in url:
        return None
    header, payload = url[5:].split(",", 1)
    if not header.endswith(";base64"):
        return None
    mime = header[: -len(";base64")] or "application/octet-stream"
    try:
        return mime, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


class WebChannel(BaseChannel):
    """Adapter for the browser chat UI (synchronous, streamed)."""

    def __init__(self):
        super().__init__(ChannelType.WEB)

    async def receive(self, raw: Dict[str, Any]) -> MessageEnvelope:
        """Normalise a chat request body. Raises ``BadRequestError``."""
        if not isinstance(raw, dict):
            raise BadRequestError("Invalid request body")

        messages = raw.get("messages") or []
        if not messages:
            raise BadRequestError("No messages")

        last_user = next(
            (m for m in reversed(messages) if isinstance(m, dict) and m.get("role") == "user"),
            None,
        )
        if last_user is None:
            raise BadRequestError("No user message")

        text = self._extract_text(last_user)
        attachments = self._extract_attachments(last_user)
        if not text.strip() and not attachments:
            raise BadRequestError("Empty message")

        thread_id = raw.get("chatId") or str(uuid.uuid4())
        return MessageEnvelope(
            thread_id=str(thread_id),
            channel=ChannelType.WEB,
            text=text,
            attachments=attachments,
        )

    @staticmethod
    def _extract_text(message: Dict[str, Any]) -> str:
        parts = message.get("parts") or []
        text = "\n".join(
            p.get("text", "")
            for p in parts
            if isinstance(p, dict) and p.get("type") == "text"
        )
        if not text:
            content = message.get("content")
            text = content if isinstance(content, str) else ""
        return text

    @staticmethod
    def _extract_attachments(message: Dict[str, Any]) -> List[Attachment]:
        attachments: List[Attachment] = []
        for part in message.get("parts") or []:
            if not isinstance(part, dict) or part.get("type") != "file":
                continue
            parsed = _parse_data_url(part.get("url", ""))
            if parsed is None:
                logger.warning("[WEB] Skipping file part without a base64 data URL")
                continue
            mime, data = parsed
            mime = part.get("mediaType") or mime
            category = (
                AttachmentCategory.IMAGE if mime.startswith("image/")
                else AttachmentCategory.DOCUMENT
            )
            attachments.append(Attachment(
                category=category,
                mime_type=mime,
                data=data,
                filename=part.get("filename"),
            ))
        return attachments

    async def send_response(self, thread_id: str, text: str, metadata: Dict[str, Any]) -> None:
        raise DeliveryFailed("Web responses are streamed, not sent")

    async def encode_stream(self, deltas: AsyncIterator[str]) -> AsyncIterator[str]:
        """
        Wrap a stream of text deltas in the UI message stream protocol.

        An agent failure ends the stream with a generic ``error`` event; text
        already sent is not retracted. Closing this generator closes
        ``deltas`` so the producer sees the cancellation.
        """
        text_id = str(uuid.uuid4())
        text_started = False
        try:
            yield _sse({"type": "start"})
            try:
                async for delta in deltas:
                    if not text_started:
                        yield _sse({"type": "text-start", "id": text_id})
                        text_started = True
                    yield _sse({"type": "text-delta", "id": text_id, "delta": delta})
            except AgentInvocationFailed as e:
                logger.error(f"[WEB] Chat stream error: {e}")
                yield _sse({"type": "error", "errorText": STREAM_ERROR_TEXT})
                yield "data: [DONE]\n\n"
                return

            if text_started:
                yield _sse({"type": "text-end", "id": text_id})
            yield _sse({"type": "finish"})
            yield "data: [DONE]\n\n"
        finally:
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                await aclose()
