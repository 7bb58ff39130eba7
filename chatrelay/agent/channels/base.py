"""
Channel Base — Abstract interface for the channels that reach the agent.

Every channel adapter (web chat, Telegram, GitHub job notifications)
implements this interface so the dispatch orchestrator can drive any channel
uniformly.

Design Principles
-----------------
* The set of channels is closed: ``ChannelType`` enumerates them and the
  registry refuses anything else.
* Channel-specific wire formats live **only** inside the adapter subclass.
* Inbound events become a ``MessageEnvelope`` via ``receive()``; ``None``
  means "not a message, acknowledge and stop".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from chatrelay.errors import BadRequestError

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Data objects
# ------------------------------------------------------------------

class ChannelType(str, Enum):
    WEB = "web"
    TELEGRAM = "telegram"
    GITHUB_JOB = "github_job"


class AttachmentCategory(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass
class Attachment:
    """A binary attachment carried by an inbound message."""

    category: AttachmentCategory
    mime_type: str
    data: bytes
    filename: Optional[str] = None


@dataclass
class MessageEnvelope:
    """Normalised inbound message from any channel."""

    thread_id: str
    channel: ChannelType
    text: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    # Opaque handle the adapter needs to deliver the response later
    channel_metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.thread_id:
            raise BadRequestError("Message envelope requires a thread ID")
        if not (self.text or "").strip() and not self.attachments:
            raise BadRequestError("Empty message")


# Stops a processing indicator. Safe to call more than once.
StopIndicator = Callable[[], None]


def _noop_stop() -> None:
    return None


# ------------------------------------------------------------------
# Abstract base
# ------------------------------------------------------------------

class BaseChannel(ABC):
    """
    Abstract base for a channel adapter.

    Subclasses must implement:
    * ``receive()``  — Turn a raw platform event into a ``MessageEnvelope``.
    * ``send_response()`` — Deliver a completed response.

    Optional overrides:
    * ``acknowledge()`` — Low-latency "received" signal. Default: nothing.
    * ``start_processing_indicator()`` — "typing" indicator. Default: nothing.
    """

    channel_type: ChannelType

    def __init__(self, channel_type: ChannelType):
        self.channel_type = channel_type

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @abstractmethod
    async def receive(self, raw: Any) -> Optional[MessageEnvelope]:
        """Normalise a raw event. Returns ``None`` when it is not a message."""

    async def acknowledge(self, metadata: Dict[str, Any]) -> None:
        """Best-effort receipt signal. Must never raise."""

    def start_processing_indicator(self, metadata: Dict[str, Any]) -> StopIndicator:
        """Begin a "working" indication and return the callable that stops it."""
        return _noop_stop

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @abstractmethod
    async def send_response(self, thread_id: str, text: str, metadata: Dict[str, Any]) -> None:
        """Deliver a completed response. Raises ``DeliveryFailed``."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.channel_type.value}>"
