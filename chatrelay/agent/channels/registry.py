"""
Channel Registry — Holds the adapter for each channel type.

The orchestrator and the routes use the registry to:
* Look up the adapter for a channel.
* Verify at startup that every channel in the closed set has an adapter.
* Enumerate adapters for status output.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from chatrelay.agent.channels.base import BaseChannel, ChannelType

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Registry of channel adapters, one per ``ChannelType``."""

    def __init__(self):
        self._channels: Dict[ChannelType, BaseChannel] = {}

    def register(self, channel: BaseChannel) -> None:
        """Add a channel adapter to the registry."""
        if not isinstance(channel.channel_type, ChannelType):
            raise ValueError(f"Unknown channel type: {channel.channel_type!r}")
        if channel.channel_type in self._channels:
            logger.warning(
                "[REGISTRY] Replacing existing %s adapter", channel.channel_type.value
            )
        self._channels[channel.channel_type] = channel
        logger.info("[REGISTRY] Registered channel: %s", channel.channel_type.value)

    def get(self, channel_type: ChannelType) -> BaseChannel:
        """Retrieve a channel adapter by type."""
        try:
            return self._channels[channel_type]
        except KeyError:
            raise LookupError(f"No adapter registered for {channel_type.value}") from None

    def verify_complete(self) -> None:
        """Raise if any channel in the closed set has no adapter."""
        missing = [t.value for t in ChannelType if t not in self._channels]
        if missing:
            raise RuntimeError(f"Missing channel adapters: {', '.join(missing)}")

    def all(self) -> List[BaseChannel]:
        """Return all registered channel adapters."""
        return list(self._channels.values())

    def status(self) -> List[Dict]:
        """Return status summary for each channel."""
        return [
            {"type": ch.channel_type.value, "class": ch.__class__.__name__}
            for ch in self._channels.values()
        ]
