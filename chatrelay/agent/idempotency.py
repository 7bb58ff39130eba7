"""
Idempotency Keys — Suppress duplicate webhook deliveries.

Platforms retry webhooks they consider undelivered. The Telegram ingress
acquires ``telegram:<update_id>`` before dispatching; a key that is already
held (and not expired) marks the delivery as a duplicate.

Usage:
    store = IdempotencyStore(default_ttl=3600)

    if not store.acquire(f"telegram:{update_id}"):
        return  # duplicate
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyEntry:
    key: str
    created_at: float = 0.0
    ttl_seconds: int = 3600
    hit_count: int = 0

    def __post_init__(self):
        if self.created_at == 0.0:
            self.created_at = time.monotonic()

    @property
    def is_expired(self) -> bool:
        return time.monotonic() - self.created_at > self.ttl_seconds


class IdempotencyStore:
    """
    In-memory idempotency store.

    Keys live for ``default_ttl`` seconds. Expired entries are evicted when
    the store grows past ``max_entries``.
    """

    def __init__(self, default_ttl: int = 3600, max_entries: int = 10000):
        self._entries: Dict[str, IdempotencyEntry] = {}
        self._default_ttl = default_ttl
        self._max_entries = max_entries

    def has_key(self, key: str) -> bool:
        """Check if a key exists and is not expired."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired:
            self._entries.pop(key, None)
            return False
        return True

    def acquire(self, key: str, *, ttl: Optional[int] = None) -> bool:
        """
        Returns True if this is a new key (should execute).
        Returns False if the key is already held (duplicate).
        """
        if self.has_key(key):
            entry = self._entries[key]
            entry.hit_count += 1
            logger.info(f"[DEDUP] Duplicate delivery {key} (seen {entry.hit_count + 1}x)")
            return False

        self._entries[key] = IdempotencyEntry(key=key, ttl_seconds=ttl or self._default_ttl)

        if len(self._entries) > self._max_entries:
            self._evict_expired()
            # Still full: drop oldest
            while len(self._entries) > self._max_entries:
                oldest = min(self._entries.values(), key=lambda e: e.created_at)
                self._entries.pop(oldest.key, None)

        return True

    def _evict_expired(self) -> int:
        expired = [k for k, v in self._entries.items() if v.is_expired]
        for k in expired:
            self._entries.pop(k, None)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "total_entries": len(self._entries),
            "total_hits": sum(e.hit_count for e in self._entries.values()),
            "max_entries": self._max_entries,
        }
