"""
Dispatch State — The per-event processing state machine.

    RECEIVED → AUTHORIZED → NORMALIZED → PERSISTING_USER → INVOKING
             → PERSISTING_ASSISTANT → DELIVERED

Terminal states:
- REJECTED: authentication failed
- FAILED: an exception after normalisation
- SKIPPED: the event was not a message, or was a duplicate delivery
- CANCELLED: the web client stopped the stream

REJECTED and FAILED are reachable from any non-terminal state. The job
completion path has no user turn, so NORMALIZED may go straight to INVOKING
(summarisation) and INVOKING straight to DELIVERED.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class DispatchState(str, Enum):
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    NORMALIZED = "normalized"
    PERSISTING_USER = "persisting_user"
    INVOKING = "invoking"
    PERSISTING_ASSISTANT = "persisting_assistant"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[DispatchState] = frozenset({
    DispatchState.DELIVERED,
    DispatchState.REJECTED,
    DispatchState.FAILED,
    DispatchState.SKIPPED,
    DispatchState.CANCELLED,
})

_S = DispatchState
_TRANSITIONS: Dict[DispatchState, FrozenSet[DispatchState]] = {
    _S.RECEIVED: frozenset({_S.AUTHORIZED}),
    _S.AUTHORIZED: frozenset({_S.NORMALIZED, _S.SKIPPED}),
    _S.NORMALIZED: frozenset({_S.PERSISTING_USER, _S.INVOKING, _S.SKIPPED, _S.CANCELLED}),
    _S.PERSISTING_USER: frozenset({_S.INVOKING, _S.CANCELLED}),
    _S.INVOKING: frozenset({_S.PERSISTING_ASSISTANT, _S.DELIVERED, _S.CANCELLED}),
    _S.PERSISTING_ASSISTANT: frozenset({_S.DELIVERED, _S.CANCELLED}),
}
_ALWAYS_REACHABLE = frozenset({_S.REJECTED, _S.FAILED})


def can_transition(current: DispatchState, target: DispatchState) -> bool:
    if current.is_terminal:
        return False
    return target in _ALWAYS_REACHABLE or target in _TRANSITIONS.get(current, frozenset())


@dataclass
class DispatchCycle:
    """One inbound event's trip through the state machine."""
    channel: str
    cycle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: DispatchState = DispatchState.RECEIVED
    thread_id: Optional[str] = None
    history: List[Tuple[DispatchState, float]] = field(default_factory=list)
    # PersistResult of each turn, when attempted
    user_persist: Any = None
    assistant_persist: Any = None
    error: Optional[str] = None
    reason: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, self.started_at))

    def advance(self, target: DispatchState) -> None:
        """Move to ``target``. Raises ``ValueError`` on an illegal transition."""
        if not can_transition(self.state, target):
            raise ValueError(
                f"Illegal dispatch transition {self.state.value} -> {target.value}"
            )
        now = time.time()
        self.state = target
        self.history.append((target, now))
        if target.is_terminal:
            self.finished_at = now

    def fail(self, error: str) -> None:
        self.error = error
        self.advance(DispatchState.FAILED)

    def finish(self, target: DispatchState, reason: Optional[str] = None) -> None:
        self.reason = reason
        self.advance(target)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def states(self) -> List[DispatchState]:
        return [s for s, _ in self.history]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "channel": self.channel,
            "thread_id": self.thread_id,
            "state": self.state.value,
            "states": [s.value for s in self.states],
            "reason": self.reason,
            "error": self.error,
            "user_persisted": getattr(self.user_persist, "ok", None),
            "assistant_persisted": getattr(self.assistant_persist, "ok", None),
            "duration_ms": (
                round((self.finished_at - self.started_at) * 1000)
                if self.finished_at else None
            ),
        }
