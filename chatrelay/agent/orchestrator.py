"""
Dispatch Orchestrator — Ties channels, persistence and the agent together.

Every inbound event runs through a ``DispatchCycle``:

- web chat: normalised, persisted and streamed inline with the request
- Telegram: normalised inline, then ``dispatch_background`` runs the rest
  of the pipeline while the webhook has already returned
- GitHub job completion: no agent turn; the result is summarised, delivered
  and injected into the notification thread's agent memory

Ordering within a thread: the user turn is persisted before the agent is
invoked, and the assistant turn only after the agent produced its response
(or, for a stopped stream, the text emitted so far). Persistence is
best-effort: a failed write is recorded on the cycle and logged, never
raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from chatrelay.agent.channels.base import BaseChannel, ChannelType, MessageEnvelope
from chatrelay.agent.channels.registry import ChannelRegistry
from chatrelay.agent.dispatch_state import DispatchCycle, DispatchState
from chatrelay.agent.gateway import AgentGateway
from chatrelay.agent.idempotency import IdempotencyStore
from chatrelay.agent.structured_logging import set_dispatch_context
from chatrelay.agent.tasks import BackgroundTaskRunner, TaskRecord
from chatrelay.db.models import TurnRole
from chatrelay.errors import AgentInvocationFailed, DeliveryFailed
from chatrelay.services.conversation_store import ConversationStore
from chatrelay.services.notifications import NotificationPipeline, NotifyOutcome

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "Sorry, I encountered an error processing your message."
DELIVERY_FALLBACK_MESSAGE = "Sorry, I couldn't deliver my full response. Please try again."
ATTACHMENT_PLACEHOLDER = "[attachment]"


class DispatchOrchestrator:
    """Runs inbound events through the dispatch state machine."""

    def __init__(
        self,
        registry: ChannelRegistry,
        store: ConversationStore,
        gateway: AgentGateway,
        notifications: NotificationPipeline,
        runner: BackgroundTaskRunner,
        dedupe: Optional[IdempotencyStore] = None,
        history_size: int = 100,
    ):
        self.registry = registry
        self.store = store
        self.gateway = gateway
        self.notifications = notifications
        self.runner = runner
        self.dedupe = dedupe or IdempotencyStore()
        self._cycles: Deque[DispatchCycle] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Cycle bookkeeping
    # ------------------------------------------------------------------

    def begin(self, channel: ChannelType) -> DispatchCycle:
        """Start a cycle for an event that passed auth."""
        cycle = DispatchCycle(channel=channel.value)
        cycle.advance(DispatchState.AUTHORIZED)
        self._cycles.append(cycle)
        set_dispatch_context(cycle.cycle_id, channel.value)
        return cycle

    def reject(self, channel: ChannelType, reason: str) -> DispatchCycle:
        cycle = DispatchCycle(channel=channel.value)
        cycle.finish(DispatchState.REJECTED, reason)
        self._cycles.append(cycle)
        logger.warning(f"[DISPATCH] Rejected {channel.value} event: {reason}")
        return cycle

    def skip(self, cycle: DispatchCycle, reason: str) -> DispatchCycle:
        cycle.finish(DispatchState.SKIPPED, reason)
        logger.info(f"[DISPATCH] Skipped {cycle.channel} event: {reason}")
        return cycle

    def normalized(self, cycle: DispatchCycle, envelope: MessageEnvelope) -> None:
        cycle.thread_id = envelope.thread_id
        cycle.advance(DispatchState.NORMALIZED)
        set_dispatch_context(thread_id=envelope.thread_id)

    def is_duplicate(self, key: str) -> bool:
        """True when ``key`` was already seen within the dedupe TTL."""
        return not self.dedupe.acquire(key)

    def recent_cycles(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in list(self._cycles)[-limit:]]

    # ------------------------------------------------------------------
    # Conversational turns
    # ------------------------------------------------------------------

    async def _persist_user_turn(
        self, cycle: DispatchCycle, envelope: MessageEnvelope, owner_id: str, chat_title: Optional[str]
    ) -> None:
        cycle.advance(DispatchState.PERSISTING_USER)
        cycle.user_persist = await self.store.persist_turn(
            envelope.thread_id,
            owner_id,
            TurnRole.USER,
            envelope.text or ATTACHMENT_PLACEHOLDER,
            title=chat_title,
        )

    def _schedule_auto_title(self, envelope: MessageEnvelope) -> None:
        if not envelope.text.strip():
            return
        thread_id, text = envelope.thread_id, envelope.text
        self.runner.spawn(
            f"title:{thread_id}",
            lambda: self.store.auto_title(thread_id, text),
            kind="title",
        )

    async def chat(
        self,
        cycle: DispatchCycle,
        envelope: MessageEnvelope,
        owner_id: str,
        chat_title: Optional[str] = None,
    ) -> str:
        """Persist the user turn, invoke the agent, persist the reply."""
        await self._persist_user_turn(cycle, envelope, owner_id, chat_title)

        cycle.advance(DispatchState.INVOKING)
        content = self.gateway.build_content(envelope.text, envelope.attachments)
        try:
            reply = await self.gateway.invoke(envelope.thread_id, content)
        except AgentInvocationFailed as e:
            cycle.fail(e.message)
            raise

        cycle.advance(DispatchState.PERSISTING_ASSISTANT)
        cycle.assistant_persist = await self.store.persist_turn(
            envelope.thread_id, owner_id, TurnRole.ASSISTANT, reply
        )
        self._schedule_auto_title(envelope)
        return reply

    async def chat_stream(
        self,
        cycle: DispatchCycle,
        envelope: MessageEnvelope,
        owner_id: str,
    ) -> AsyncIterator[str]:
        """
        Stream the agent's reply as text deltas.

        If the consumer stops early, the assistant turn holds exactly the
        text yielded so far. A stream that yields nothing writes no assistant
        turn. If the agent fails, no assistant turn is written and the error propagates.
        """
        parts: List[str] = []
        deltas: Optional[AsyncIterator[str]] = None
        try:
            await self._persist_user_turn(cycle, envelope, owner_id, None)

            cycle.advance(DispatchState.INVOKING)
            content = self.gateway.build_content(envelope.text, envelope.attachments)
            deltas = self.gateway.stream(envelope.thread_id, content)
            try:
                async for delta in deltas:
                    parts.append(delta)
                    yield delta
            except AgentInvocationFailed as e:
                cycle.fail(e.message)
                raise

            cycle.advance(DispatchState.PERSISTING_ASSISTANT)
            if parts:
                cycle.assistant_persist = await asyncio.shield(self.store.persist_turn(
                    envelope.thread_id, owner_id, TurnRole.ASSISTANT, "".join(parts)
                ))
            cycle.advance(DispatchState.DELIVERED)
            self._schedule_auto_title(envelope)

        except (GeneratorExit, asyncio.CancelledError):
            # The partial write is scheduled before any other await; a cancel
            # scope may interrupt every await that follows.
            persisting = None
            if parts and cycle.state != DispatchState.PERSISTING_ASSISTANT:
                persisting = asyncio.shield(self.store.persist_turn(
                    envelope.thread_id, owner_id, TurnRole.ASSISTANT, "".join(parts)
                ))
            try:
                if deltas is not None:
                    await deltas.aclose()
                if persisting is not None:
                    cycle.assistant_persist = await persisting
            finally:
                if not cycle.is_terminal:
                    cycle.finish(DispatchState.CANCELLED, "client stopped the stream")
                    logger.info(
                        f"[DISPATCH] Stream for {envelope.thread_id} stopped after {len(parts)} delta(s)"
                    )
            raise

    # ------------------------------------------------------------------
    # Asynchronous channels
    # ------------------------------------------------------------------

    async def _deliver(self, channel: BaseChannel, envelope: MessageEnvelope, text: str) -> bool:
        """Send ``text``; on failure retry once with a static fallback."""
        try:
            await channel.send_response(envelope.thread_id, text, envelope.channel_metadata)
            return True
        except DeliveryFailed as e:
            logger.warning(f"[DISPATCH] Delivery to {envelope.thread_id} failed: {e.message}; retrying")

        try:
            await channel.send_response(
                envelope.thread_id, DELIVERY_FALLBACK_MESSAGE, envelope.channel_metadata
            )
            return True
        except DeliveryFailed as e:
            logger.error(f"[DISPATCH] Fallback delivery to {envelope.thread_id} failed: {e.message}")
            return False

    async def process_channel_message(
        self,
        channel: BaseChannel,
        envelope: MessageEnvelope,
        cycle: DispatchCycle,
        owner_id: str,
        chat_title: Optional[str] = None,
    ) -> None:
        """Acknowledge, show progress, run the turn and deliver the reply."""
        try:
            await channel.acknowledge(envelope.channel_metadata)
        except Exception as e:
            logger.debug(f"[DISPATCH] Acknowledge failed: {e}")

        stop_indicator = channel.start_processing_indicator(envelope.channel_metadata)
        try:
            try:
                reply = await self.chat(cycle, envelope, owner_id, chat_title)
            except AgentInvocationFailed:
                await self._deliver(channel, envelope, APOLOGY_MESSAGE)
                return
            except Exception as e:
                if not cycle.is_terminal:
                    cycle.fail(f"{type(e).__name__}: {e}")
                await self._deliver(channel, envelope, APOLOGY_MESSAGE)
                raise

            if await self._deliver(channel, envelope, reply):
                cycle.advance(DispatchState.DELIVERED)
            else:
                cycle.fail("delivery failed")
        finally:
            stop_indicator()

    def dispatch_background(
        self,
        channel: BaseChannel,
        envelope: MessageEnvelope,
        cycle: DispatchCycle,
        owner_id: str,
        chat_title: Optional[str] = None,
    ) -> TaskRecord:
        """Run ``process_channel_message`` detached from the request."""
        return self.runner.spawn(
            f"{channel.channel_type.value}:{envelope.thread_id}",
            lambda: self.process_channel_message(channel, envelope, cycle, owner_id, chat_title),
            kind="dispatch",
        )

    # ------------------------------------------------------------------
    # Job completion
    # ------------------------------------------------------------------

    async def handle_job_completion(self, cycle: DispatchCycle, envelope: MessageEnvelope) -> NotifyOutcome:
        """Summarize a job result, deliver it and inject it into agent memory."""
        result = envelope.channel_metadata["job_result"]
        channel = self.registry.get(ChannelType.GITHUB_JOB)

        cycle.advance(DispatchState.INVOKING)
        summary = await self.notifications.summarize(result)
        outcome = await self.notifications.notify(
            envelope.thread_id, summary, channel, envelope.channel_metadata
        )

        if outcome.delivered:
            cycle.advance(DispatchState.DELIVERED)
        else:
            cycle.fail(outcome.delivery_error or "delivery failed")
        logger.info(
            f"[DISPATCH] Job {result.job_id[:8]}: delivered={outcome.delivered} injected={outcome.injected}"
        )
        return outcome

    def dispatch_job_completion(self, cycle: DispatchCycle, envelope: MessageEnvelope) -> TaskRecord:
        result = envelope.channel_metadata["job_result"]
        return self.runner.spawn(
            f"job:{result.job_id}",
            lambda: self.handle_job_completion(cycle, envelope),
            kind="notify",
        )
