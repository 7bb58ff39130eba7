"""
Notification Pipeline — Job results into a chat notification and agent memory.

1. ``summarize`` turns a structured job result into a short natural-language
   message with one memoryless model call. It never raises: on failure the
   summary is "Job finished.".
2. ``notify`` delivers the summary through a channel adapter and injects it
   into the thread's agent memory. The two effects are independent.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from chatrelay.agent.channels.base import BaseChannel
from chatrelay.agent.channels.github_channel import JobResult
from chatrelay.errors import DeliveryFailed, SummarizationFailed

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK = "Job finished."
SUMMARY_MAX_TOKENS = 1024
LOG_EXCERPT_CHARS = 8000

DEFAULT_SUMMARY_PROMPT = (
    "You summarize the results of automated coding jobs for a chat notification. "
    "In a few sentences say what the job did, whether it succeeded, and link the "
    "pull request if there is one. Plain text, no headings."
)


def load_summary_prompt(prompt_file: Optional[str] = None) -> str:
    if prompt_file:
        try:
            with open(prompt_file, encoding="utf-8") as f:
                text = f.read().strip()
            if text:
                return text
        except OSError as e:
            logger.warning(f"[NOTIFY] Could not read summary prompt {prompt_file}: {e}")
    return DEFAULT_SUMMARY_PROMPT


def build_prompt(result: JobResult) -> str:
    """Markdown sections for the fields that are present."""
    sections = []
    if result.job:
        sections.append(f"## Task\n{result.job}")
    if result.commit_message:
        sections.append(f"## Commit Message\n{result.commit_message}")
    if result.changed_files:
        sections.append("## Changed Files\n" + "\n".join(result.changed_files))
    if result.status:
        sections.append(f"## Status\n{result.status}")
    if result.merge_result:
        sections.append(f"## Merge Result\n{result.merge_result}")
    if result.pr_url:
        sections.append(f"## PR URL\n{result.pr_url}")
    if result.run_url:
        sections.append(f"## Run URL\n{result.run_url}")
    if result.log:
        log = result.log
        if len(log) > LOG_EXCERPT_CHARS:
            log = "..." + log[-LOG_EXCERPT_CHARS:]
        sections.append(f"## Agent Log\n{log}")
    return "\n\n".join(sections)


@dataclass
class NotifyOutcome:
    delivered: bool
    injected: bool
    delivery_error: Optional[str] = None
    injection_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.delivered and self.injected


class NotificationPipeline:
    """Summarize job results and fan them out to a channel and agent memory."""

    def __init__(self, llm, gateway, prompt: str = DEFAULT_SUMMARY_PROMPT, model: Optional[str] = None):
        self.llm = llm
        self.gateway = gateway
        self.prompt = prompt
        self.model = model

    build_prompt = staticmethod(build_prompt)

    async def _summarize(self, result: JobResult) -> str:
        try:
            response = await self.llm.complete(
                messages=[
                    {"role": "system", "content": self.prompt},
                    {"role": "user", "content": build_prompt(result)},
                ],
                model=self.model,
                max_tokens=SUMMARY_MAX_TOKENS,
            )
        except Exception as e:
            raise SummarizationFailed(str(e)) from e
        text = (response.content or "").strip()
        if not text:
            raise SummarizationFailed("empty summary")
        return text

    async def summarize(self, result: JobResult) -> str:
        try:
            return await self._summarize(result)
        except SummarizationFailed as e:
            logger.warning(f"[NOTIFY] Summary for job {result.job_id} failed: {e.message}")
            return SUMMARY_FALLBACK

    async def notify(
        self,
        thread_id: str,
        summary: str,
        channel: BaseChannel,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotifyOutcome:
        outcome = NotifyOutcome(delivered=False, injected=False)

        try:
            await channel.send_response(thread_id, summary, metadata or {})
            outcome.delivered = True
        except DeliveryFailed as e:
            outcome.delivery_error = e.message
            logger.error(f"[NOTIFY] Delivery to {thread_id} failed: {e.message}")
        except Exception as e:
            outcome.delivery_error = str(e)
            logger.exception(f"[NOTIFY] Delivery to {thread_id} failed")

        try:
            await self.gateway.update_state(thread_id, summary, source="job_summary")
            outcome.injected = True
        except Exception as e:
            outcome.injection_error = str(e)
            logger.exception(f"[NOTIFY] Memory injection for {thread_id} failed")

        return outcome
