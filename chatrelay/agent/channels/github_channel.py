"""
GitHub Job Channel — Job-completion notifications from GitHub Actions.

A workflow posts the result of a finished agent job to ``/github/webhook``.
There is no agent invocation on this inbound turn: the orchestrator
summarises the result and the summary is delivered to the configured
notification chat (through the Telegram adapter) and injected into that
thread's agent memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chatrelay.agent.channels.base import BaseChannel, ChannelType, MessageEnvelope
from chatrelay.agent.channels.telegram_channel import TelegramChannel
from chatrelay.errors import DeliveryFailed

logger = logging.getLogger(__name__)

JOB_BRANCH_PREFIX = "job/"


def resolve_job_id(payload: Dict[str, Any]) -> Optional[str]:
    """``job_id``, else a ``job/<id>`` branch with the prefix stripped."""
    job_id = payload.get("job_id")
    if job_id:
        return str(job_id)
    branch = payload.get("branch") or ""
    if isinstance(branch, str) and branch.startswith(JOB_BRANCH_PREFIX):
        return branch[len(JOB_BRANCH_PREFIX):] or None
    return None


@dataclass
class JobResult:
    job_id: str
    job: str = ""
    pr_url: str = ""
    run_url: str = ""
    status: str = ""
    merge_result: str = ""
    log: str = ""
    changed_files: List[str] = field(default_factory=list)
    commit_message: str = ""

    @classmethod
    def from_payload(cls, job_id: str, payload: Dict[str, Any]) -> "JobResult":
        run_url = payload.get("run_url") or ""
        changed = payload.get("changed_files") or []
        if isinstance(changed, str):
            changed = [line for line in changed.splitlines() if line.strip()]
        return cls(
            job_id=job_id,
            job=payload.get("job") or "",
            pr_url=payload.get("pr_url") or run_url,
            run_url=run_url,
            status=payload.get("status") or "",
            merge_result=payload.get("merge_result") or "",
            log=payload.get("log") or "",
            changed_files=[str(f) for f in changed],
            commit_message=payload.get("commit_message") or "",
        )


class GitHubJobChannel(BaseChannel):
    """Adapter for job-completion webhooks; delivers through Telegram."""

    def __init__(self, telegram: TelegramChannel, notify_chat_id: Optional[str] = None):
        super().__init__(ChannelType.GITHUB_JOB)
        self.telegram = telegram
        self.notify_chat_id = str(notify_chat_id) if notify_chat_id else None

    @property
    def can_notify(self) -> bool:
        return bool(self.notify_chat_id) and bool(self.telegram.token_cell)

    async def receive(self, raw: Dict[str, Any]) -> Optional[MessageEnvelope]:
        job_id = resolve_job_id(raw)
        if not job_id or not self.notify_chat_id:
            return None
        result = JobResult.from_payload(job_id, raw)
        return MessageEnvelope(
            thread_id=self.notify_chat_id,
            channel=ChannelType.GITHUB_JOB,
            text=result.job or f"Job {job_id} finished",
            channel_metadata={"chat_id": self.notify_chat_id, "job_result": result},
        )

    async def send_response(self, thread_id: str, text: str, metadata: Dict[str, Any]) -> None:
        chat_id = metadata.get("chat_id") or thread_id
        if not chat_id:
            raise DeliveryFailed("No notification chat configured")
        await self.telegram.send_message(chat_id, text)
