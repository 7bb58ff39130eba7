"""
GitHub job-completion webhook.

A finished job workflow posts its result here. The summary and the
notification run in the background; the response only reports whether the
payload was accepted.
"""

import logging

from fastapi import APIRouter, Depends, Request

from chatrelay.agent.channels.base import ChannelType
from chatrelay.agent.channels.github_channel import resolve_job_id
from chatrelay.api.deps import fire_triggers, get_services, read_json, verify_github_secret
from chatrelay.container import RelayServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/github", tags=["github"])


@router.post("/webhook", dependencies=[Depends(verify_github_secret), Depends(fire_triggers)])
async def github_webhook(
    request: Request,
    services: RelayServices = Depends(get_services),
):
    body = await read_json(request)
    payload = body if isinstance(body, dict) else {}
    orchestrator = services.orchestrator
    cycle = orchestrator.begin(ChannelType.GITHUB_JOB)

    job_id = resolve_job_id(payload)
    if not job_id:
        orchestrator.skip(cycle, "not a job")
        return {"ok": True, "skipped": True, "reason": "not a job"}

    if not services.github_channel.can_notify:
        orchestrator.skip(cycle, "no chat to notify")
        return {"ok": True, "skipped": True, "reason": "no chat to notify"}

    envelope = await services.github_channel.receive(payload)
    orchestrator.normalized(cycle, envelope)
    orchestrator.dispatch_job_completion(cycle, envelope)
    logger.info(f"[GITHUB] Job {job_id[:8]} completion queued")
    return {"ok": True, "queued": True, "job_id": job_id}
