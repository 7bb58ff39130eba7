"""Server-to-server endpoints (API key): job creation, job status, liveness."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from chatrelay.api.deps import fire_triggers, get_services, read_json, require_api_key
from chatrelay.container import RelayServices
from chatrelay.errors import GitHubError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"], dependencies=[Depends(require_api_key)])


@router.post("/webhook", dependencies=[Depends(fire_triggers)])
async def create_job(
    request: Request,
    services: RelayServices = Depends(get_services),
):
    body = await read_json(request)
    job = body.get("job") if isinstance(body, dict) else None
    if not job:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing job field")

    try:
        return await services.github.create_job(job)
    except GitHubError as e:
        logger.error(f"[GITHUB] Create job failed: {e.message} {e.details or ''}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create job",
        )


@router.get("/jobs/status")
async def job_status(
    job_id: Optional[str] = None,
    services: RelayServices = Depends(get_services),
):
    try:
        return await services.github.get_job_status(job_id)
    except GitHubError as e:
        logger.error(f"[GITHUB] Job status failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get job status",
        )


@router.get("/ping")
async def ping():
    return {"message": "Pong!"}


@router.get("/dispatch/status")
async def dispatch_status(services: RelayServices = Depends(get_services)):
    """Recent dispatch cycles and background task state."""
    return {
        "channels": services.registry.status(),
        "cycles": services.orchestrator.recent_cycles(),
        "tasks": services.runner.stats(),
        "recent_tasks": [r.to_dict() for r in services.runner.recent()],
        "dedupe": services.orchestrator.dedupe.stats(),
        "triggers": services.triggers.list_rules(),
    }
