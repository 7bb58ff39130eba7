"""
GitHub Service — Agent jobs on GitHub Actions.

A job is a branch ``job/<id>`` carrying ``logs/<id>/job.md`` with the task.
Pushing the branch starts the job workflow; when it finishes, the workflow
reports back on ``/github/webhook``.

Uses the GitHub REST API through httpx.
"""

import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from chatrelay.errors import GitHubError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
JOB_BRANCH_PREFIX = "job/"


class GitHubService:
    def __init__(
        self,
        token: Optional[str],
        owner: Optional[str],
        repo: Optional[str],
        default_branch: str = "main",
        api_base: str = GITHUB_API,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.owner = owner
        self.repo = repo
        self.default_branch = default_branch
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise GitHubError("GitHub is not configured (GH_TOKEN, GH_OWNER, GH_REPO)")
        return httpx.AsyncClient(
            base_url=f"{self.api_base}/repos/{self.owner}/{self.repo}",
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "chatrelay",
            },
            timeout=30,
            transport=self._transport,
        )

    @staticmethod
    def _check(resp: httpx.Response, action: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise GitHubError(
                f"GitHub {action} failed: {resp.status_code}",
                {"status": resp.status_code, "body": resp.text[:500]},
            )
        return resp.json()

    async def create_job(self, job: str) -> Dict[str, str]:
        """Create branch ``job/<id>`` with the job description; returns ids."""
        job_id = str(uuid.uuid4())
        branch = f"{JOB_BRANCH_PREFIX}{job_id}"

        async with self._client() as client:
            head = self._check(
                await client.get(f"/git/ref/heads/{self.default_branch}"),
                "read default branch",
            )
            sha = head["object"]["sha"]

            self._check(
                await client.post("/git/refs", json={"ref": f"refs/heads/{branch}", "sha": sha}),
                "create branch",
            )

            self._check(
                await client.put(
                    f"/contents/logs/{job_id}/job.md",
                    json={
                        "message": f"job: {job_id}",
                        "content": base64.b64encode(job.encode("utf-8")).decode("ascii"),
                        "branch": branch,
                    },
                ),
                "commit job file",
            )

        logger.info(f"[GITHUB] Created job {job_id[:8]} on {branch}")
        return {"job_id": job_id, "branch": branch}

    async def get_job_status(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        """In-progress and queued job runs, optionally for one job."""
        runs: List[Dict[str, Any]] = []
        async with self._client() as client:
            for status in ("in_progress", "queued"):
                data = self._check(
                    await client.get("/actions/runs", params={"status": status, "per_page": 100}),
                    "list workflow runs",
                )
                runs.extend(data.get("workflow_runs", []))

        jobs = []
        for run in runs:
            branch = run.get("head_branch") or ""
            if not branch.startswith(JOB_BRANCH_PREFIX):
                continue
            run_job_id = branch[len(JOB_BRANCH_PREFIX):]
            if job_id and run_job_id != job_id:
                continue
            jobs.append({
                "job_id": run_job_id,
                "branch": branch,
                "status": run.get("status"),
                "workflow": run.get("name"),
                "started_at": run.get("run_started_at") or run.get("created_at"),
                "duration_minutes": _minutes_since(run.get("run_started_at") or run.get("created_at")),
                "url": run.get("html_url"),
            })

        return {
            "jobs": jobs,
            "queued": sum(1 for j in jobs if j["status"] == "queued"),
            "running": sum(1 for j in jobs if j["status"] == "in_progress"),
        }


def _minutes_since(timestamp: Optional[str]) -> Optional[int]:
    if not timestamp:
        return None
    try:
        started = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    return int((datetime.now(timezone.utc) - started).total_seconds() // 60)
