"""
Webhook Triggers — User-defined side effects on inbound requests.

Rules are loaded from a JSON file (``config/TRIGGERS.json`` by default):

    [
      {
        "name": "notify-on-job",
        "watch_path": "/github/webhook",
        "enabled": true,
        "actions": [
          {"type": "webhook", "url": "https://example.com/hook", "body": {"job": "{{body.job_id}}"}},
          {"type": "agent", "job": "Review the result of {{body.job_id}}"},
          {"type": "command", "command": "logger -t chatrelay 'job {{body.job_id}} from {{query.source}}'"}
        ]
      }
    ]

After auth, every POST request is offered to ``TriggerManager.fire``; each
enabled rule whose ``watch_path`` equals the request path runs its actions
in a background task. Trigger failures are logged and never reach the
request's response.

Template placeholders in action fields: ``{{body}}`` (the whole body as
JSON), ``{{body.key}}``, ``{{query.key}}``, ``{{headers.key}}``. Dotted
paths reach into nested objects.

A command is split into arguments before placeholders are filled and runs
without a shell, so a substituted value is always a single argument.
"""

import asyncio
import json
import logging
import re
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from chatrelay.agent.tasks import BackgroundTaskRunner, TaskRecord

logger = logging.getLogger(__name__)

ACTION_TYPES = ("webhook", "agent", "command")
COMMAND_TIMEOUT_SECONDS = 60.0
WEBHOOK_TIMEOUT_SECONDS = 30.0

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_][\w.\-]*)\s*\}\}")


def _lookup(context: Mapping[str, Any], path: str) -> Optional[Any]:
    parts = path.split(".")
    value: Any = context
    for i, part in enumerate(parts):
        if not isinstance(value, Mapping):
            return None
        if i == 1 and parts[0] == "headers":
            # Header names are case-insensitive
            part = part.lower()
        value = value.get(part)
        if value is None:
            return None
    return value


def render_template(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute placeholders in every string inside ``value``."""
    if isinstance(value, str):
        def _sub(match: "re.Match[str]") -> str:
            found = _lookup(context, match.group(1))
            if found is None:
                return ""
            if isinstance(found, (dict, list)):
                return json.dumps(found)
            return str(found)
        return _PLACEHOLDER.sub(_sub, value)
    if isinstance(value, dict):
        return {k: render_template(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, context) for v in value]
    return value


def render_command(command: Any, context: Mapping[str, Any]) -> List[str]:
    """Split ``command`` into argv, then fill placeholders in each argument."""
    args = shlex.split(command) if isinstance(command, str) else [str(a) for a in command]
    return [render_template(arg, context) for arg in args]


@dataclass
class TriggerRule:
    """A named set of actions fired when a request hits ``watch_path``."""
    name: str
    watch_path: str
    actions: List[Dict[str, Any]] = field(default_factory=list)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerRule":
        name = data.get("name") or data.get("watch_path") or "unnamed"
        watch_path = data.get("watch_path") or ""
        if not watch_path.startswith("/"):
            watch_path = "/" + watch_path
        actions = [a for a in data.get("actions", []) if isinstance(a, dict)]
        for action in actions:
            if action.get("type") not in ACTION_TYPES:
                logger.warning(f"[TRIGGER] Rule {name}: unknown action type {action.get('type')!r}")
        return cls(name=name, watch_path=watch_path, actions=actions, enabled=bool(data.get("enabled", True)))

    def matches(self, path: str) -> bool:
        return self.enabled and self.watch_path == path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "watch_path": self.watch_path,
            "enabled": self.enabled,
            "actions": [a.get("type") for a in self.actions],
        }


class TriggerManager:
    """Matches inbound requests against trigger rules and runs their actions."""

    def __init__(
        self,
        runner: BackgroundTaskRunner,
        rules: Optional[List[TriggerRule]] = None,
        github=None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.runner = runner
        self.github = github
        self._rules: List[TriggerRule] = list(rules or [])
        self._http_transport = http_transport
        self._history: List[Dict[str, Any]] = []
        self._max_history = 100

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def load_rules(path: Optional[str]) -> List[TriggerRule]:
        """Read rules from ``path``. A missing or invalid file yields no rules."""
        if not path:
            return []
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info(f"[TRIGGER] No trigger file at {path}")
            return []
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[TRIGGER] Could not load {path}: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"[TRIGGER] {path} must contain a JSON list of rules")
            return []
        rules = [TriggerRule.from_dict(item) for item in data if isinstance(item, dict)]
        logger.info(f"[TRIGGER] Loaded {len(rules)} rule(s) from {path}")
        return rules

    def list_rules(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._rules]

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._history[-limit:]

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def fire(
        self,
        path: str,
        body: Any = None,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> List[TaskRecord]:
        """Spawn the matching rules in the background. Never raises."""
        try:
            matched = [r for r in self._rules if r.matches(path)]
            if not matched:
                return []
            context = {
                "body": body if body is not None else {},
                "query": dict(query or {}),
                "headers": {k.lower(): v for k, v in dict(headers or {}).items()},
            }
            records = []
            for rule in matched:
                records.append(self.runner.spawn(
                    rule.name,
                    lambda rule=rule: self.run_rule(rule, context),
                    kind="trigger",
                ))
            return records
        except Exception:
            logger.exception(f"[TRIGGER] Failed to dispatch triggers for {path}")
            return []

    async def run_rule(self, rule: TriggerRule, context: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Run every action of ``rule``; one failing action does not stop the rest."""
        results = []
        for action in rule.actions:
            action_type = action.get("type")
            try:
                rendered = render_template(
                    {k: v for k, v in action.items() if k not in ("type", "command")}, context
                )
                if action.get("command"):
                    rendered["command"] = render_command(action["command"], context)
                data = await self._run_action(action_type, rendered)
                results.append({"action": action_type, "success": True, "data": data})
            except Exception as e:
                logger.error(f"[TRIGGER] {rule.name}/{action_type} failed: {e}")
                results.append({"action": action_type, "success": False, "error": str(e)})

        self._history.append({
            "rule": rule.name,
            "results": results,
            "timestamp": time.time(),
        })
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        return results

    async def _run_action(self, action_type: str, action: Dict[str, Any]) -> Dict[str, Any]:
        if action_type == "webhook":
            return await self._post_webhook(action)
        if action_type == "agent":
            return await self._create_job(action)
        if action_type == "command":
            return await self._run_command(action)
        raise ValueError(f"Unknown action type: {action_type!r}")

    async def _post_webhook(self, action: Dict[str, Any]) -> Dict[str, Any]:
        url = action.get("url")
        if not url:
            raise ValueError("webhook action requires a url")
        method = (action.get("method") or "POST").upper()
        async with httpx.AsyncClient(
            timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self._http_transport
        ) as client:
            resp = await client.request(
                method,
                url,
                json=action.get("body"),
                headers=action.get("headers") or None,
            )
        logger.info(f"[TRIGGER] {method} {url} -> {resp.status_code}")
        return {"status": resp.status_code}

    async def _create_job(self, action: Dict[str, Any]) -> Dict[str, Any]:
        job = action.get("job")
        if not job:
            raise ValueError("agent action requires a job")
        if self.github is None:
            raise RuntimeError("GitHub jobs are not configured")
        return await self.github.create_job(job)

    async def _run_command(self, action: Dict[str, Any]) -> Dict[str, Any]:
        args = action.get("command")
        if not args:
            raise ValueError("command action requires a command")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), COMMAND_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise RuntimeError(
                f"exit {proc.returncode}: {stderr.decode('utf-8', errors='replace')[:500]}"
            )
        return {"exit_code": proc.returncode, "stdout": stdout.decode("utf-8", errors="replace")[:2000]}
