"""
Webhook trigger tests — rule loading, template rendering, action execution.
"""

import json

import httpx
import pytest
import pytest_asyncio

from chatrelay.agent.tasks import BackgroundTaskRunner
from chatrelay.agent.webhook_triggers import TriggerManager, TriggerRule, render_command, render_template


@pytest_asyncio.fixture
async def runner():
    runner = BackgroundTaskRunner()
    yield runner
    await runner.shutdown()


class TestRenderTemplate:
    CONTEXT = {
        "body": {"job_id": "abc", "nested": {"n": 3}, "items": [1, 2]},
        "query": {"source": "ci"},
        "headers": {"user-agent": "GitHub-Hookshot"},
    }

    def test_placeholders(self):
        assert render_template("{{body.job_id}} via {{query.source}}", self.CONTEXT) == "abc via ci"

    def test_nested_and_json_values(self):
        assert render_template("{{ body.nested.n }}", self.CONTEXT) == "3"
        assert render_template("{{body.items}}", self.CONTEXT) == "[1, 2]"
        assert json.loads(render_template("{{body}}", self.CONTEXT))["job_id"] == "abc"

    def test_headers_case_insensitive(self):
        assert render_template("{{headers.User-Agent}}", self.CONTEXT) == "GitHub-Hookshot"

    def test_missing_is_empty(self):
        assert render_template("[{{body.nope}}]", self.CONTEXT) == "[]"

    def test_structures_rendered_recursively(self):
        rendered = render_template({"a": ["{{query.source}}", 5]}, self.CONTEXT)
        assert rendered == {"a": ["ci", 5]}

    def test_command_values_stay_single_arguments(self):
        context = {"body": {"job_id": "a b; rm -rf /"}}
        assert render_command("echo 'job {{body.job_id}}' done", context) == [
            "echo", "job a b; rm -rf /", "done",
        ]
        assert render_command(["printf", "%s", "{{body.job_id}}"], context) == ["printf", "%s", "a b; rm -rf /"]


class TestRules:
    def test_from_dict_normalises_path(self):
        rule = TriggerRule.from_dict({"name": "r", "watch_path": "github/webhook"})
        assert rule.watch_path == "/github/webhook"
        assert rule.matches("/github/webhook")

    def test_disabled_rule_never_matches(self):
        rule = TriggerRule.from_dict({"name": "r", "watch_path": "/webhook", "enabled": False})
        assert not rule.matches("/webhook")

    def test_load_rules(self, tmp_path):
        path = tmp_path / "TRIGGERS.json"
        path.write_text(json.dumps([{"name": "a", "watch_path": "/ping", "actions": []}]))
        rules = TriggerManager.load_rules(str(path))
        assert [r.name for r in rules] == ["a"]

    def test_load_rules_bad_file(self, tmp_path):
        path = tmp_path / "TRIGGERS.json"
        path.write_text("{not json")
        assert TriggerManager.load_rules(str(path)) == []
        assert TriggerManager.load_rules(str(tmp_path / "missing.json")) == []
        assert TriggerManager.load_rules(None) == []


@pytest.mark.asyncio
async def test_webhook_action_posts_rendered_body(runner):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    rule = TriggerRule.from_dict({
        "name": "forward",
        "watch_path": "/github/webhook",
        "actions": [{"type": "webhook", "url": "https://hooks.test/in", "body": {"job": "{{body.job_id}}"}}],
    })
    manager = TriggerManager(runner, [rule], http_transport=httpx.MockTransport(handler))

    records = manager.fire("/github/webhook", {"job_id": "abc"}, {}, {})
    await runner.wait_idle(timeout=5)

    assert len(records) == 1 and records[0].status == "completed"
    assert json.loads(requests[0].content) == {"job": "abc"}
    assert manager.get_history()[-1]["results"][0] == {"action": "webhook", "success": True, "data": {"status": 204}}


@pytest.mark.asyncio
async def test_failing_actions_are_recorded_not_raised(runner):
    rule = TriggerRule.from_dict({
        "name": "mixed",
        "watch_path": "/webhook",
        "actions": [
            {"type": "command", "command": "sh -c 'exit 3'"},
            {"type": "agent", "job": "do {{body.job}}"},
            {"type": "command", "command": "echo {{query.source}}"},
        ],
    })
    manager = TriggerManager(runner, [rule])

    manager.fire("/webhook", {"job": "x"}, {"source": "cron"}, {})
    await runner.wait_idle(timeout=10)

    results = manager.get_history()[-1]["results"]
    assert [r["success"] for r in results] == [False, False, True]
    assert "exit 3" in results[0]["error"]
    assert results[2]["data"]["stdout"].strip() == "cron"


@pytest.mark.asyncio
async def test_agent_action_creates_job(runner):
    class FakeGitHub:
        def __init__(self):
            self.jobs = []

        async def create_job(self, job):
            self.jobs.append(job)
            return {"job_id": "j1", "branch": "job/j1"}

    github = FakeGitHub()
    rule = TriggerRule.from_dict({
        "name": "spawn",
        "watch_path": "/telegram/webhook",
        "actions": [{"type": "agent", "job": "Reply to {{body.message.text}}"}],
    })
    manager = TriggerManager(runner, [rule], github=github)
    manager.fire("/telegram/webhook", {"message": {"text": "hello"}})
    await runner.wait_idle(timeout=5)
    assert github.jobs == ["Reply to hello"]


@pytest.mark.asyncio
async def test_unmatched_path_spawns_nothing(runner):
    manager = TriggerManager(runner, [TriggerRule(name="r", watch_path="/webhook")])
    assert manager.fire("/ping") == []
    assert runner.recent() == []


@pytest.mark.asyncio
async def test_command_placeholders_cannot_break_out(runner, tmp_path):
    marker = tmp_path / "injected"
    rule = TriggerRule.from_dict({
        "name": "log-job",
        "watch_path": "/github/webhook",
        "actions": [{"type": "command", "command": "echo 'job {{body.job_id}} finished'"}],
    })
    manager = TriggerManager(runner, [rule])
    job_id = f"x'; touch {marker}; echo '"

    manager.fire("/github/webhook", {"job_id": job_id})
    await runner.wait_idle(timeout=10)

    result = manager.get_history()[-1]["results"][0]
    assert result["success"]
    assert result["data"]["stdout"].strip() == f"job {job_id} finished"
    assert not marker.exists()
