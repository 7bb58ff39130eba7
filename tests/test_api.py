"""
API tests for ChatRelay — auth classes, web chat streaming, thread
management, Telegram and GitHub webhooks, key-authenticated routes.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from chatrelay.agent.channels.web_channel import STREAM_ERROR_TEXT
from chatrelay.db.models import TurnRole
from chatrelay.main import app

from conftest import API_KEY_HEADERS, make_services

TG_HEADERS = {"X-Telegram-Bot-Api-Secret-Token": "tg-secret"}
GH_HEADERS = {"x-github-webhook-secret-token": "gh-secret"}


def _sse_events(text: str):
    events = []
    for block in text.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def _chat_body(text="Hi there", chat_id="chat-1"):
    return {"chatId": chat_id, "messages": [{"role": "user", "parts": [{"type": "text", "text": text}]}]}


def _telegram_update(text="hello", update_id=1001, chat_id=42):
    return {
        "update_id": update_id,
        "message": {
            "message_id": 5,
            "date": 1700000000,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": 7, "is_bot": False, "first_name": "Sam"},
            "text": text,
        },
    }


# ============ Auth Tests ============

@pytest.mark.asyncio
async def test_setup_only_once(client: AsyncClient, auth_headers: dict):
    response = await client.post(
        "/api/auth/setup", json={"email": "second@example.com", "password": "another-pass"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_login_and_me(client: AsyncClient, auth_headers: dict):
    response = await client.post(
        "/api/auth/login", json={"email": "ADMIN@example.com", "password": "correct-horse"}
    )
    assert response.status_code == 200
    token = response.json()["access_token"]

    response = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["email"] == "admin@example.com"
    assert response.json()["role"] == "admin"


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, auth_headers: dict):
    response = await client.post(
        "/api/auth/login", json={"email": "admin@example.com", "password": "wrong-password"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_session_routes_require_login(client: AsyncClient):
    assert (await client.get("/api/auth/me")).status_code == 401
    assert (await client.get("/api/chats")).status_code == 401
    response = await client.post("/api/chat", json=_chat_body())
    assert response.status_code == 401


# ============ Key-authenticated routes ============

@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"x-api-key": "wrong"}])
async def test_key_routes_reject_bad_key(client: AsyncClient, headers):
    assert (await client.get("/api/ping", headers=headers)).status_code == 401
    assert (await client.post("/api/webhook", json={"job": "x"}, headers=headers)).status_code == 401
    assert (await client.get("/api/jobs/status", headers=headers)).status_code == 401
    response = await client.post(
        "/api/telegram/register",
        json={"bot_token": "1:a", "webhook_url": "https://x"},
        headers=headers,
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_ping(client: AsyncClient):
    response = await client.get("/api/ping", headers=API_KEY_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"message": "Pong!"}


@pytest.mark.asyncio
async def test_create_job_requires_job_field(client: AsyncClient):
    response = await client.post("/api/webhook", json={}, headers=API_KEY_HEADERS)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_job_github_failure(client: AsyncClient):
    response = await client.post("/api/webhook", json={"job": "do it"}, headers=API_KEY_HEADERS)
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_create_job(client: AsyncClient, services):
    services.github.create_job = AsyncMock(return_value={"job_id": "j1", "branch": "job/j1"})
    response = await client.post("/api/webhook", json={"job": "do it"}, headers=API_KEY_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"job_id": "j1", "branch": "job/j1"}
    services.github.create_job.assert_awaited_once_with("do it")


@pytest.mark.asyncio
async def test_telegram_register(client: AsyncClient, services):
    with patch.object(services.telegram, "register_webhook", new=AsyncMock(return_value=True)) as register:
        response = await client.post(
            "/api/telegram/register",
            json={"bot_token": "123:abc", "webhook_url": "https://relay.test/api/telegram/webhook"},
            headers=API_KEY_HEADERS,
        )
    assert response.status_code == 200
    assert response.json() == {"success": True, "result": True}
    register.assert_awaited_once_with("123:abc", "https://relay.test/api/telegram/webhook", "tg-secret")


@pytest.mark.asyncio
async def test_telegram_register_missing_fields(client: AsyncClient):
    response = await client.post(
        "/api/telegram/register", json={"bot_token": "123:abc"}, headers=API_KEY_HEADERS
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_dispatch_status(client: AsyncClient):
    response = await client.get("/api/dispatch/status", headers=API_KEY_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert {c["type"] for c in data["channels"]} == {"web", "telegram", "github_job"}


# ============ Web chat ============

@pytest.mark.asyncio
async def test_chat_streams_and_persists(client: AsyncClient, auth_headers: dict, services, fake_llm):
    fake_llm.reply = "Friendly Greeting"
    response = await client.post("/api/chat", json=_chat_body("Hi there"), headers=auth_headers)
    assert response.status_code == 200
    assert response.headers["x-vercel-ai-ui-message-stream"] == "v1"
    assert response.headers["content-type"].startswith("text/event-stream")

    events = _sse_events(response.text)
    types = [e if e == "[DONE]" else e["type"] for e in events]
    assert types == ["start", "text-start", "text-delta", "text-delta", "text-end", "finish", "[DONE]"]
    assert "".join(e["delta"] for e in events if e != "[DONE]" and e["type"] == "text-delta") == "Hello there"

    await services.runner.wait_idle(timeout=5)

    response = await client.get("/api/chats/chat-1/messages", headers=auth_headers)
    assert [(m["role"], m["content"]) for m in response.json()] == [
        ("user", "Hi there"),
        ("assistant", "Hello there"),
    ]

    chats = (await client.get("/api/chats", headers=auth_headers)).json()
    assert [(c["id"], c["title"]) for c in chats] == [("chat-1", "Friendly Greeting")]


@pytest.mark.asyncio
async def test_chat_agent_failure_emits_error_event(client: AsyncClient, auth_headers: dict, fake_runtime):
    fake_runtime.fail_after = 1
    response = await client.post("/api/chat", json=_chat_body(), headers=auth_headers)
    assert response.status_code == 200

    events = _sse_events(response.text)
    assert events[-2] == {"type": "error", "errorText": STREAM_ERROR_TEXT}
    assert events[-1] == "[DONE]"

    messages = (await client.get("/api/chats/chat-1/messages", headers=auth_headers)).json()
    assert [m["role"] for m in messages] == ["user"]


@pytest.mark.asyncio
async def test_empty_chat_message_rejected(client: AsyncClient, auth_headers: dict, fake_runtime):
    response = await client.post("/api/chat", json=_chat_body("   "), headers=auth_headers)
    assert response.status_code == 400
    assert (await client.get("/api/chats", headers=auth_headers)).json() == []
    assert fake_runtime.invocations == []


@pytest.mark.asyncio
async def test_invalid_chat_body_rejected(client: AsyncClient, auth_headers: dict):
    response = await client.post(
        "/api/chat", content=b"not json", headers={**auth_headers, "content-type": "application/json"}
    )
    assert response.status_code == 400


# ============ Thread management ============

@pytest.mark.asyncio
async def test_rename_and_delete_chat(client: AsyncClient, auth_headers: dict, services):
    me = (await client.get("/api/auth/me", headers=auth_headers)).json()
    await services.store.persist_turn("c1", me["id"], TurnRole.USER, "one")
    await services.store.persist_turn("c2", me["id"], TurnRole.USER, "two")

    response = await client.patch("/api/chats/c1", json={"title": "Renamed"}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["title"] == "Renamed"

    response = await client.delete("/api/chats/c1", headers=auth_headers)
    assert response.json()["deleted"] == 1
    assert (await client.get("/api/chats/c1/messages", headers=auth_headers)).status_code == 404

    response = await client.delete("/api/chats", headers=auth_headers)
    assert response.json()["deleted"] == 1
    assert (await client.get("/api/chats", headers=auth_headers)).json() == []


@pytest.mark.asyncio
async def test_other_owners_threads_hidden(client: AsyncClient, auth_headers: dict, services):
    await services.store.persist_turn("42", "telegram", TurnRole.USER, "private")
    assert (await client.get("/api/chats/42/messages", headers=auth_headers)).status_code == 404
    assert (await client.patch("/api/chats/42", json={"title": "x"}, headers=auth_headers)).status_code == 404
    assert (await client.delete("/api/chats/42", headers=auth_headers)).status_code == 404
    assert len(await services.store.get_turns("42")) == 1


# ============ Telegram webhook ============

@pytest.fixture
def telegram_online(services):
    """An active bot token with every Bot API call patched out."""
    services.token_cell.set("123:abc")
    with patch.object(services.telegram, "send_message", new=AsyncMock()) as send, \
            patch.object(services.telegram, "acknowledge", new=AsyncMock()), \
            patch.object(services.telegram, "start_processing_indicator", return_value=lambda: None):
        yield send


@pytest.mark.asyncio
async def test_telegram_secret_mismatch(client: AsyncClient, services, fake_runtime):
    for headers in ({}, {"X-Telegram-Bot-Api-Secret-Token": "wrong"}):
        response = await client.post("/api/telegram/webhook", json=_telegram_update(), headers=headers)
        assert response.status_code == 401
    assert services.orchestrator.recent_cycles()[-1]["state"] == "rejected"
    assert fake_runtime.invocations == []


@pytest.mark.asyncio
async def test_telegram_update_without_bot_token_skipped(client: AsyncClient, services, fake_runtime):
    assert not services.token_cell
    response = await client.post("/api/telegram/webhook", json=_telegram_update("hello"), headers=TG_HEADERS)
    assert response.json() == {"ok": True}
    await services.runner.wait_idle(timeout=5)

    assert fake_runtime.invocations == []
    assert await services.store.get_turns("42") == []
    cycle = services.orchestrator.recent_cycles()[-1]
    assert (cycle["state"], cycle["reason"]) == ("skipped", "no bot token")


@pytest.mark.asyncio
async def test_telegram_message_answered_in_background(client: AsyncClient, services, telegram_online):
    response = await client.post("/api/telegram/webhook", json=_telegram_update("hello"), headers=TG_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    await services.runner.wait_idle(timeout=5)

    telegram_online.assert_awaited_once_with("42", "Hello there", reply_to=5)
    turns = await services.store.get_turns("42")
    assert [(t.role, t.content) for t in turns] == [("user", "hello"), ("assistant", "Hello there")]
    thread = await services.store.get_thread("42")
    assert (thread.user_id, thread.title) == ("telegram", "Telegram")


@pytest.mark.asyncio
async def test_telegram_duplicate_delivery_skipped(client: AsyncClient, services, fake_runtime, telegram_online):
    for _ in range(2):
        response = await client.post(
            "/api/telegram/webhook", json=_telegram_update(update_id=7), headers=TG_HEADERS
        )
        assert response.json() == {"ok": True}
    await services.runner.wait_idle(timeout=5)

    assert len(fake_runtime.invocations) == 1
    states = [c["state"] for c in services.orchestrator.recent_cycles()]
    assert "skipped" in states


@pytest.mark.asyncio
async def test_telegram_non_message_update(client: AsyncClient, fake_runtime, telegram_online):
    response = await client.post(
        "/api/telegram/webhook", json={"update_id": 9, "edited_channel_post": None}, headers=TG_HEADERS
    )
    assert response.json() == {"ok": True}
    assert fake_runtime.invocations == []


# ============ GitHub webhook ============

@pytest.mark.asyncio
async def test_github_secret_mismatch(client: AsyncClient):
    response = await client.post("/api/github/webhook", json={"job_id": "abc"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_github_not_a_job(client: AsyncClient, fake_llm):
    response = await client.post("/api/github/webhook", json={"branch": "main"}, headers=GH_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "skipped": True, "reason": "not a job"}
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_github_no_chat_to_notify(client: AsyncClient, fake_llm):
    response = await client.post("/api/github/webhook", json={"job_id": "abc"}, headers=GH_HEADERS)
    assert response.json() == {"ok": True, "skipped": True, "reason": "no chat to notify"}
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_github_job_completion_notifies(client: AsyncClient, services, fake_llm, fake_runtime):
    notify_services = make_services(
        fake_llm, fake_runtime, telegram_chat_id="42", telegram_bot_token="123:abc"
    )
    app.state.services = notify_services
    fake_llm.reply = "Job abc123 opened a PR."
    try:
        with patch.object(notify_services.telegram, "send_message", new=AsyncMock()) as send:
            response = await client.post(
                "/api/github/webhook",
                json={"branch": "job/abc123", "job": "Fix it", "status": "success"},
                headers=GH_HEADERS,
            )
            assert response.json() == {"ok": True, "queued": True, "job_id": "abc123"}
            await notify_services.runner.wait_idle(timeout=5)
    finally:
        await notify_services.shutdown()
        app.state.services = services

    send.assert_awaited_once_with("42", "Job abc123 opened a PR.")
    assert fake_runtime.appended == [("42", "assistant", "Job abc123 opened a PR.", "job_summary")]
    assert "## Task\nFix it" in fake_llm.calls[0]["messages"][1]["content"]


# ============ Health ============

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "connected"
    assert data["channels"]["telegram"] == "disabled"
