"""
Shared fixtures for the ChatRelay test suite.

Environment is set before any chatrelay import so the settings singleton
and the module-level engine pick up the in-memory database.
"""

import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["API_KEY"] = "test-api-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "tg-secret"
os.environ["GH_WEBHOOK_SECRET"] = "gh-secret"
os.environ["TRIGGERS_FILE"] = ""
for _name in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "TELEGRAM_VERIFICATION", "OPENAI_API_KEY"):
    os.environ.pop(_name, None)

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from chatrelay.agent.channels.base import BaseChannel, ChannelType
from chatrelay.agent.runtime import AgentRuntime
from chatrelay.config import settings
from chatrelay.container import build_services
from chatrelay.db import init_db, drop_db, async_session_maker
from chatrelay.errors import DeliveryFailed
from chatrelay.main import app
from chatrelay.services.github_service import GitHubService
from chatrelay.services.llm_service import LLMResponse, StreamChunk

API_KEY_HEADERS = {"x-api-key": "test-api-key"}


# ── Fakes ────────────────────────────────────────────────

class FakeLLM:
    """Stands in for LLMService: canned completions, recorded calls."""

    def __init__(self, reply: str = "Generated Title", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.stream_chunks: List[str] = []
        self.stream_delay = 0.0

    async def complete(self, messages, model=None, temperature=None, max_tokens=None, **kwargs):
        self.calls.append({"messages": messages, "model": model, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.reply,
            model=model or "fake",
            tokens_prompt=0,
            tokens_completion=0,
            finish_reason="stop",
        )

    async def stream(self, messages, **kwargs):
        self.calls.append({"messages": messages, "stream": True})
        for text in self.stream_chunks:
            if self.stream_delay:
                await asyncio.sleep(self.stream_delay)
            yield StreamChunk(content=text, is_final=False)
        yield StreamChunk(content="", is_final=True, finish_reason="stop")

    def count_message_tokens(self, message):
        content = message.get("content", "")
        return 4 + len(str(content).split())


class FakeRuntime(AgentRuntime):
    """Agent runtime double: fixed replies, optional failures and delays."""

    def __init__(self, reply: str = "Hello there", deltas: Optional[List[str]] = None):
        self.reply = reply
        self.deltas = deltas if deltas is not None else ["Hello", " there"]
        self.error: Optional[Exception] = None
        self.fail_after: Optional[int] = None  # stream: raise after this many deltas
        self.delay = 0.0
        self.first_delta_delay = 0.0
        self.before_reply = None  # async callable(thread_id)
        self.invocations: List[tuple] = []
        self.appended: List[tuple] = []

    async def invoke(self, thread_id, content):
        self.invocations.append((thread_id, content))
        if self.before_reply is not None:
            await self.before_reply(thread_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def stream(self, thread_id, content, timeout=None):
        self.invocations.append((thread_id, content))
        if self.before_reply is not None:
            await self.before_reply(thread_id)
        if self.first_delta_delay:
            await asyncio.sleep(self.first_delta_delay)
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i >= self.fail_after:
                raise self.error or RuntimeError("model exploded")
            await asyncio.sleep(0)
            yield delta
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise self.error or RuntimeError("model exploded")

    async def append(self, thread_id, role, content, source=None):
        self.appended.append((thread_id, role, content, source))


class FakeChannel(BaseChannel):
    """Records deliveries; the first ``fail_times`` sends raise DeliveryFailed."""

    def __init__(self, channel_type: ChannelType = ChannelType.TELEGRAM, fail_times: int = 0):
        super().__init__(channel_type)
        self.fail_times = fail_times
        self.sent: List[str] = []
        self.acknowledged = 0
        self.indicator_stopped = False

    async def receive(self, raw):
        return None

    async def acknowledge(self, metadata):
        self.acknowledged += 1

    def start_processing_indicator(self, metadata):
        def stop():
            self.indicator_stopped = True
        return stop

    async def send_response(self, thread_id, text, metadata):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryFailed("platform unavailable")
        self.sent.append(text)


# ── Fixtures ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def database():
    """Create a fresh database for each test"""
    await init_db()
    yield async_session_maker
    await drop_db()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


def make_services(fake_llm, fake_runtime, **overrides):
    relay_settings = settings.model_copy(update=overrides) if overrides else settings
    return build_services(
        relay_settings,
        session_factory=async_session_maker,
        llm=fake_llm,
        runtime=fake_runtime,
        github=GitHubService(token=None, owner=None, repo=None),
    )


@pytest_asyncio.fixture
async def services(database, fake_llm, fake_runtime):
    """Service container wired with fakes and installed on the app"""
    svc = make_services(fake_llm, fake_runtime)
    app.state.services = svc
    yield svc
    await svc.runner.wait_idle(timeout=5)
    await svc.shutdown()
    app.state.services = None


@pytest_asyncio.fixture
async def client(services):
    """Create an async test client"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_headers(client: AsyncClient):
    """Bearer headers for the admin user created through first-run setup"""
    response = await client.post(
        "/api/auth/setup",
        json={"email": "admin@example.com", "password": "correct-horse"},
    )
    assert response.status_code == 201
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
