"""
Conversation store tests — lazy threads, ordered turns, best-effort writes,
auto-titles.
"""

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from chatrelay.db.models import TurnRole
from chatrelay.services.conversation_store import ConversationStore, monotonic_utcnow

from conftest import FakeLLM


@pytest_asyncio.fixture
async def store(database, fake_llm):
    return ConversationStore(database, default_title="New Chat", llm=fake_llm, title_model="mini")


def test_monotonic_clock_strictly_increases():
    stamps = [monotonic_utcnow() for _ in range(50)]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


@pytest.mark.asyncio
async def test_ensure_thread_is_idempotent(store):
    first = await store.ensure_thread("t1", "owner-a", title="Telegram")
    second = await store.ensure_thread("t1", "owner-b", title="Other")
    assert first.id == second.id == "t1"
    assert second.user_id == "owner-a"
    assert second.title == "Telegram"


@pytest.mark.asyncio
async def test_turns_come_back_in_write_order(store):
    for i in range(6):
        role = TurnRole.USER if i % 2 == 0 else TurnRole.ASSISTANT
        result = await store.persist_turn("t1", "owner", role, f"turn {i}")
        assert result.ok

    turns = await store.get_turns("t1")
    assert [t.content for t in turns] == [f"turn {i}" for i in range(6)]
    assert [t.role for t in turns][:2] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_threads_listed_by_recent_activity(store):
    await store.persist_turn("old", "owner", TurnRole.USER, "a")
    await store.persist_turn("new", "owner", TurnRole.USER, "b")
    await store.persist_turn("other", "someone-else", TurnRole.USER, "c")
    assert [c.id for c in await store.list_threads("owner")] == ["new", "old"]

    await store.persist_turn("old", "owner", TurnRole.ASSISTANT, "d")
    assert [c.id for c in await store.list_threads("owner")] == ["old", "new"]


@pytest.mark.asyncio
async def test_get_thread_checks_owner(store):
    await store.ensure_thread("t1", "owner")
    assert await store.get_thread("t1", owner_id="owner") is not None
    assert await store.get_thread("t1", owner_id="intruder") is None
    assert await store.get_thread("missing") is None


@pytest.mark.asyncio
async def test_delete_thread_removes_turns(store):
    await store.persist_turn("t1", "owner", TurnRole.USER, "hi")
    assert await store.delete_thread("t1") is True
    assert await store.get_turns("t1") == []
    assert await store.delete_thread("t1") is False


@pytest.mark.asyncio
async def test_delete_all_threads_only_for_owner(store):
    await store.persist_turn("a", "owner", TurnRole.USER, "x")
    await store.persist_turn("b", "owner", TurnRole.USER, "y")
    await store.persist_turn("c", "telegram", TurnRole.USER, "z")
    assert await store.delete_all_threads("owner") == 2
    assert [c.id for c in await store.list_threads("telegram")] == ["c"]
    assert len(await store.get_turns("c")) == 1


@pytest.mark.asyncio
async def test_persist_turn_reports_failure_instead_of_raising():
    def broken_session():
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    store = ConversationStore(broken_session)
    result = await store.persist_turn("t1", "owner", TurnRole.USER, "hello")
    assert result.ok is False
    assert "OperationalError" in result.reason


# ── Auto-title ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_auto_title_replaces_sentinel_once(store, fake_llm):
    fake_llm.reply = '"Trip Planning Help"'
    await store.persist_turn("t1", "owner", TurnRole.USER, "help me plan a trip")

    assert await store.auto_title("t1", "help me plan a trip") is True
    assert (await store.get_thread("t1")).title == "Trip Planning Help"

    assert await store.auto_title("t1", "another message") is False
    assert len(fake_llm.calls) == 1
    assert fake_llm.calls[0]["model"] == "mini"


@pytest.mark.asyncio
async def test_auto_title_skips_custom_title(store, fake_llm):
    await store.ensure_thread("t1", "telegram", title="Telegram")
    assert await store.auto_title("t1", "hello") is False
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_auto_title_keeps_rename_made_during_generation(database):
    store = None

    class RenamingLLM(FakeLLM):
        async def complete(self, messages, **kwargs):
            await store.update_title("t1", "Renamed By User")
            return await super().complete(messages, **kwargs)

    store = ConversationStore(database, llm=RenamingLLM("Generated"))
    await store.ensure_thread("t1", "owner")
    assert await store.auto_title("t1", "hello") is False
    assert (await store.get_thread("t1")).title == "Renamed By User"


@pytest.mark.asyncio
async def test_auto_title_failure_leaves_sentinel(database):
    store = ConversationStore(database, llm=FakeLLM(error=RuntimeError("rate limited")))
    await store.ensure_thread("t1", "owner")
    assert await store.auto_title("t1", "hello") is False
    assert (await store.get_thread("t1")).title == "New Chat"
