"""Tests for the aiosqlite-backed chat state store."""

from __future__ import annotations

import pytest

from panelsync.config import PanelConfig
from panelsync.state import EnabledFieldFilter, SqliteChatStateStore
from panelsync.types import ChatState, HistoryEntry


@pytest.fixture
async def sqlite_store():
    async with SqliteChatStateStore(":memory:") as store:
        yield store


class TestSqliteChatStateStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, sqlite_store):
        state = ChatState(
            panels={"status": {"hp": "10"}},
            field_rules={"status": {"hp": "0-10"}},
            history=[HistoryEntry(timestamp=1, source="received", panels=["status"])],
            last_updated=1,
        )
        await sqlite_store.set_state("c1", state)
        assert await sqlite_store.get_state("c1") == state

    @pytest.mark.asyncio
    async def test_missing_conversation(self, sqlite_store):
        assert await sqlite_store.get_state("nope") == ChatState()

    @pytest.mark.asyncio
    async def test_upsert_and_list(self, sqlite_store):
        await sqlite_store.set_state("b", ChatState(panels={"p": {"x": "1"}}))
        await sqlite_store.set_state("a", ChatState())
        await sqlite_store.set_state("b", ChatState(panels={"p": {"x": "2"}}))
        assert await sqlite_store.conversations() == ["a", "b"]
        assert (await sqlite_store.get_state("b")).panels == {"p": {"x": "2"}}

    @pytest.mark.asyncio
    async def test_delete(self, sqlite_store):
        await sqlite_store.set_state("a", ChatState())
        assert await sqlite_store.delete_state("a") is True
        assert await sqlite_store.delete_state("a") is False

    @pytest.mark.asyncio
    async def test_change_notification(self):
        seen: list[str] = []
        async with SqliteChatStateStore(on_change=lambda cid, s: seen.append(cid)) as store:
            await store.set_state("a", ChatState())
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_field_filter_shared_with_memory_store(self):
        store = SqliteChatStateStore(
            field_filter=EnabledFieldFilter({"status": PanelConfig(fields=["hp"])})
        )
        assert store.merge_enabled_fields("status", {}, {"hp": "1", "mp": "2"}) == {"hp": "1"}

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path):
        path = tmp_path / "nested" / "state.db"
        async with SqliteChatStateStore(path) as store:
            await store.set_state("c1", ChatState(panels={"p": {"x": "1"}}))
        async with SqliteChatStateStore(path) as store:
            assert (await store.get_state("c1")).panels == {"p": {"x": "1"}}

    @pytest.mark.asyncio
    async def test_requires_open(self):
        with pytest.raises(RuntimeError, match="not opened"):
            await SqliteChatStateStore().get_state("c1")
