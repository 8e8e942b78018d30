"""Tests for HostEventBridge: binding, proxying and message lifecycle intercepts."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock, block

from panelsync.event_bus import EventType
from panelsync.host.bridge import BridgeState, HostEventBridge
from panelsync.host.context import HostContext
from panelsync.host.scripted import ScriptedHost

PANEL_A = '{"panelA": {"field1": "value1"}}'


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def bridge(bus, host, pipeline, clock, recorder) -> HostEventBridge:
    b = HostEventBridge(
        bus,
        host,
        pipeline,
        proxies={"SETTINGS_UPDATED": "config:changed"},
        chat_switch_grace=3.0,
        clock=clock,
    )
    assert b.try_bind()
    b.poller.prime()
    await bus.drain()
    recorder.events.clear()  # system:ready
    return b


class TestBinding:
    @pytest.mark.asyncio
    async def test_retries_until_host_ready(self, bus, pipeline, recorder):
        host = ScriptedHost("chat-1", ready=False)
        b = HostEventBridge(bus, host, pipeline)

        assert b.try_bind() is False
        assert b.state is BridgeState.UNBOUND

        host.ready = True
        assert b.try_bind() is True
        assert b.state is BridgeState.ACTIVE
        assert b.bind_attempts == 2
        assert b.conversation_id == "chat-1"

        await bus.drain()
        assert recorder.types == [EventType.SYSTEM_READY]

    def test_missing_event_source_is_unavailable(self, bus, pipeline):
        class NoSource:
            def get_context(self):
                return HostContext(event_source=None)

        b = HostEventBridge(bus, NoSource(), pipeline)
        assert b.try_bind() is False
        assert b.state is BridgeState.UNBOUND

    @pytest.mark.asyncio
    async def test_binding_is_idempotent(self, bridge, host):
        handlers = sum(len(v) for v in host.events.handlers.values())
        assert bridge.try_bind() is True
        assert sum(len(v) for v in host.events.handlers.values()) == handlers

    @pytest.mark.asyncio
    async def test_attaches_proxies_and_intercepts(self, bridge):
        assert bridge.attached["SETTINGS_UPDATED"] == "SETTINGS_UPDATED"
        for name in ("MESSAGE_RECEIVED", "MESSAGE_SENT", "MESSAGE_DELETED", "CHAT_CHANGED"):
            assert name in bridge.attached

    def test_host_native_names_and_regenerate_fallback(self, bus, pipeline):
        host = ScriptedHost(
            "chat-1",
            event_names={"MESSAGE_RECEIVED": "message_received", "MESSAGE_REGENERATE": "regen"},
        )
        b = HostEventBridge(bus, host, pipeline)
        b.try_bind()
        assert b.attached == {"message_received": "MESSAGE_RECEIVED", "regen": "MESSAGE_REGENERATE"}

    @pytest.mark.asyncio
    async def test_start_keeps_retrying(self, bus, pipeline):
        host = ScriptedHost("chat-1", ready=False)
        b = HostEventBridge(bus, host, pipeline, retry_delay=0.005, poll_interval=10)
        b.start()
        try:
            await asyncio.sleep(0.02)
            assert b.state is BridgeState.UNBOUND
            host.ready = True
            for _ in range(100):
                if b.state is BridgeState.ACTIVE:
                    break
                await asyncio.sleep(0.005)
            assert b.state is BridgeState.ACTIVE
            assert b.bind_attempts >= 2
        finally:
            await b.stop()
        assert not b.poller.running

    def test_from_settings(self, bus, host, pipeline):
        b = HostEventBridge.from_settings(bus, host, pipeline)
        assert b.poller.interval == 2.0
        assert b.poller.grace == 3.0


class TestProxy:
    @pytest.mark.asyncio
    async def test_forwards_payload_verbatim(self, bridge, host, bus, recorder):
        payload = {"theme": "dark"}
        await host.events.fire("SETTINGS_UPDATED", payload)
        await bus.drain()
        changed = recorder.of(EventType.CONFIG_CHANGED)
        assert len(changed) == 1
        assert changed[0].payload is payload


class TestReceived:
    @pytest.mark.asyncio
    async def test_plain_turn_is_not_forwarded(self, bridge, host, bus, recorder):
        await host.receive("Just a normal reply.")
        await bus.drain()
        assert EventType.MESSAGE_RECEIVED not in recorder.types

    @pytest.mark.asyncio
    async def test_incomplete_block_is_not_forwarded(self, bridge, host, bus, recorder, store):
        await host.receive("hello <infobar_data>X world")
        await bus.drain()
        assert recorder.events == []
        assert store.conversations() == []

    @pytest.mark.asyncio
    async def test_block_stored_then_forwarded(self, bridge, host, bus, recorder, store):
        await host.receive(block(PANEL_A))
        await bus.drain()

        assert (await store.get_state("chat-1")).panels == {"panelA": {"field1": "value1"}}
        assert recorder.types == [EventType.DATA_STORED, EventType.MESSAGE_RECEIVED]
        assert recorder.of(EventType.MESSAGE_RECEIVED)[0].payload is host.messages[0]

    @pytest.mark.asyncio
    async def test_sent_block(self, bridge, host, bus, recorder):
        await host.send(block(PANEL_A))
        await bus.drain()
        assert EventType.MESSAGE_SENT in recorder.types

    @pytest.mark.asyncio
    async def test_live_and_polled_delivery_converge(self, bridge, host, bus, recorder):
        await host.receive(block(PANEL_A))
        assert await bridge.poller.poll_once() == 1  # polling sees it too
        await bus.drain()
        assert len(recorder.of(EventType.MESSAGE_RECEIVED)) == 1
        assert len(recorder.of(EventType.DATA_STORED)) == 1

    @pytest.mark.asyncio
    async def test_polled_only_message(self, bridge, host, bus, recorder, store):
        host.add_message(block(PANEL_A))
        await bridge.poller.poll_once()
        await bus.drain()
        stored = recorder.of(EventType.DATA_STORED)
        assert stored[0].payload["source"] == "poll"
        assert EventType.MESSAGE_RECEIVED in recorder.types

    @pytest.mark.asyncio
    async def test_identityless_payload_converges_with_polling(self, bridge, host, bus, recorder):
        index = host.add_message(block(PANEL_A))
        await host.events.fire("MESSAGE_RECEIVED", dict(host.messages[index]))
        assert await bridge.poller.poll_once() == 1
        await bus.drain()
        assert len(recorder.of(EventType.MESSAGE_RECEIVED)) == 1
        (stored,) = recorder.of(EventType.DATA_STORED)
        assert stored.payload["source"] == "received"

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self, bridge, host, pipeline, errors):
        pipeline.process = AsyncMock(side_effect=RuntimeError("pipeline down"))
        await host.receive(block(PANEL_A))
        assert errors.total == 1


class TestEdited:
    @pytest.mark.asyncio
    async def test_edit_reprocesses(self, bridge, host, bus, recorder, store):
        index = await host.receive(block(PANEL_A))
        await host.edit(index, block('{"panelA": {"field1": "edited"}}'))
        await bus.drain()
        assert (await store.get_state("chat-1")).panels["panelA"]["field1"] == "edited"
        assert len(recorder.of(EventType.MESSAGE_EDITED)) == 1

    @pytest.mark.asyncio
    async def test_edit_with_same_block_is_forced(self, bridge, host, bus, recorder):
        index = await host.receive(block(PANEL_A))
        await host.edit(index, block(PANEL_A))
        await bus.drain()
        assert len(recorder.of(EventType.DATA_STORED)) == 2


class TestDeleted:
    @pytest.mark.asyncio
    async def test_user_message_deleted_skips_rollback(self, bridge, host, bus, recorder):
        host.add_message("hello", is_user=False)
        await host.send("hi")
        await host.delete(1)
        await bus.drain()

        (event,) = recorder.of(EventType.MESSAGE_DELETED)
        assert event.payload["skip_rollback"] is True
        assert event.payload["message_info"]["is_user"] is True
        assert event.payload["message_info"]["strategy"] == "direct-index"
        assert event.payload["raw"] == 1
        assert event.payload["conversation_id"] == "chat-1"

    @pytest.mark.asyncio
    async def test_unidentified_deletion_after_user_is_rollback_eligible(
        self, bridge, host, bus, recorder
    ):
        host.add_message("hi", is_user=True)
        await host.receive("reply")
        await host.delete(1, notification=None)
        await bus.drain()

        (event,) = recorder.of(EventType.MESSAGE_DELETED)
        assert event.payload["skip_rollback"] is False
        assert event.payload["message_info"]["is_user"] is False

    @pytest.mark.asyncio
    async def test_deleted_message_leaves_cache(self, bridge, host, pipeline):
        await host.receive(block(PANEL_A))
        assert "0" in pipeline.cache
        await host.delete(0)
        assert "0" not in pipeline.cache


class TestRegenerated:
    @pytest.mark.asyncio
    async def test_invalidates_last_host_message(self, bridge, host, bus, recorder, pipeline):
        await host.receive(block(PANEL_A))
        await host.regenerate()
        await bus.drain()
        assert "0" not in pipeline.cache
        (event,) = recorder.of(EventType.MESSAGE_REGENERATED)
        assert event.payload["conversation_id"] == "chat-1"


class TestChatChanged:
    @pytest.mark.asyncio
    async def test_switch_resets_cache_and_baseline(self, bridge, host, bus, recorder, pipeline):
        await host.receive(block(PANEL_A))
        host.chats["chat-2"] = [{"mes": "old", "is_user": False}, {"mes": "older", "is_user": True}]

        await host.switch_chat("chat-2")
        await bus.drain()

        assert len(pipeline.cache) == 0
        assert bridge.poller.baseline == 2
        assert bridge.poller.suspended
        assert bridge.conversation_id == "chat-2"
        (event,) = recorder.of(EventType.CHAT_CHANGED)
        assert event.payload["previous"] == "chat-1"
        assert event.payload["conversation_id"] == "chat-2"

    @pytest.mark.asyncio
    async def test_grace_window_then_polling_resumes(self, bridge, host, clock, store):
        await host.switch_chat("chat-2")
        host.add_message(block(PANEL_A))
        assert await bridge.poller.poll_once() == 0
        clock.now += 3.1
        assert await bridge.poller.poll_once() == 1
        assert "panelA" in (await store.get_state("chat-2")).panels

    @pytest.mark.asyncio
    async def test_switch_seen_only_by_polling(
        self, bridge, host, bus, recorder, clock, store, pipeline
    ):
        await host.receive(block(PANEL_A))
        host.conversation_id = "chat-2"

        assert await bridge.poller.poll_once() == 0
        await bus.drain()

        assert len(pipeline.cache) == 0
        assert bridge.conversation_id == "chat-2"
        assert bridge.poller.suspended
        (event,) = recorder.of(EventType.CHAT_CHANGED)
        assert event.payload["previous"] == "chat-1"
        assert event.payload["conversation_id"] == "chat-2"

        clock.now += 3.1
        host.add_message(block(PANEL_A))
        assert await bridge.poller.poll_once() == 1
        assert (await store.get_state("chat-2")).panels == {"panelA": {"field1": "value1"}}
