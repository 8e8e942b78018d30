"""Tests for the polling fallback."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeClock, block

from panelsync.errors import ErrorTracker
from panelsync.host.polling import MessagePoller
from panelsync.host.scripted import ScriptedHost
from panelsync.pipeline.content import extract_content, has_complete_block


def _has_block(message) -> bool:
    return has_complete_block(extract_content(message), "infobar_data")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def routed() -> list[tuple[dict, int]]:
    return []


@pytest.fixture
def poller(host: ScriptedHost, clock, routed) -> MessagePoller:
    async def on_message(message, index):
        routed.append((message, index))

    return MessagePoller(host, on_message, _has_block, interval=0.01, grace=3.0, clock=clock)


class TestPolling:
    @pytest.mark.asyncio
    async def test_prime_skips_existing_history(self, host, poller, routed):
        host.add_message(block('{"a": {"x": "1"}}'))
        poller.prime()
        assert poller.baseline == 1
        assert await poller.poll_once() == 0
        assert routed == []

    @pytest.mark.asyncio
    async def test_routes_only_new_messages_with_block(self, host, poller, routed):
        poller.prime()
        host.add_message("plain reply")
        host.add_message(block('{"a": {"x": "1"}}'))

        assert await poller.poll_once() == 1
        assert routed == [(host.messages[1], 1)]
        assert poller.baseline == 2
        assert await poller.poll_once() == 0

    @pytest.mark.asyncio
    async def test_shrink_moves_baseline_down(self, host, poller):
        host.add_message("a")
        host.add_message("b")
        poller.prime()
        del host.messages[1]
        await poller.poll_once()
        assert poller.baseline == 1

    @pytest.mark.asyncio
    async def test_unavailable_host(self, host, poller):
        host.ready = False
        assert await poller.poll_once() == 0


class TestConversationSwitch:
    @pytest.mark.asyncio
    async def test_switch_rebases_to_new_length_and_suspends(self, host, poller, clock, routed):
        poller.prime()
        host.conversation_id = "chat-2"
        host.add_message(block('{"old": {"x": "1"}}'))
        host.add_message(block('{"old": {"x": "2"}}'))

        assert await poller.poll_once() == 0
        assert poller.conversation_id == "chat-2"
        assert poller.baseline == 2
        assert poller.suspended

        # New message during the grace window is not routed yet
        host.add_message(block('{"new": {"x": "3"}}'))
        assert await poller.poll_once() == 0

        clock.now += 3.5
        assert not poller.suspended
        assert await poller.poll_once() == 1
        assert routed[0][1] == 2

    @pytest.mark.asyncio
    async def test_switch_handler_replaces_plain_reset(self, host, clock, routed):
        switched: list[str | None] = []

        async def on_message(message, index):
            routed.append((message, index))

        async def on_switch(conversation_id):
            switched.append(conversation_id)
            poller.reset(conversation_id)

        poller = MessagePoller(
            host, on_message, _has_block, grace=3.0, clock=clock, on_switch=on_switch
        )
        poller.prime()
        host.conversation_id = "chat-2"

        assert await poller.poll_once() == 0
        assert switched == ["chat-2"]
        assert poller.conversation_id == "chat-2"

    def test_reset_never_goes_to_zero(self, host, poller):
        for i in range(3):
            host.add_message(f"m{i}")
        poller.reset("chat-1")
        assert poller.baseline == 3
        assert poller.suspended

    def test_remember_refreshes_snapshot_only(self, host, poller):
        poller.prime()
        host.add_message("m0")
        poller.remember()
        assert poller.snapshot == host.messages
        assert poller.baseline == 0


class TestLoop:
    @pytest.mark.asyncio
    async def test_loop_records_errors(self, host):
        errors = ErrorTracker()

        def broken_check(message) -> bool:
            raise RuntimeError("bad message")

        async def on_message(message, index):
            pass

        poller = MessagePoller(
            host, on_message, broken_check, interval=0.001, grace=0.0, errors=errors
        )
        poller.prime()
        host.add_message("m0")
        poller.start()
        assert poller.running
        for _ in range(100):
            if errors.total:
                break
            await asyncio.sleep(0.005)
        await poller.stop()
        assert errors.total >= 1
        assert not poller.running
