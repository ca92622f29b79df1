"""Tests for the guest conversation buffer and sign-up migration."""
from __future__ import annotations

import pytest

from relay.services.guest_buffer import GuestBuffer, summarize_conversation
from relay.services.messages import InMemoryMessageSink, migrate_guest_conversation

GUEST_ID = "guest_123e4567-e89b-12d3-a456-426614174000"
MESSAGES = [
    {"role": "user", "content": "hi, I'm Sam"},
    {"role": "assistant", "content": "Hey Sam!"},
    {"role": "user", "content": "I like hiking"},
    {"role": "assistant", "content": "Love that."},
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _buffer(clock: FakeClock, ttl: int = 1800) -> GuestBuffer:
    return GuestBuffer(ttl_seconds=ttl, sweep_seconds=300, clock=clock)


def test_take_returns_entry_once() -> None:
    clock = FakeClock()
    buffer = _buffer(clock)
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "Sam likes hiking")

    entry = buffer.take(GUEST_ID)

    assert entry is not None
    assert entry.messages == MESSAGES
    assert entry.summary == "Sam likes hiking"
    assert entry.timestamp == 1_000.0
    assert buffer.take(GUEST_ID) is None


def test_buffering_again_replaces_entry() -> None:
    buffer = _buffer(FakeClock())
    buffer.buffer_conversation(GUEST_ID, MESSAGES[:2], "first")
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "second")

    entry = buffer.get(GUEST_ID)

    assert entry is not None
    assert entry.summary == "second"
    assert len(buffer) == 1


def test_expired_entries_are_invisible_and_swept() -> None:
    clock = FakeClock()
    buffer = _buffer(clock, ttl=60)
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "summary")
    buffer.buffer_conversation("guest_other", MESSAGES, "summary")

    clock.now += 30
    buffer.buffer_conversation("guest_other", MESSAGES, "fresh")
    clock.now += 31

    assert buffer.get(GUEST_ID) is None
    assert buffer.get("guest_other") is not None
    assert buffer.sweep() == 1
    assert len(buffer) == 1


def test_clear_removes_entry() -> None:
    buffer = _buffer(FakeClock())
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "summary")

    buffer.clear(GUEST_ID)
    buffer.clear(GUEST_ID)

    assert buffer.get(GUEST_ID) is None


def test_summary_uses_what_the_guest_said() -> None:
    assert summarize_conversation(MESSAGES) == "hi, I'm Sam / I like hiking"
    assert summarize_conversation([]) == ""

    long_summary = summarize_conversation([{"role": "user", "content": "x" * 500}], max_chars=50)
    assert len(long_summary) == 50
    assert long_summary.startswith("...")


@pytest.mark.asyncio
async def test_migration_appends_messages_in_order_once() -> None:
    buffer = _buffer(FakeClock())
    sink = InMemoryMessageSink()
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "Sam likes hiking")

    result = await migrate_guest_conversation(GUEST_ID, "user-1", buffer=buffer, sink=sink)

    assert result.migrated == 4
    assert result.summary == "Sam likes hiking"
    assert sink.conversations[result.conversation_id] == MESSAGES

    again = await migrate_guest_conversation(GUEST_ID, "user-1", buffer=buffer, sink=sink)
    assert again.migrated == 0
    assert again.conversation_id is None
    assert len(sink.conversations) == 1
