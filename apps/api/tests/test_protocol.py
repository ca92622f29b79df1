"""Tests for the voice socket wire format."""
from __future__ import annotations

import pytest

from relay.schemas import protocol
from relay.schemas.entitlements import EntitlementSnapshot, Plan


def test_parse_client_messages() -> None:
    ready = protocol.parse_client_message('{"t": "client_ready", "persona": "luna", "ua": "ios"}')
    assert isinstance(ready, protocol.ClientReady)
    assert ready.persona == "luna"
    assert ready.session is None

    mute = protocol.parse_client_message('{"t": "mute", "on": true}')
    assert isinstance(mute, protocol.Mute)
    assert mute.on is True

    assert isinstance(protocol.parse_client_message('{"t": "eou"}'), protocol.EndOfUtterance)
    assert isinstance(protocol.parse_client_message('{"t": "end_chat"}'), protocol.EndChat)
    assert isinstance(protocol.parse_client_message('{"t": "interrupt"}'), protocol.Interrupt)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"t": "dance"}',
        '{"persona": "luna"}',
        '{"t": "mute"}',
        '{"t": "mute", "on": "yes"}',
    ],
)
def test_parse_rejects_malformed_messages(raw: str) -> None:
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_client_message(raw)


def test_server_messages_use_camel_case_and_drop_unset_fields() -> None:
    assert protocol.dump_server_message(protocol.ChatSession(chat_session_id="c-1")) == {
        "t": "chat_session",
        "chatSessionId": "c-1",
    }
    assert protocol.dump_server_message(protocol.Transcript(text="hello")) == {
        "t": "transcript",
        "text": "hello",
    }
    assert protocol.dump_server_message(protocol.Transcript(text="hel", interim=True)) == {
        "t": "transcript",
        "text": "hel",
        "interim": True,
    }
    assert protocol.dump_server_message(protocol.AssistantTextChunk(done=True)) == {
        "t": "assistant_text_chunk",
        "done": True,
    }


def test_heartbeat_keeps_null_remaining_for_unlimited_plans() -> None:
    snapshot = EntitlementSnapshot(
        plan=Plan.PRO,
        daily_seconds_limit=0,
        daily_seconds_used=120,
        chat_seconds_elapsed=120,
        chat_seconds_cap=0,
    )
    message = protocol.Heartbeat(
        now=1_700_000_000_000,
        chat_session_id="c-1",
        entitlements=snapshot,
        remaining_today=snapshot.remaining_today,
        remaining_this_chat=snapshot.remaining_this_chat,
        paywall=False,
        hard_stop=False,
    )

    payload = protocol.dump_server_message(message)

    assert payload["remainingToday"] is None
    assert payload["remainingThisChat"] is None
    assert payload["hardStop"] is False
    assert payload["entitlements"] == {
        "plan": "pro",
        "dailySecondsLimit": 0,
        "dailySecondsUsed": 120,
        "chatSecondsElapsed": 120,
        "chatSecondsCap": 0,
    }
