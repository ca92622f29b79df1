"""Tests for the Deepgram streaming binding."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from relay.services import deepgram
from relay.services.speech import FinalTranscript, InterimTranscript, SpeechError, StreamClosed

_CLOSE = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[bytes | str] = []
        self.closed = False
        self._messages: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, data: bytes | str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str | bytes:
        message = await self._messages.get()
        if message is _CLOSE:
            raise StopAsyncIteration
        if isinstance(message, Exception):
            raise message
        return message  # type: ignore[return-value]

    async def queue_message(self, payload: dict) -> None:
        await self._messages.put(json.dumps(payload))

    async def queue_raw(self, data: str) -> None:
        await self._messages.put(data)

    async def hang_up(self) -> None:
        await self._messages.put(_CLOSE)

    async def break_transport(self, exc: Exception) -> None:
        await self._messages.put(exc)

    def control_messages(self) -> list[str]:
        return [json.loads(item)["type"] for item in self.sent if isinstance(item, str)]


def _results(text: str, *, is_final: bool, **extra) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text}]},
        **extra,
    }


@pytest.fixture
def dummy_ws(monkeypatch) -> DummyWebSocket:
    ws = DummyWebSocket()
    calls: list[dict] = []

    async def fake_connect(url, **kwargs):
        calls.append({"url": url, **kwargs})
        return ws

    monkeypatch.setattr(deepgram, "websockets", SimpleNamespace(connect=fake_connect))
    monkeypatch.setattr(deepgram.settings, "deepgram_api_key", "test-key")
    monkeypatch.setattr(deepgram.settings, "deepgram_keepalive_seconds", 0)
    ws.connect_calls = calls  # type: ignore[attr-defined]
    return ws


async def _next_event(stt):
    return await asyncio.wait_for(stt.events().__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_start_requires_api_key(monkeypatch):
    monkeypatch.setattr(deepgram.settings, "deepgram_api_key", "")

    stt = deepgram.DeepgramSpeechToText()
    with pytest.raises(RuntimeError):
        await stt.start()
    assert stt.active is False


@pytest.mark.asyncio
async def test_stream_opens_with_token_and_relays_audio(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()
    await stt.write(b"frame")

    call = dummy_ws.connect_calls[0]
    assert call["url"].startswith(deepgram.DEEPGRAM_LISTEN_URL)
    assert "interim_results=true" in call["url"]
    assert "encoding=linear16" in call["url"]
    assert call["additional_headers"] == {"Authorization": "Token test-key"}
    assert b"frame" in dummy_ws.sent

    await stt.destroy()


@pytest.mark.asyncio
async def test_interim_and_final_results_become_typed_events(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await dummy_ws.queue_message(_results("hel", is_final=False))
    await dummy_ws.queue_message(_results("hello there", is_final=True, speech_final=True))

    assert await _next_event(stt) == InterimTranscript("hel")
    assert await _next_event(stt) == FinalTranscript("hello there", end_of_utterance=True)

    await stt.destroy()


@pytest.mark.asyncio
async def test_finalize_sends_control_and_marks_flushed_result(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await stt.finalize()
    assert "Finalize" in dummy_ws.control_messages()

    await dummy_ws.queue_message(_results("", is_final=True, from_finalize=True))
    assert await _next_event(stt) == FinalTranscript("", flushed=True)

    await stt.destroy()


@pytest.mark.asyncio
async def test_error_message_is_reported(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await dummy_ws.queue_message({"type": "Error", "description": "bad audio"})
    assert await _next_event(stt) == SpeechError("bad audio")

    await stt.destroy()


@pytest.mark.asyncio
async def test_vendor_hangup_emits_stream_closed(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await dummy_ws.hang_up()
    event = await _next_event(stt)

    assert isinstance(event, StreamClosed)
    await stt.destroy()


@pytest.mark.asyncio
async def test_unreadable_frame_is_skipped_and_stream_keeps_listening(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await dummy_ws.queue_raw("{not json")
    await dummy_ws.queue_raw(json.dumps(["not", "an", "object"]))
    await dummy_ws.queue_message(_results("still here", is_final=True))

    assert await _next_event(stt) == FinalTranscript("still here")
    assert stt.active is True

    await stt.destroy()


@pytest.mark.asyncio
async def test_transport_failure_emits_stream_closed(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await dummy_ws.break_transport(OSError("connection reset"))
    event = await _next_event(stt)

    assert isinstance(event, StreamClosed)
    await stt.destroy()


@pytest.mark.asyncio
async def test_destroy_is_idempotent_and_silences_late_results(dummy_ws):
    stt = deepgram.DeepgramSpeechToText()
    await stt.start()

    await stt.destroy()
    await stt.destroy()
    await stt.write(b"late")

    assert dummy_ws.closed is True
    assert dummy_ws.control_messages().count("CloseStream") == 1
    assert b"late" not in dummy_ws.sent

    events = [event async for event in stt.events()]
    assert events == []
