"""Deepgram streaming speech-to-text binding."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from .speech import (
    AudioChunk,
    FinalTranscript,
    InterimTranscript,
    SpeechError,
    SpeechToText,
    StreamClosed,
)

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


def _extract_transcript(payload: dict[str, Any]) -> str:
    channel = payload.get("channel") or {}
    alternatives = channel.get("alternatives") or payload.get("alternatives") or []
    if not alternatives:
        return ""
    return (alternatives[0].get("transcript") or "").strip()


class DeepgramSpeechToText(SpeechToText):
    """Live transcription over Deepgram's websocket API (linear16 PCM in)."""

    name = "deepgram"

    def __init__(
        self,
        *,
        model: str | None = None,
        language: str | None = None,
        sample_rate: int | None = None,
    ) -> None:
        super().__init__()
        self._model = model or settings.deepgram_model
        self._language = language or settings.deepgram_language
        self._sample_rate = sample_rate or settings.audio_sample_rate
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closing = False

    def _url(self) -> str:
        query = urlencode(
            {
                "model": self._model,
                "language": self._language,
                "encoding": "linear16",
                "sample_rate": self._sample_rate,
                "interim_results": "true",
                "punctuate": "true",
                "endpointing": settings.deepgram_endpointing_ms,
            }
        )
        return f"{DEEPGRAM_LISTEN_URL}?{query}"

    async def _open(self) -> None:
        if not settings.deepgram_api_key:
            raise RuntimeError("Deepgram API key missing")

        headers = {"Authorization": f"Token {settings.deepgram_api_key}"}
        self._ws = await websockets.connect(self._url(), additional_headers=headers)
        self._receive_task = asyncio.create_task(self._receive_loop())
        if settings.deepgram_keepalive_seconds > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def _send_audio(self, chunk: AudioChunk) -> None:
        await self._ws.send(chunk)

    async def _flush(self) -> None:
        await self._ws.send(json.dumps({"type": "Finalize"}))

    async def _close(self) -> None:
        self._closing = True
        for task in (self._keepalive_task, self._receive_task):
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if self._ws is None:
            return
        with suppress(Exception):
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        await self._ws.close()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(settings.deepgram_keepalive_seconds)
            try:
                await self._ws.send(json.dumps({"type": "KeepAlive"}))
            except ConnectionClosed:
                return

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    payload = json.loads(message)
                    self._handle_message(payload)
                except (ValueError, TypeError, AttributeError, KeyError, IndexError) as exc:
                    logger.warning("Skipping unreadable Deepgram frame: %s", exc)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            if not self._closing:
                self._emit(StreamClosed(reason=str(exc)))
            return
        except Exception as exc:  # noqa: BLE001 - surfaced as an event
            logger.warning("Deepgram receive loop failed: %s", exc)
            if not self._closing:
                self._emit(StreamClosed(reason="deepgram stream error"))
            return
        if not self._closing:
            self._emit(StreamClosed(reason="deepgram closed the stream"))

    def _handle_message(self, payload: dict[str, Any]) -> None:
        kind = payload.get("type", "Results")
        if kind == "Error":
            self._emit(SpeechError(payload.get("description") or "deepgram error"))
            return
        if kind != "Results":
            return

        transcript = _extract_transcript(payload)
        if not payload.get("is_final"):
            if transcript:
                self._emit(InterimTranscript(transcript))
            return

        flushed = bool(payload.get("from_finalize"))
        end_of_utterance = bool(payload.get("speech_final"))
        if transcript or flushed or end_of_utterance:
            self._emit(
                FinalTranscript(transcript, end_of_utterance=end_of_utterance, flushed=flushed)
            )
