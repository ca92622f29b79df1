"""Text-to-speech bindings for Edge TTS and gTTS."""
from __future__ import annotations

import asyncio
import importlib
import logging
from io import BytesIO
from typing import AsyncIterator

_EDGE_TTS_MODULE = importlib.util.find_spec("edge_tts")
edge_tts = importlib.import_module("edge_tts") if _EDGE_TTS_MODULE else None  # type: ignore[assignment]

try:
    _gtts_module = importlib.import_module("gtts")
    gTTS = getattr(_gtts_module, "gTTS")
    _GTTS_IMPORT_ERROR: Exception | None = None
except ModuleNotFoundError as import_error:  # pragma: no cover - handled at runtime
    gTTS = None  # type: ignore[assignment]
    _GTTS_IMPORT_ERROR = import_error

from ..core.config import settings
from .speech import TextToSpeech

logger = logging.getLogger(__name__)

GTTS_CHUNK_BYTES = 16 * 1024


class EdgeTextToSpeech(TextToSpeech):
    """Streams MP3 audio from Microsoft Edge's online voices."""

    name = "edge"

    def __init__(self, voice: str | None = None) -> None:
        super().__init__()
        self._voice = voice or settings.tts_voice

    async def _stream(self, text: str) -> AsyncIterator[bytes]:
        if edge_tts is None:  # pragma: no cover - exercised when dependency missing
            raise RuntimeError("edge-tts is not installed.")

        communicator = edge_tts.Communicate(text, voice=self._voice)
        produced = False
        async for chunk in communicator.stream():
            if chunk["type"] == "audio" and chunk["data"]:
                produced = True
                yield chunk["data"]

        if not produced:
            raise RuntimeError("Edge TTS returned no audio")


class GoogleTextToSpeech(TextToSpeech):
    """Renders the whole reply with gTTS, then relays it in fixed-size pieces."""

    name = "gtts"

    def __init__(self, lang: str = "en") -> None:
        super().__init__()
        self._lang = lang

    async def _stream(self, text: str) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()

        def _run_gtts() -> bytes:
            if gTTS is None:  # pragma: no cover - exercised when dependency missing
                raise RuntimeError("gTTS is not installed.") from _GTTS_IMPORT_ERROR
            buffer = BytesIO()
            gTTS(text=text, lang=self._lang).write_to_fp(buffer)
            return buffer.getvalue()

        audio = await loop.run_in_executor(None, _run_gtts)
        for offset in range(0, len(audio), GTTS_CHUNK_BYTES):
            yield audio[offset : offset + GTTS_CHUNK_BYTES]
