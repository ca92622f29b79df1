"""Speech-to-text binding built on a local faster-whisper model."""
from __future__ import annotations

import asyncio
import os
import tempfile
import wave
from functools import lru_cache
from typing import Any

try:  # pragma: no cover - import guard for optional dependency
    from faster_whisper import WhisperModel as _WhisperModel
except ImportError as import_error:  # pragma: no cover - handled at runtime
    _WhisperModel = None
    _IMPORT_ERROR = import_error
else:
    _IMPORT_ERROR = None

WhisperModelType = Any

from ..core.config import settings
from .speech import AudioChunk, FinalTranscript, SpeechToText


@lru_cache
def _load_model() -> WhisperModelType:
    """Load the Whisper model once per process."""

    if _WhisperModel is None:  # pragma: no cover - exercised when dependency missing
        raise RuntimeError(
            "faster-whisper is not installed. Install it or set up a different ASR backend."
        ) from _IMPORT_ERROR

    return _WhisperModel(
        settings.whisper_model,
        device=settings.whisper_device,
        compute_type=settings.whisper_compute_type,
    )


def transcribe_pcm(pcm: bytes, sample_rate: int) -> str:
    """Return the best-effort transcript for mono 16-bit PCM."""

    with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp_file:
        tmp_path = tmp_file.name
    try:
        with wave.open(tmp_path, "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(sample_rate)
            wav_file.writeframes(pcm)
        segments, _ = _load_model().transcribe(tmp_path, beam_size=1)
        pieces = [segment.text.strip() for segment in segments if segment.text]
        return " ".join(pieces).strip()
    finally:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass


class WhisperSpeechToText(SpeechToText):
    """Buffers audio locally and transcribes it on ``finalize``.

    There is no voice-activity detection here, so end of utterance always comes from the
    client.
    """

    name = "whisper"

    def __init__(self, *, sample_rate: int | None = None) -> None:
        super().__init__()
        self._sample_rate = sample_rate or settings.audio_sample_rate
        self._buffer = bytearray()

    async def _open(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _load_model)

    async def _send_audio(self, chunk: AudioChunk) -> None:
        self._buffer.extend(chunk)

    async def _flush(self) -> None:
        pcm = bytes(self._buffer)
        self._buffer.clear()
        text = ""
        if pcm:
            loop = asyncio.get_running_loop()
            text = await loop.run_in_executor(None, transcribe_pcm, pcm, self._sample_rate)
        self._emit(FinalTranscript(text, flushed=True))

    async def _close(self) -> None:
        self._buffer.clear()
