"""ElevenLabs streaming text-to-speech binding (16 kHz PCM out)."""
from __future__ import annotations

import base64
import json
import logging
from typing import AsyncIterator

import websockets

from ..core.config import settings
from .speech import TextToSpeech

logger = logging.getLogger(__name__)

ELEVENLABS_STREAM_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input"


class ElevenLabsTextToSpeech(TextToSpeech):
    name = "elevenlabs"

    def __init__(self, voice_id: str | None = None, model_id: str | None = None) -> None:
        super().__init__()
        self._voice_id = voice_id or settings.elevenlabs_voice_id
        self._model_id = model_id or settings.elevenlabs_model

    def _url(self) -> str:
        base = ELEVENLABS_STREAM_URL.format(voice_id=self._voice_id)
        return f"{base}?model_id={self._model_id}&output_format=pcm_16000"

    async def _stream(self, text: str) -> AsyncIterator[bytes]:
        if not settings.elevenlabs_api_key:
            raise RuntimeError("ElevenLabs API key missing")

        headers = {"xi-api-key": settings.elevenlabs_api_key}
        ws = await websockets.connect(self._url(), additional_headers=headers)
        try:
            await ws.send(
                json.dumps(
                    {
                        "text": " ",
                        "voice_settings": {
                            "stability": settings.elevenlabs_stability,
                            "similarity_boost": settings.elevenlabs_similarity_boost,
                            "use_speaker_boost": True,
                        },
                    }
                )
            )
            await ws.send(json.dumps({"text": text, "flush": True}))
            await ws.send(json.dumps({"text": ""}))

            async for message in ws:
                if isinstance(message, bytes):
                    yield message
                    continue
                payload = json.loads(message)
                if payload.get("error"):
                    raise RuntimeError(f"ElevenLabs error: {payload['error']}")
                if payload.get("audio"):
                    yield base64.b64decode(payload["audio"])
                if payload.get("isFinal"):
                    break
        finally:
            await ws.close()
