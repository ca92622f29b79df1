"""Select speech bindings by configured name."""
from __future__ import annotations

from typing import Callable

from ..core.config import settings
from .asr import WhisperSpeechToText
from .deepgram import DeepgramSpeechToText
from .elevenlabs import ElevenLabsTextToSpeech
from .speech import SpeechToText, TextToSpeech
from .tts import EdgeTextToSpeech, GoogleTextToSpeech

SttFactory = Callable[[], SpeechToText]
TtsFactory = Callable[[], TextToSpeech]

STT_PROVIDERS: dict[str, SttFactory] = {
    "deepgram": DeepgramSpeechToText,
    "whisper": WhisperSpeechToText,
}

TTS_PROVIDERS: dict[str, TtsFactory] = {
    "edge": EdgeTextToSpeech,
    "gtts": GoogleTextToSpeech,
    "elevenlabs": ElevenLabsTextToSpeech,
}


def create_stt(provider: str | None = None) -> SpeechToText:
    name = (provider or settings.stt_provider).strip().lower()
    try:
        factory = STT_PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown STT provider {name!r}") from None
    return factory()


def create_tts(provider: str | None = None) -> TextToSpeech:
    name = (provider or settings.tts_provider).strip().lower()
    try:
        factory = TTS_PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown TTS provider {name!r}") from None
    return factory()
