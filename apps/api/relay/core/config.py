"""Application configuration for the voice relay."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    internal_api_secret: str = Field(default="")

    stt_provider: str = Field(default="deepgram")
    tts_provider: str = Field(default="edge")
    audio_sample_rate: int = Field(default=16000)

    deepgram_api_key: str = Field(default="")
    deepgram_model: str = Field(default="nova-2")
    deepgram_language: str = Field(default="en")
    deepgram_endpointing_ms: int = Field(default=300)
    deepgram_keepalive_seconds: float = Field(default=5.0)

    whisper_model: str = Field(default="small")
    whisper_device: str = Field(default="cpu")
    whisper_compute_type: str = Field(default="int8")

    tts_voice: str = Field(default="en-US-AriaNeural")
    elevenlabs_api_key: str = Field(default="")
    elevenlabs_voice_id: str = Field(default="BZgkqPqms7Kj9ulSkVzn")
    elevenlabs_model: str = Field(default="eleven_turbo_v2_5")
    elevenlabs_stability: float = Field(default=0.5)
    elevenlabs_similarity_boost: float = Field(default=0.75)

    gemini_api_key: str = Field(default="")
    gemini_model: str = Field(default="gemini-2.0-flash")
    gemini_model_fallbacks: list[str] = Field(default_factory=lambda: [
        "gemini-2.0-flash-lite",
        "gemini-1.5-flash-latest",
    ])
    persona_prompts: dict[str, str] = Field(default_factory=dict)

    heartbeat_interval_seconds: int = Field(default=5, ge=1)
    free_daily_seconds: int = Field(default=900, ge=0)
    free_chat_seconds_cap: int = Field(default=900, ge=0)
    pro_chat_seconds_cap: int = Field(default=0, ge=0)
    usage_backend: str = Field(default="memory")
    database_url: str = Field(default="sqlite+aiosqlite:///./relay.db")

    stt_open_timeout_seconds: float = Field(default=5.0)
    reply_timeout_seconds: float = Field(default=20.0)
    tts_timeout_seconds: float = Field(default=10.0)
    finalize_timeout_seconds: float = Field(default=1.5)
    stt_reconnect_attempts: int = Field(default=1, ge=0)
    max_turn_transcript_chars: int = Field(default=5000)
    control_messages_per_second: int = Field(default=20)

    guest_buffer_ttl_seconds: int = Field(default=30 * 60)
    guest_buffer_sweep_seconds: int = Field(default=5 * 60)
    guest_buffer_min_messages: int = Field(default=2)

    @field_validator("gemini_model_fallbacks", mode="before")
    @classmethod
    def _split_fallbacks(cls, value: object) -> object:
        """Allow comma-separated env values for Gemini fallback models."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
