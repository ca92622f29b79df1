"""Reply generation built on Gemini Flash."""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Dict, List, Optional, Protocol, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from ..core.config import settings

DEFAULT_SYSTEM_PROMPT = (
    "You are a warm, playful companion talking with someone over a voice call. Speak the "
    "way people talk out loud: short sentences, no lists, no markdown, no emoji. Keep each "
    "reply to one to three sentences unless they ask for more."
)

logger = logging.getLogger(__name__)

History = Sequence[Dict[str, str]]


class ReplyUnavailableError(RuntimeError):
    """Raised when no configured Gemini model produced a reply."""


class ReplyGenerator(Protocol):
    async def generate_reply(self, history: History, persona: Optional[str] = None) -> str: ...


def _has_api_key() -> bool:
    return bool(settings.gemini_api_key.strip())


@lru_cache
def _configured_api() -> bool:
    """Configure the Google Generative AI client once."""

    if not _has_api_key():
        raise RuntimeError("GEMINI_API_KEY is missing")

    genai.configure(api_key=settings.gemini_api_key)
    return True


def system_prompt_for(persona: Optional[str]) -> str:
    if persona and persona in settings.persona_prompts:
        return settings.persona_prompts[persona]
    return DEFAULT_SYSTEM_PROMPT


def to_gemini_contents(history: History) -> List[Dict[str, object]]:
    """Convert ``{role, content}`` history into Gemini's ``user``/``model`` turns."""

    contents: List[Dict[str, object]] = []
    for message in history:
        text = (message.get("content") or "").strip()
        if not text:
            continue
        role = "model" if message.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [text]})
    return contents


class GeminiReplyGenerator:
    """Try the primary model, then each fallback, until one answers."""

    def __init__(self) -> None:
        self._models: Dict[tuple[str, str], genai.GenerativeModel] = {}

    def _get_model(self, name: str, system_prompt: str) -> genai.GenerativeModel:
        _configured_api()
        model_name = name.strip()
        if not model_name:
            raise RuntimeError("Gemini model name was empty")

        key = (model_name, system_prompt)
        if key not in self._models:
            self._models[key] = genai.GenerativeModel(model_name, system_instruction=system_prompt)
        return self._models[key]

    def _candidates(self) -> list[str]:
        candidates: list[str] = []
        seen: set[str] = set()
        for candidate in (settings.gemini_model, *settings.gemini_model_fallbacks):
            if candidate and candidate not in seen:
                candidates.append(candidate)
                seen.add(candidate)
        return candidates

    async def generate_reply(self, history: History, persona: Optional[str] = None) -> str:
        if not _has_api_key():
            raise ReplyUnavailableError("GEMINI_API_KEY is missing")

        contents = to_gemini_contents(history)
        if not contents:
            return ""

        loop = asyncio.get_running_loop()
        system_prompt = system_prompt_for(persona)
        last_error: Exception | None = None

        for model_name in self._candidates():
            def _run_inference(current_model: str = model_name) -> str:
                response = self._get_model(current_model, system_prompt).generate_content(contents)
                text = getattr(response, "text", "") or ""
                return text.strip()

            try:
                return await loop.run_in_executor(None, _run_inference)
            except google_exceptions.NotFound as exc:
                logger.warning("Gemini model %s not available: %s", model_name, exc)
                self._models.pop((model_name, system_prompt), None)
                last_error = exc
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Gemini generate_content failed for %s", model_name)
                last_error = exc
                continue

        raise ReplyUnavailableError("No Gemini models responded") from last_error
