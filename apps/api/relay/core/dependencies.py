"""Process-wide collaborators, exposed as FastAPI dependencies."""
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from ..db.session import SessionLocal
from ..services.guest_buffer import GuestBuffer, guest_buffer
from ..services.identity import IdentityDirectory
from ..services.ledger import DatabaseLedger, EntitlementLedger, InMemoryLedger
from ..services.llm import GeminiReplyGenerator, ReplyGenerator
from ..services.messages import DatabaseMessageSink, InMemoryMessageSink, MessageSink
from ..services.providers import SttFactory, TtsFactory, create_stt, create_tts
from ..services.voice_session import SessionServices
from .config import settings


def _use_database() -> bool:
    return settings.usage_backend.strip().lower() == "database"


@lru_cache
def get_identity_directory() -> IdentityDirectory:
    return IdentityDirectory()


@lru_cache
def get_ledger() -> EntitlementLedger:
    if _use_database():
        return DatabaseLedger(SessionLocal)
    return InMemoryLedger()


@lru_cache
def get_message_sink() -> MessageSink:
    if _use_database():
        return DatabaseMessageSink(SessionLocal)
    return InMemoryMessageSink()


@lru_cache
def get_reply_generator() -> ReplyGenerator:
    return GeminiReplyGenerator()


def get_guest_buffer() -> GuestBuffer:
    return guest_buffer


def get_stt_factory() -> SttFactory:
    return create_stt


def get_tts_factory() -> TtsFactory:
    return create_tts


def get_session_services(
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> SessionServices:
    """Bundle the collaborators every voice session shares."""

    return SessionServices(
        stt_factory=get_stt_factory(),
        tts_factory=get_tts_factory(),
        ledger=get_ledger(),
        load_entitlements=directory.load_entitlements,
        reply_generator=get_reply_generator(),
        message_sink=get_message_sink(),
        guest_buffer=get_guest_buffer(),
    )
