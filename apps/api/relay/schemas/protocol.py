"""Tagged JSON messages exchanged over the voice socket.

Every text frame carries a ``t`` discriminator. Binary frames are raw PCM audio and never
pass through this module.
"""
from __future__ import annotations

import json
import time
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .entitlements import EntitlementSnapshot


class ProtocolError(ValueError):
    """Raised when a client frame cannot be decoded into a known message."""


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Fields that are serialized even when ``None``.
    nullable_fields: ClassVar[frozenset[str]] = frozenset()


# Client -> server


class ClientReady(_WireModel):
    t: Literal["client_ready"]
    persona: str | None = None
    session: str | None = None
    ua: str | None = None


class EndOfUtterance(_WireModel):
    t: Literal["eou"]


class Mute(_WireModel):
    t: Literal["mute"]
    on: StrictBool


class EndChat(_WireModel):
    t: Literal["end_chat"]


class Interrupt(_WireModel):
    t: Literal["interrupt"]


ClientMessage = Annotated[
    Union[ClientReady, EndOfUtterance, Mute, EndChat, Interrupt],
    Field(discriminator="t"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode one text frame; raise :class:`ProtocolError` if it is not a client message."""

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("Message is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")
    try:
        return _client_adapter.validate_python(payload)
    except ValidationError as exc:
        kind = payload.get("t")
        raise ProtocolError(f"Invalid or unknown message {kind!r}") from exc


# Server -> client


class ChatSession(_WireModel):
    t: Literal["chat_session"] = "chat_session"
    chat_session_id: str


class Heartbeat(_WireModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"remainingToday", "remainingThisChat"})

    t: Literal["heartbeat"] = "heartbeat"
    now: int = Field(default_factory=lambda: int(time.time() * 1000))
    chat_session_id: str
    entitlements: EntitlementSnapshot
    remaining_today: int | None
    remaining_this_chat: int | None
    paywall: bool
    hard_stop: bool


class Transcript(_WireModel):
    t: Literal["transcript"] = "transcript"
    text: str
    interim: bool | None = None


class AssistantTextChunk(_WireModel):
    t: Literal["assistant_text_chunk"] = "assistant_text_chunk"
    text: str | None = None
    done: bool | None = None


class TtsStart(_WireModel):
    t: Literal["tts_start"] = "tts_start"


class TtsChunk(_WireModel):
    t: Literal["tts_chunk"] = "tts_chunk"
    b64: str


class TtsEnd(_WireModel):
    t: Literal["tts_end"] = "tts_end"


class Speak(_WireModel):
    t: Literal["speak"] = "speak"
    on: bool


class Error(_WireModel):
    t: Literal["error"] = "error"
    message: str


ServerMessage = Union[
    ChatSession,
    Heartbeat,
    Transcript,
    AssistantTextChunk,
    TtsStart,
    TtsChunk,
    TtsEnd,
    Speak,
    Error,
]


def dump_server_message(message: ServerMessage) -> dict[str, Any]:
    """Serialize a server message to its camelCase wire dict."""

    data = message.model_dump(mode="json", by_alias=True)
    return {
        key: value
        for key, value in data.items()
        if value is not None or key in message.nullable_fields
    }
