"""Data contracts for the internal identity and guest-buffer endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .entitlements import Plan


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IdentityRegistration(_CamelModel):
    token: str = Field(..., min_length=1, description="Opaque session token the client will present")
    user_id: str = Field(..., min_length=1)
    plan: Plan = Plan.FREE


class IdentityRegistered(_CamelModel):
    user_id: str
    plan: Plan


class BufferedMessage(BaseModel):
    role: str
    content: str


class GuestBufferResponse(_CamelModel):
    guest_id: str
    messages: list[BufferedMessage]
    summary: str
    timestamp: float = Field(..., description="Unix time the conversation was buffered")


class ClaimRequest(_CamelModel):
    user_id: str = Field(..., min_length=1)


class ClaimResponse(_CamelModel):
    conversation_id: str | None = None
    migrated: int = 0
    summary: str | None = None
