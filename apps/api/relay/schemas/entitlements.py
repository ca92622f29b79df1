"""Identity and entitlement contracts shared by the ledger and the heartbeat."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Plan(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


@dataclass(frozen=True, slots=True)
class Identity:
    """Who is on the other end of a connection."""

    kind: Literal["guest", "user"]
    id: str

    @classmethod
    def guest(cls, guest_id: str) -> "Identity":
        return cls(kind="guest", id=guest_id)

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(kind="user", id=user_id)

    @property
    def is_guest(self) -> bool:
        return self.kind == "guest"

    @property
    def ledger_key(self) -> str:
        """Key used by the usage counters; guests and users never collide."""

        return f"{self.kind}:{self.id}"


@dataclass(frozen=True, slots=True)
class Entitlements:
    """Plan limits as published by billing. Zero means unlimited/uncapped."""

    plan: Plan
    daily_seconds_limit: int
    per_chat_seconds_cap: int


class EntitlementSnapshot(BaseModel):
    """Limits plus counters for one identity and conversation at one instant."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    plan: Plan
    daily_seconds_limit: int = Field(ge=0)
    daily_seconds_used: int = Field(default=0, ge=0)
    chat_seconds_elapsed: int = Field(default=0, ge=0)
    chat_seconds_cap: int = Field(ge=0)

    @property
    def unlimited_today(self) -> bool:
        return self.daily_seconds_limit == 0

    @property
    def uncapped_chat(self) -> bool:
        return self.chat_seconds_cap == 0

    @property
    def remaining_today(self) -> int | None:
        """Seconds left today, or ``None`` when the plan is unlimited."""

        if self.unlimited_today:
            return None
        return max(0, self.daily_seconds_limit - self.daily_seconds_used)

    @property
    def remaining_this_chat(self) -> int | None:
        """Seconds left in this conversation, or ``None`` when uncapped."""

        if self.uncapped_chat:
            return None
        return max(0, self.chat_seconds_cap - self.chat_seconds_elapsed)

    @property
    def paywall(self) -> bool:
        return self.remaining_today == 0

    @property
    def hard_stop(self) -> bool:
        return self.remaining_this_chat == 0

    @classmethod
    def from_counters(
        cls,
        entitlements: Entitlements,
        *,
        daily_seconds_used: int,
        chat_seconds_elapsed: int,
    ) -> "EntitlementSnapshot":
        return cls(
            plan=entitlements.plan,
            daily_seconds_limit=entitlements.daily_seconds_limit,
            daily_seconds_used=daily_seconds_used,
            chat_seconds_elapsed=chat_seconds_elapsed,
            chat_seconds_cap=entitlements.per_chat_seconds_cap,
        )
