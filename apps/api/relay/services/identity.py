"""Caller identity resolution and plan-based entitlements."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Optional

from ..core.config import settings
from ..schemas.entitlements import Entitlements, Identity, Plan

logger = logging.getLogger(__name__)

GUEST_ID_PATTERN = re.compile(r"^guest_[a-f0-9-]{36}$")


class IdentityRejected(ValueError):
    """Raised when a connection presents no usable identity."""


class IdentityDirectory:
    """Token and plan registry fed by the identity-issuance service.

    Plans are looked up on every call so an upgrade takes effect on the next heartbeat.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, str] = {}
        self._plans: Dict[str, Plan] = {}
        self._lock = asyncio.Lock()

    async def register(self, token: str, user_id: str, plan: Plan = Plan.FREE) -> None:
        async with self._lock:
            self._tokens[token] = user_id
            self._plans[user_id] = plan
        logger.info("Registered session token for %s (%s)", user_id, plan.value)

    async def revoke(self, token: str) -> None:
        async with self._lock:
            self._tokens.pop(token, None)

    async def resolve(self, *, token: Optional[str], guest_id: Optional[str]) -> Identity:
        """Map socket query parameters to an identity; a token wins over a guest id."""

        if token:
            async with self._lock:
                user_id = self._tokens.get(token)
            if user_id is None:
                raise IdentityRejected("Unknown session token")
            return Identity.user(user_id)
        if guest_id:
            if not GUEST_ID_PATTERN.match(guest_id):
                logger.warning("Rejected invalid guestId format: %s", guest_id)
                raise IdentityRejected("Invalid guest id")
            return Identity.guest(guest_id)
        raise IdentityRejected("Missing token or guest id")

    async def plan_for(self, identity: Identity) -> Plan:
        if identity.is_guest:
            return Plan.FREE
        async with self._lock:
            return self._plans.get(identity.id, Plan.FREE)

    async def load_entitlements(self, identity: Identity) -> Entitlements:
        """Return the limits that apply to ``identity`` right now."""

        if identity.is_guest:
            # Guests have no separate chat cap; the daily allowance is the cap.
            return Entitlements(
                plan=Plan.FREE,
                daily_seconds_limit=settings.free_daily_seconds,
                per_chat_seconds_cap=settings.free_daily_seconds,
            )
        plan = await self.plan_for(identity)
        if plan is Plan.PRO:
            return Entitlements(
                plan=Plan.PRO,
                daily_seconds_limit=0,
                per_chat_seconds_cap=settings.pro_chat_seconds_cap,
            )
        return Entitlements(
            plan=Plan.FREE,
            daily_seconds_limit=settings.free_daily_seconds,
            per_chat_seconds_cap=settings.free_chat_seconds_cap,
        )
