"""Per-session usage heartbeat."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..schemas.entitlements import Entitlements, EntitlementSnapshot, Identity
from .ledger import EntitlementLedger

logger = logging.getLogger(__name__)

EntitlementLoader = Callable[[Identity], Awaitable[Entitlements]]


@dataclass(frozen=True, slots=True)
class HeartbeatResult:
    tick: int
    snapshot: EntitlementSnapshot
    paywall: bool
    hard_stop: bool
    accrued: bool

    @property
    def remaining_today(self) -> int | None:
        return self.snapshot.remaining_today

    @property
    def remaining_this_chat(self) -> int | None:
        return self.snapshot.remaining_this_chat

    @property
    def blocked(self) -> bool:
        return self.paywall or self.hard_stop


class Heartbeat:
    """Accrue one fixed interval per tick unless a limit is already reached.

    Flags come from the snapshot read before accrual; the reported snapshot is re-read
    afterwards. Ticks are numbered from 1 and the number, not wall-clock time, keys the
    ledger's idempotency record.
    """

    def __init__(
        self,
        *,
        identity: Identity,
        chat_session_id: str,
        ledger: EntitlementLedger,
        load_entitlements: EntitlementLoader,
        interval_seconds: int,
    ) -> None:
        self.identity = identity
        self.chat_session_id = chat_session_id
        self.interval_seconds = interval_seconds
        self._ledger = ledger
        self._load_entitlements = load_entitlements
        self._tick = 0

    @property
    def last_tick(self) -> int:
        return self._tick

    async def check(self) -> HeartbeatResult:
        """Read the current state without accruing (tick 0)."""

        entitlements = await self._load_entitlements(self.identity)
        snapshot = await self._ledger.snapshot(self.identity, self.chat_session_id, entitlements)
        return HeartbeatResult(
            tick=0,
            snapshot=snapshot,
            paywall=snapshot.paywall,
            hard_stop=snapshot.hard_stop,
            accrued=False,
        )

    async def tick(self, tick: int | None = None) -> HeartbeatResult:
        if tick is None:
            self._tick += 1
            tick = self._tick

        entitlements = await self._load_entitlements(self.identity)
        before = await self._ledger.snapshot(self.identity, self.chat_session_id, entitlements)
        paywall = before.paywall
        hard_stop = before.hard_stop

        accrued = False
        snapshot = before
        if not (paywall or hard_stop):
            try:
                accrued = await self._ledger.accrue(
                    self.identity,
                    self.chat_session_id,
                    entitlements,
                    tick=tick,
                    seconds=self.interval_seconds,
                )
            except Exception:  # noqa: BLE001 - metering writes are best-effort
                logger.warning(
                    "Usage accrual failed for %s tick %s", self.identity.ledger_key, tick, exc_info=True
                )
            if accrued:
                snapshot = await self._ledger.snapshot(
                    self.identity, self.chat_session_id, entitlements
                )

        return HeartbeatResult(
            tick=tick,
            snapshot=snapshot,
            paywall=paywall,
            hard_stop=hard_stop,
            accrued=accrued,
        )

    async def run(self, on_result: Callable[[HeartbeatResult], Awaitable[None]]) -> None:
        """Tick forever at the fixed interval; cancel the task to stop."""

        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - a failed read skips one beat
                logger.warning("Heartbeat read failed for %s", self.identity.ledger_key, exc_info=True)
                continue
            await on_result(result)
