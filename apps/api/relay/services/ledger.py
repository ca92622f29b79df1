"""Entitlement ledger: usage counters with idempotent, conditional accrual."""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Protocol, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..repositories import usage as usage_repo
from ..schemas.entitlements import Entitlements, EntitlementSnapshot, Identity

logger = logging.getLogger(__name__)

DayProvider = Callable[[], date]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _limit_or_none(value: int) -> int | None:
    return value if value > 0 else None


class EntitlementLedger(Protocol):
    async def snapshot(
        self, identity: Identity, chat_session_id: str, entitlements: Entitlements
    ) -> EntitlementSnapshot: ...

    async def accrue(
        self,
        identity: Identity,
        chat_session_id: str,
        entitlements: Entitlements,
        *,
        tick: int,
        seconds: int,
    ) -> bool: ...


class InMemoryLedger:
    """Process-local ledger.

    Accrual holds one lock for the check and both increments. Only the highest applied tick
    per ``(identity, day, conversation)`` is kept; a tick at or below it is a replay. Past
    days are dropped on the first call after the UTC day rolls over. Conversation counters
    are kept for one extra day.
    """

    def __init__(self, today: DayProvider = utc_today) -> None:
        self._today = today
        self._daily: Dict[Tuple[str, date], int] = {}
        self._chat: Dict[str, Tuple[date, int]] = {}
        self._applied: Dict[Tuple[str, date, str], int] = {}
        self._current_day: date | None = None
        self._lock = asyncio.Lock()

    def _roll_over(self) -> date:
        day = self._today()
        if day == self._current_day:
            return day
        self._current_day = day
        self._daily = {key: used for key, used in self._daily.items() if key[1] >= day}
        self._applied = {key: tick for key, tick in self._applied.items() if key[1] >= day}
        oldest_chat_day = day - timedelta(days=1)
        self._chat = {
            chat: entry for chat, entry in self._chat.items() if entry[0] >= oldest_chat_day
        }
        return day

    async def snapshot(
        self, identity: Identity, chat_session_id: str, entitlements: Entitlements
    ) -> EntitlementSnapshot:
        async with self._lock:
            day = self._roll_over()
            used = self._daily.get((identity.ledger_key, day), 0)
            elapsed = self._chat.get(chat_session_id, (day, 0))[1]
        return EntitlementSnapshot.from_counters(
            entitlements, daily_seconds_used=used, chat_seconds_elapsed=elapsed
        )

    async def accrue(
        self,
        identity: Identity,
        chat_session_id: str,
        entitlements: Entitlements,
        *,
        tick: int,
        seconds: int,
    ) -> bool:
        daily_limit = _limit_or_none(entitlements.daily_seconds_limit)
        chat_cap = _limit_or_none(entitlements.per_chat_seconds_cap)

        async with self._lock:
            day = self._roll_over()
            daily_key = (identity.ledger_key, day)
            tick_key = (identity.ledger_key, day, chat_session_id)
            if tick <= self._applied.get(tick_key, -1):
                return False
            used = self._daily.get(daily_key, 0)
            elapsed = self._chat.get(chat_session_id, (day, 0))[1]
            if daily_limit is not None and used >= daily_limit:
                return False
            if chat_cap is not None and elapsed >= chat_cap:
                return False
            self._applied[tick_key] = tick
            self._daily[daily_key] = used + seconds
            self._chat[chat_session_id] = (day, elapsed + seconds)
        return True


class DatabaseLedger:
    """Ledger on SQLAlchemy.

    One transaction records the tick (its primary key rejects replays) and applies two
    guarded ``UPDATE ... SET seconds = seconds + n WHERE seconds < limit`` statements; if
    either guard fails the whole transaction rolls back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        today: DayProvider = utc_today,
    ) -> None:
        self._session_factory = session_factory
        self._today = today

    async def snapshot(
        self, identity: Identity, chat_session_id: str, entitlements: Entitlements
    ) -> EntitlementSnapshot:
        async with self._session_factory() as session:
            used = await usage_repo.get_daily_seconds(
                session, ledger_key=identity.ledger_key, day=self._today()
            )
            elapsed = await usage_repo.get_chat_seconds(session, chat_session_id=chat_session_id)
        return EntitlementSnapshot.from_counters(
            entitlements, daily_seconds_used=used, chat_seconds_elapsed=elapsed
        )

    async def accrue(
        self,
        identity: Identity,
        chat_session_id: str,
        entitlements: Entitlements,
        *,
        tick: int,
        seconds: int,
    ) -> bool:
        day = self._today()
        key = identity.ledger_key

        async with self._session_factory() as session:
            transaction = await session.begin()
            try:
                await usage_repo.ensure_counters(
                    session, ledger_key=key, day=day, chat_session_id=chat_session_id
                )
                fresh = await usage_repo.record_tick(
                    session,
                    ledger_key=key,
                    day=day,
                    chat_session_id=chat_session_id,
                    tick=tick,
                    seconds=seconds,
                )
                applied = fresh and await usage_repo.increment_daily(
                    session,
                    ledger_key=key,
                    day=day,
                    seconds=seconds,
                    below=_limit_or_none(entitlements.daily_seconds_limit),
                )
                applied = applied and await usage_repo.increment_chat(
                    session,
                    chat_session_id=chat_session_id,
                    seconds=seconds,
                    below=_limit_or_none(entitlements.per_chat_seconds_cap),
                )
            except IntegrityError:
                await transaction.rollback()
                logger.info("Concurrent accrual for %s tick %s lost the race", key, tick)
                return False
            except Exception:
                await transaction.rollback()
                raise
            if not applied:
                await transaction.rollback()
                return False
            await transaction.commit()
        return True
