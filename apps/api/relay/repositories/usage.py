"""Usage counter helpers for the database-backed ledger."""
from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.usage import ChatUsage, DailyUsage, UsageTick


async def get_daily_seconds(session: AsyncSession, *, ledger_key: str, day: date) -> int:
    """Return seconds used on ``day``; a missing row counts as zero."""

    row = await session.get(DailyUsage, (ledger_key, day))
    return row.seconds if row is not None else 0


async def get_chat_seconds(session: AsyncSession, *, chat_session_id: str) -> int:
    """Return seconds elapsed in a conversation; a missing row counts as zero."""

    row = await session.get(ChatUsage, chat_session_id)
    return row.seconds if row is not None else 0


async def record_tick(
    session: AsyncSession,
    *,
    ledger_key: str,
    day: date,
    chat_session_id: str,
    tick: int,
    seconds: int,
) -> bool:
    """Insert the tick record; return ``False`` when this tick was already applied.

    A concurrent duplicate that slips past the lookup fails the primary key on flush.
    """

    if await session.get(UsageTick, (ledger_key, day, chat_session_id, tick)) is not None:
        return False
    session.add(
        UsageTick(
            ledger_key=ledger_key,
            day=day,
            chat_session_id=chat_session_id,
            tick=tick,
            seconds=seconds,
        )
    )
    await session.flush()
    return True


async def ensure_counters(
    session: AsyncSession,
    *,
    ledger_key: str,
    day: date,
    chat_session_id: str,
) -> None:
    """Create zeroed counter rows if they do not yet exist."""

    if await session.get(DailyUsage, (ledger_key, day)) is None:
        session.add(DailyUsage(ledger_key=ledger_key, day=day, seconds=0))
    if await session.get(ChatUsage, chat_session_id) is None:
        session.add(ChatUsage(chat_session_id=chat_session_id, ledger_key=ledger_key, seconds=0))
    await session.flush()


async def increment_daily(
    session: AsyncSession,
    *,
    ledger_key: str,
    day: date,
    seconds: int,
    below: int | None,
) -> bool:
    """Add ``seconds`` in one statement, only while the stored value is under ``below``."""

    stmt = (
        update(DailyUsage)
        .where(DailyUsage.ledger_key == ledger_key, DailyUsage.day == day)
        .values(seconds=DailyUsage.seconds + seconds)
    )
    if below is not None:
        stmt = stmt.where(DailyUsage.seconds < below)
    result = await session.execute(stmt)
    return result.rowcount == 1


async def increment_chat(
    session: AsyncSession,
    *,
    chat_session_id: str,
    seconds: int,
    below: int | None,
) -> bool:
    """Add ``seconds`` to a conversation, only while the stored value is under ``below``."""

    stmt = (
        update(ChatUsage)
        .where(ChatUsage.chat_session_id == chat_session_id)
        .values(seconds=ChatUsage.seconds + seconds)
    )
    if below is not None:
        stmt = stmt.where(ChatUsage.seconds < below)
    result = await session.execute(stmt)
    return result.rowcount == 1

