"""Usage counters backing the entitlement ledger."""
from __future__ import annotations

from datetime import date

from sqlalchemy import Date, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DailyUsage(Base):
    """Seconds used by one identity on one UTC day."""

    __tablename__ = "daily_usage"

    ledger_key: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ChatUsage(Base):
    """Seconds elapsed in one conversation."""

    __tablename__ = "chat_usage"

    chat_session_id: Mapped[str] = mapped_column(String, primary_key=True)
    ledger_key: Mapped[str] = mapped_column(String, nullable=False)
    seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class UsageTick(Base):
    """Record of an applied heartbeat tick; its key makes accrual idempotent."""

    __tablename__ = "usage_ticks"

    ledger_key: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    chat_session_id: Mapped[str] = mapped_column(String, primary_key=True)
    tick: Mapped[int] = mapped_column(Integer, primary_key=True)
    seconds: Mapped[int] = mapped_column(Integer, nullable=False)
