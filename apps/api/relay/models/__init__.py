"""Expose ORM models."""
from .base import Base
from .message import Message
from .usage import ChatUsage, DailyUsage, UsageTick

__all__ = [
    "Base",
    "ChatUsage",
    "DailyUsage",
    "Message",
    "UsageTick",
]
