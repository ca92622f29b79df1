"""Append-only access to persisted conversation messages."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.message import Message


async def append(session: AsyncSession, *, conversation_id: str, role: str, content: str) -> Message:
    """Add one message to the end of a conversation."""

    message = Message(conversation_id=conversation_id, role=role, content=content)
    session.add(message)
    await session.flush()
    return message


async def list_for_conversation(session: AsyncSession, conversation_id: str) -> list[Message]:
    """Return a conversation's messages in the order they were appended."""

    result = await session.execute(
        select(Message).where(Message.conversation_id == conversation_id).order_by(Message.id)
    )
    return list(result.scalars())
