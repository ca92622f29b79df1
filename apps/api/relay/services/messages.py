"""Append-only message sinks and guest conversation migration."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Protocol
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..repositories import messages as messages_repo
from .guest_buffer import GuestBuffer

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    async def save(self, conversation_id: str, role: str, text: str) -> None: ...


class InMemoryMessageSink:
    def __init__(self) -> None:
        self.conversations: Dict[str, List[Dict[str, str]]] = defaultdict(list)

    async def save(self, conversation_id: str, role: str, text: str) -> None:
        self.conversations[conversation_id].append({"role": role, "content": text})


class DatabaseMessageSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, conversation_id: str, role: str, text: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await messages_repo.append(
                    session, conversation_id=conversation_id, role=role, content=text
                )


@dataclass(frozen=True, slots=True)
class MigrationResult:
    conversation_id: str | None
    migrated: int
    summary: str | None


async def migrate_guest_conversation(
    guest_id: str,
    user_id: str,
    *,
    buffer: GuestBuffer,
    sink: MessageSink,
) -> MigrationResult:
    """Move a guest's buffered exchange into a new conversation owned by ``user_id``.

    The buffer is read and cleared in one step; a miss (never buffered, already claimed, or
    expired) means there is nothing to migrate.
    """

    entry = buffer.take(guest_id)
    if entry is None:
        logger.info("No guest buffer to migrate for %s", guest_id)
        return MigrationResult(conversation_id=None, migrated=0, summary=None)

    conversation_id = str(uuid4())
    for message in entry.messages:
        await sink.save(conversation_id, message["role"], message["content"])
    logger.info(
        "Migrated %d guest messages from %s to %s (%s)",
        len(entry.messages),
        guest_id,
        user_id,
        conversation_id,
    )
    return MigrationResult(
        conversation_id=conversation_id,
        migrated=len(entry.messages),
        summary=entry.summary,
    )
