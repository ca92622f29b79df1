"""Short-lived buffer that carries a guest conversation across sign-up.

Entries live in process memory, so this only works for a single-instance deployment; a
multi-instance deployment needs a shared store with TTL support behind the same methods.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..core.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

SUMMARY_MAX_CHARS = 280


def summarize_conversation(messages: List[Dict[str, str]], max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """Short digest of what the guest said, most recent last."""

    said = [m["content"].strip() for m in messages if m.get("role") == "user" and m.get("content")]
    if not said:
        return ""
    digest = " / ".join(said)
    if len(digest) > max_chars:
        digest = "..." + digest[-(max_chars - 3):]
    return digest


@dataclass
class GuestBufferEntry:
    messages: List[Dict[str, str]]
    summary: str
    timestamp: float = field(default_factory=time.time)


class GuestBuffer:
    """In-memory map of ``guestId`` to buffered conversation, expired by a periodic sweep."""

    def __init__(
        self,
        ttl_seconds: int | None = None,
        sweep_seconds: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.guest_buffer_ttl_seconds
        self._sweep_interval = (
            sweep_seconds if sweep_seconds is not None else settings.guest_buffer_sweep_seconds
        )
        self._clock = clock
        self._entries: Dict[str, GuestBufferEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def buffer_conversation(
        self, guest_id: str, messages: List[Dict[str, str]], summary: str
    ) -> None:
        """Store (or replace) the guest's conversation."""

        self._entries[guest_id] = GuestBufferEntry(
            messages=[dict(message) for message in messages],
            summary=summary,
            timestamp=self._clock(),
        )
        logger.info("Buffered guest conversation for %s (%d msgs)", guest_id, len(messages))

    def get(self, guest_id: str) -> Optional[GuestBufferEntry]:
        entry = self._entries.get(guest_id)
        if entry is None or self._expired(entry):
            return None
        return entry

    def clear(self, guest_id: str) -> None:
        self._entries.pop(guest_id, None)

    def take(self, guest_id: str) -> Optional[GuestBufferEntry]:
        """Return and remove the entry; a second call returns ``None``."""

        entry = self._entries.pop(guest_id, None)
        if entry is None or self._expired(entry):
            return None
        return entry

    def sweep(self) -> int:
        """Drop entries older than the TTL and return how many were removed."""

        expired = [key for key, entry in self._entries.items() if self._expired(entry)]
        for key in expired:
            self._entries.pop(key, None)
            logger.info("Expired guest buffer for %s", key)
        return len(expired)

    def _expired(self, entry: GuestBufferEntry) -> bool:
        return self._clock() - entry.timestamp > self._ttl

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()


guest_buffer = GuestBuffer()
