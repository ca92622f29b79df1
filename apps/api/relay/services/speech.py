"""Capability contracts shared by every speech-to-text and text-to-speech binding.

Each adapter owns a single event channel. The session consumes it with ``events()`` and
never branches on the vendor behind it.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from typing import AsyncIterator, Union

logger = logging.getLogger(__name__)

AudioChunk = bytes


@dataclass(frozen=True, slots=True)
class InterimTranscript:
    text: str


@dataclass(frozen=True, slots=True)
class FinalTranscript:
    """A committed transcript segment.

    ``end_of_utterance`` is the vendor's own endpoint detection. ``flushed`` marks the
    result produced by an explicit :meth:`SpeechToText.finalize`; it may carry empty text.
    """

    text: str
    end_of_utterance: bool = False
    flushed: bool = False


@dataclass(frozen=True, slots=True)
class SpeechError:
    message: str


@dataclass(frozen=True, slots=True)
class StreamClosed:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class SynthesizedAudio:
    data: bytes


@dataclass(frozen=True, slots=True)
class SynthesisComplete:
    pass


SttEvent = Union[InterimTranscript, FinalTranscript, SpeechError, StreamClosed]
TtsEvent = Union[SynthesizedAudio, SynthesisComplete, SpeechError]

_END = object()


class SpeechToText(ABC):
    """Streaming recognizer: ``start`` → ``write``* → ``finalize``* → ``destroy``."""

    name = "stt"

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._started = False
        self._destroyed = False

    @property
    def active(self) -> bool:
        return self._started and not self._destroyed

    async def start(self) -> None:
        """Open the vendor stream. The only call allowed to raise."""

        if self._started:
            return
        await self._open()
        self._started = True

    async def write(self, chunk: AudioChunk) -> None:
        if not self.active:
            return
        try:
            await self._send_audio(chunk)
        except Exception as exc:  # noqa: BLE001 - surfaced as an event
            logger.warning("%s write failed: %s", self.name, exc)
            self._emit(SpeechError(f"{self.name} write failed"))

    async def finalize(self) -> None:
        """Force a final result for buffered audio without closing the stream."""

        if not self.active:
            return
        try:
            await self._flush()
        except Exception as exc:  # noqa: BLE001 - surfaced as an event
            logger.warning("%s finalize failed: %s", self.name, exc)
            self._emit(SpeechError(f"{self.name} finalize failed"))

    async def destroy(self) -> None:
        """Close the stream. Idempotent; nothing is emitted afterwards."""

        if self._destroyed:
            return
        self._destroyed = True
        try:
            await self._close()
        except Exception as exc:  # noqa: BLE001 - teardown must not throw
            logger.debug("%s close raised: %s", self.name, exc)
        self._drain()
        self._queue.put_nowait(_END)

    async def events(self) -> AsyncIterator[SttEvent]:
        while True:
            event = await self._queue.get()
            if event is _END:
                return
            yield event  # type: ignore[misc]
            if isinstance(event, StreamClosed):
                return

    def _emit(self, event: SttEvent) -> None:
        if self._destroyed:
            return
        self._queue.put_nowait(event)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _send_audio(self, chunk: AudioChunk) -> None: ...

    @abstractmethod
    async def _flush(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...


class TextToSpeech(ABC):
    """Synthesizer that streams audio for one reply at a time.

    ``synthesize`` starts a job and returns immediately; ``events()`` yields that job's
    audio until :class:`SynthesisComplete` or :class:`SpeechError`. ``stop`` cancels the
    job and discards anything it already queued.
    """

    name = "tts"

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TtsEvent] = asyncio.Queue()
        self._job: asyncio.Task[None] | None = None
        self._job_id = 0

    @property
    def speaking(self) -> bool:
        return self._job is not None and not self._job.done()

    async def synthesize(self, text: str) -> None:
        await self.stop()
        job_id = self._job_id
        self._job = asyncio.create_task(self._run(text, job_id))

    async def stop(self) -> None:
        self._job_id += 1
        job, self._job = self._job, None
        if job is not None and not job.done():
            job.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await job
        while not self._queue.empty():
            self._queue.get_nowait()

    async def events(self) -> AsyncIterator[TtsEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, (SynthesisComplete, SpeechError)):
                return

    async def _run(self, text: str, job_id: int) -> None:
        try:
            async for chunk in self._stream(text):
                if chunk:
                    self._emit(job_id, SynthesizedAudio(chunk))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - surfaced as an event
            logger.warning("%s synthesis failed: %s", self.name, exc)
            self._emit(job_id, SpeechError(f"{self.name} synthesis failed"))
            return
        self._emit(job_id, SynthesisComplete())

    def _emit(self, job_id: int, event: TtsEvent) -> None:
        if job_id != self._job_id:
            return
        self._queue.put_nowait(event)

    @abstractmethod
    def _stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield raw audio for ``text``; must release vendor resources when closed."""
