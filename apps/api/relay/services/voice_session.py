"""Per-connection voice relay: turn state machine, usage heartbeat, and teardown.

Four kinds of task touch a session: the socket reader (``handle_text``/``handle_audio``),
the STT pump, the turn task, and the heartbeat. They coordinate only through the state
guarded by ``_lock`` and through two counters: ``_stt_generation`` (which recognizer
stream is current) and ``_turn_id`` (which reply is current). Anything carrying a stale
value is dropped.

End of utterance can come from the client (``eou``) or from the recognizer's own
endpointing. The first one to arrive starts the turn; the other finds the session no
longer ``listening`` and is a no-op.
"""
from __future__ import annotations

import asyncio
import base64
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from ..core.config import Settings, settings
from ..schemas import protocol
from ..schemas.entitlements import Identity
from .guest_buffer import GuestBuffer, summarize_conversation
from .heartbeat import EntitlementLoader, Heartbeat, HeartbeatResult
from .ledger import EntitlementLedger
from .llm import ReplyGenerator
from .messages import MessageSink
from .providers import SttFactory, TtsFactory
from .speech import (
    FinalTranscript,
    InterimTranscript,
    SpeechError,
    SpeechToText,
    StreamClosed,
    SttEvent,
    SynthesisComplete,
    SynthesizedAudio,
    TextToSpeech,
)

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
CloseCallable = Callable[[int], Awaitable[None]]

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class TurnState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    CLOSED = "closed"


@dataclass(slots=True)
class SessionServices:
    """Collaborators a session needs; one instance is shared by all connections."""

    stt_factory: SttFactory
    tts_factory: TtsFactory
    ledger: EntitlementLedger
    load_entitlements: EntitlementLoader
    reply_generator: ReplyGenerator
    message_sink: MessageSink
    guest_buffer: GuestBuffer


class ConnectionSession:
    """One live client socket."""

    def __init__(
        self,
        identity: Identity,
        services: SessionServices,
        *,
        send: SendCallable,
        close_socket: Optional[CloseCallable] = None,
        config: Settings = settings,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.identity = identity
        self.state = TurnState.IDLE
        self.conversation_id: Optional[str] = None
        self.persona: Optional[str] = None
        self.muted = False
        self.paywall = False
        self.hard_stop = False
        self.history: List[Dict[str, str]] = []

        self._services = services
        self._send_raw = send
        self._close_socket = close_socket
        self._config = config

        self._lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._starting = False
        self._closing = False

        self._stt: Optional[SpeechToText] = None
        self._stt_task: Optional[asyncio.Task[None]] = None
        self._stt_generation = 0
        self._stt_reopens = 0
        self._tts: Optional[TextToSpeech] = None

        self._turn_id = 0
        self._turn_task: Optional[asyncio.Task[None]] = None
        self._finals: List[str] = []
        self._interim = ""
        self._flushing = False
        self._flush_done = asyncio.Event()

        self._heartbeat: Optional[Heartbeat] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self._rate_window_start = 0.0
        self._rate_count = 0

    @property
    def closed(self) -> bool:
        return self._closing or self.state is TurnState.CLOSED

    @property
    def frozen(self) -> bool:
        return self.paywall or self.hard_stop

    # Inbound

    async def handle_text(self, raw: str | bytes) -> None:
        if self.closed or not await self._allow_control_message():
            return
        try:
            message = protocol.parse_client_message(raw)
        except protocol.ProtocolError as exc:
            if self.state is TurnState.IDLE and not self._starting:
                await self.fail(f"Malformed handshake: {exc}", code=CLOSE_POLICY_VIOLATION)
            else:
                await self._send(protocol.Error(message=str(exc)))
            return

        if isinstance(message, protocol.ClientReady):
            await self.start(message)
        elif isinstance(message, protocol.EndOfUtterance):
            await self.end_of_utterance(trigger="client")
        elif isinstance(message, protocol.Mute):
            self.set_muted(message.on)
        elif isinstance(message, protocol.Interrupt):
            await self.interrupt()
        elif isinstance(message, protocol.EndChat):
            await self.close(reason="end_chat")
            if self._close_socket is not None:
                await self._close_socket(CLOSE_NORMAL)

    async def handle_audio(self, frame: bytes) -> None:
        """Forward a PCM frame to the recognizer; silently dropped unless listening."""

        if self.state is not TurnState.LISTENING or self.muted or self.frozen:
            return
        stt = self._stt
        if stt is not None:
            await stt.write(frame)

    def set_muted(self, on: bool) -> None:
        self.muted = on
        logger.debug("Session %s mute=%s", self.session_id, on)

    # Lifecycle

    async def start(self, ready: protocol.ClientReady) -> None:
        async with self._lock:
            duplicate = self.state is not TurnState.IDLE or self._starting
            if not duplicate:
                self._starting = True
                self.persona = ready.persona
                self.conversation_id = ready.session or str(uuid4())
        if duplicate:
            await self._send(protocol.Error(message="Session already started"))
            return

        await self._send(protocol.ChatSession(chat_session_id=self.conversation_id))

        if not await self._open_stt():
            await self.fail("Speech recognition is unavailable")
            return

        self._heartbeat = Heartbeat(
            identity=self.identity,
            chat_session_id=self.conversation_id,
            ledger=self._services.ledger,
            load_entitlements=self._services.load_entitlements,
            interval_seconds=self._config.heartbeat_interval_seconds,
        )
        async with self._lock:
            if self.closed:
                return
            self.state = TurnState.LISTENING
            self._starting = False
        logger.info(
            "Session %s listening (%s, conversation %s)",
            self.session_id,
            self.identity.ledger_key,
            self.conversation_id,
        )

        try:
            await self._apply_heartbeat(await self._heartbeat.check())
        except Exception:  # noqa: BLE001 - the periodic tick will retry
            logger.warning("Initial entitlement check failed for %s", self.identity.ledger_key, exc_info=True)
        if not self.closed:
            self._heartbeat_task = asyncio.create_task(self._heartbeat.run(self._apply_heartbeat))

    async def close(self, reason: str = "disconnect") -> None:
        """Tear down heartbeat, TTS, then STT. Safe to call more than once."""

        if self._closing:
            return
        self._closing = True
        self._turn_id += 1
        self._stt_generation += 1

        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        await self._cancel_turn()
        if self._tts is not None:
            await self._tts.stop()
        if self._stt is not None:
            await self._stt.destroy()
        await self._cancel_task(self._stt_task)
        self._stt_task = None

        self.state = TurnState.CLOSED
        self._buffer_guest_conversation()
        logger.info("Session %s closed (%s)", self.session_id, reason)

    async def fail(self, message: str, *, code: int = CLOSE_INTERNAL_ERROR) -> None:
        """Report a fatal error, tear down, and close the socket."""

        if self.closed:
            return
        logger.warning("Session %s failed: %s", self.session_id, message)
        await self._send(protocol.Error(message=message))
        await self.close(reason="fatal")
        if self._close_socket is not None:
            try:
                await self._close_socket(code)
            except Exception:  # noqa: BLE001 - socket may already be gone
                logger.debug("Socket close after failure raised", exc_info=True)

    # Turn loop

    async def end_of_utterance(self, *, trigger: str) -> None:
        async with self._lock:
            if self.state is not TurnState.LISTENING or self.frozen:
                logger.debug("Ignoring %s end of utterance in %s", trigger, self.state.value)
                return
            self.state = TurnState.PROCESSING
            self._turn_id += 1
            turn_id = self._turn_id
            self._flushing = trigger == "client"
            self._flush_done.clear()
        self._turn_task = asyncio.create_task(self._run_turn(turn_id, trigger))

    async def interrupt(self) -> None:
        """Barge-in: drop the in-flight reply and listen again."""

        async with self._lock:
            if self.state not in (TurnState.PROCESSING, TurnState.SPEAKING):
                return
            was_speaking = self.state is TurnState.SPEAKING
            self._turn_id += 1
            self.state = TurnState.LISTENING
            self._reset_transcript()
        await self._cancel_turn()
        if self._tts is not None:
            await self._tts.stop()
        if was_speaking:
            await self._send(protocol.TtsEnd())
        await self._send(protocol.Speak(on=False))

    async def _run_turn(self, turn_id: int, trigger: str) -> None:
        try:
            utterance = await self._collect_utterance(trigger)
            if not self._is_current(turn_id):
                return
            if not utterance:
                logger.debug("Empty utterance in session %s", self.session_id)
                await self._resume_listening(turn_id)
                return

            await self._record("user", utterance)
            reply = await self._generate_reply(turn_id)
            if reply is None or not self._is_current(turn_id):
                return
            if not reply:
                await self._resume_listening(turn_id)
                return

            await self._record("assistant", reply)
            await self._send(protocol.AssistantTextChunk(text=reply))
            await self._send(protocol.AssistantTextChunk(done=True))
            await self._speak(turn_id, reply)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - a broken turn must not end the session
            logger.exception("Turn failed in session %s", self.session_id)
            if self._is_current(turn_id):
                await self._send(protocol.Error(message="Something went wrong with that turn"))
                await self._resume_listening(turn_id)

    async def _collect_utterance(self, trigger: str) -> str:
        stt = self._stt
        if stt is not None:
            await stt.finalize()
            if trigger == "client":
                try:
                    await asyncio.wait_for(
                        self._flush_done.wait(), timeout=self._config.finalize_timeout_seconds
                    )
                except asyncio.TimeoutError:
                    logger.debug("Recognizer flush timed out in session %s", self.session_id)
        self._flushing = False
        parts = [*self._finals, self._interim]
        self._reset_transcript()
        return " ".join(part.strip() for part in parts if part.strip())

    async def _generate_reply(self, turn_id: int) -> Optional[str]:
        """Return the reply text, or ``None`` once the failure has been reported."""

        generator = self._services.reply_generator
        try:
            reply = await asyncio.wait_for(
                generator.generate_reply(list(self.history), self.persona),
                timeout=self._config.reply_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Reply generation timed out in session %s", self.session_id)
            message = "Reply took too long; please try again"
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - recoverable, reported to the client
            logger.warning("Reply generation failed in session %s", self.session_id, exc_info=True)
            message = "Could not generate a reply"
        else:
            return (reply or "").strip()

        if self._is_current(turn_id):
            await self._send(protocol.Error(message=message))
            await self._resume_listening(turn_id)
        return None

    async def _speak(self, turn_id: int, reply: str) -> None:
        if self._tts is None:
            try:
                self._tts = self._services.tts_factory()
            except Exception:  # noqa: BLE001 - synthesizer start-up failure is fatal
                logger.exception("TTS start-up failed in session %s", self.session_id)
                await self.fail("Speech synthesis is unavailable")
                return
        tts = self._tts

        started = False
        await tts.synthesize(reply)
        events = tts.events()
        while True:
            try:
                event = await asyncio.wait_for(
                    events.__anext__(), timeout=self._config.tts_timeout_seconds
                )
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                if not self._is_current(turn_id):
                    return
                logger.warning("TTS stalled in session %s; abandoning reply", self.session_id)
                await tts.stop()
                await self._send(protocol.Error(message="Speech synthesis stalled"))
                break
            if not self._is_current(turn_id):
                return
            if isinstance(event, SynthesizedAudio):
                if not started:
                    async with self._lock:
                        if not self._is_current(turn_id) or self.state is not TurnState.PROCESSING:
                            return
                        self.state = TurnState.SPEAKING
                    started = True
                    await self._send(protocol.TtsStart())
                    await self._send(protocol.Speak(on=True))
                await self._send(protocol.TtsChunk(b64=base64.b64encode(event.data).decode("ascii")))
            elif isinstance(event, SpeechError):
                await self._send(protocol.Error(message=event.message))
                break
            elif isinstance(event, SynthesisComplete):
                break

        if not self._is_current(turn_id):
            return
        if started:
            await self._send(protocol.TtsEnd())
            await self._send(protocol.Speak(on=False))
        await self._resume_listening(turn_id)

    async def _resume_listening(self, turn_id: int) -> None:
        async with self._lock:
            if turn_id != self._turn_id or self.state not in (
                TurnState.PROCESSING,
                TurnState.SPEAKING,
            ):
                return
            self.state = TurnState.LISTENING
            self._reset_transcript()

    def _is_current(self, turn_id: int) -> bool:
        return not self.closed and turn_id == self._turn_id

    # Recognizer

    async def _open_stt(self) -> bool:
        try:
            stt = self._services.stt_factory()
        except Exception:  # noqa: BLE001
            logger.exception("STT construction failed")
            return False
        try:
            await asyncio.wait_for(stt.start(), timeout=self._config.stt_open_timeout_seconds)
        except asyncio.CancelledError:
            await stt.destroy()
            raise
        except Exception as exc:  # noqa: BLE001 - includes the open timeout
            logger.warning("STT %s failed to open: %r", stt.name, exc)
            await stt.destroy()
            return False
        if self.closed:
            await stt.destroy()
            return False

        self._stt_generation += 1
        self._stt = stt
        self._stt_task = asyncio.create_task(self._pump_stt(stt, self._stt_generation))
        return True

    async def _pump_stt(self, stt: SpeechToText, generation: int) -> None:
        try:
            async for event in stt.events():
                await self._on_stt_event(event, generation)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("STT pump crashed in session %s", self.session_id)
            await self.fail("Speech recognition failed")

    async def _on_stt_event(self, event: SttEvent, generation: int) -> None:
        if self.closed or generation != self._stt_generation:
            logger.debug("Dropping stale %s in session %s", type(event).__name__, self.session_id)
            return

        if isinstance(event, InterimTranscript):
            if self.state is TurnState.LISTENING and not self.frozen:
                self._interim = event.text
                await self._send(protocol.Transcript(text=event.text, interim=True))
        elif isinstance(event, FinalTranscript):
            accepting = (self.state is TurnState.LISTENING and not self.frozen) or (
                self.state is TurnState.PROCESSING and self._flushing
            )
            if accepting and event.text.strip():
                self._append_final(event.text.strip())
                await self._send(protocol.Transcript(text=" ".join(self._finals)))
            if event.flushed:
                self._flush_done.set()
            if event.end_of_utterance and self.state is TurnState.LISTENING:
                await self.end_of_utterance(trigger="provider")
        elif isinstance(event, SpeechError):
            await self._send(protocol.Error(message=event.message))
        elif isinstance(event, StreamClosed):
            await self._reopen_stt(event.reason)

    async def _reopen_stt(self, reason: str) -> None:
        if self._stt_reopens >= self._config.stt_reconnect_attempts:
            await self.fail("Speech recognition disconnected")
            return
        self._stt_reopens += 1
        logger.warning("STT stream closed (%s); reopening for session %s", reason, self.session_id)
        previous, self._stt = self._stt, None
        if previous is not None:
            await previous.destroy()
        if not await self._open_stt():
            await self.fail("Speech recognition disconnected")

    def _append_final(self, text: str) -> None:
        self._finals.append(text)
        self._interim = ""
        joined = " ".join(self._finals)
        limit = self._config.max_turn_transcript_chars
        if len(joined) > limit:
            self._finals = [joined[-limit:]]

    def _reset_transcript(self) -> None:
        self._finals = []
        self._interim = ""

    # Metering

    async def _apply_heartbeat(self, result: HeartbeatResult) -> None:
        if self.closed:
            return
        await self._send(
            protocol.Heartbeat(
                chat_session_id=self.conversation_id,
                entitlements=result.snapshot,
                remaining_today=result.remaining_today,
                remaining_this_chat=result.remaining_this_chat,
                paywall=result.paywall,
                hard_stop=result.hard_stop,
            )
        )
        if result.blocked:
            await self._freeze(paywall=result.paywall, hard_stop=result.hard_stop)
        elif self.frozen:
            async with self._lock:
                self.paywall = False
                self.hard_stop = False
            logger.info("Session %s limits cleared", self.session_id)

    async def _freeze(self, *, paywall: bool, hard_stop: bool) -> None:
        """Pre-empt the turn loop until a later heartbeat clears the limit."""

        async with self._lock:
            already_frozen = self.frozen
            self.paywall = paywall
            self.hard_stop = hard_stop
            if already_frozen:
                return
            was_speaking = self.state is TurnState.SPEAKING
            if self.state in (TurnState.PROCESSING, TurnState.SPEAKING):
                self._turn_id += 1
                self.state = TurnState.LISTENING
            self._reset_transcript()
        logger.info(
            "Session %s frozen (paywall=%s, hard_stop=%s)", self.session_id, paywall, hard_stop
        )
        await self._cancel_turn()
        if self._tts is not None:
            await self._tts.stop()
        if was_speaking:
            await self._send(protocol.TtsEnd())
        await self._send(protocol.Speak(on=False))

    # Output and bookkeeping

    async def _send(self, message: protocol.ServerMessage) -> None:
        payload = protocol.dump_server_message(message)
        async with self._send_lock:
            try:
                await self._send_raw(payload)
            except Exception as exc:  # noqa: BLE001 - the reader notices the dead socket
                logger.debug("Send to session %s failed: %s", self.session_id, exc)

    async def _allow_control_message(self) -> bool:
        now = asyncio.get_running_loop().time()
        if now - self._rate_window_start >= 1.0:
            self._rate_window_start = now
            self._rate_count = 0
        self._rate_count += 1
        limit = self._config.control_messages_per_second
        if self._rate_count <= limit:
            return True
        if self._rate_count == limit + 1:
            await self._send(protocol.Error(message="Too many messages; slow down"))
        return False

    async def _record(self, role: str, text: str) -> None:
        self.history.append({"role": role, "content": text})
        if self.identity.is_guest or self.conversation_id is None:
            return
        try:
            await self._services.message_sink.save(self.conversation_id, role, text)
        except Exception:  # noqa: BLE001 - transcript persistence is best-effort
            logger.warning("Persisting %s message failed for %s", role, self.conversation_id, exc_info=True)

    def _buffer_guest_conversation(self) -> None:
        if not self.identity.is_guest:
            return
        if len(self.history) < self._config.guest_buffer_min_messages:
            return
        try:
            self._services.guest_buffer.buffer_conversation(
                self.identity.id, list(self.history), summarize_conversation(self.history)
            )
        except Exception:  # noqa: BLE001 - buffering is best-effort
            logger.warning("Guest buffer failed for %s", self.identity.id, exc_info=True)

    async def _cancel_turn(self) -> None:
        task, self._turn_task = self._turn_task, None
        await self._cancel_task(task)

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task[None]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
