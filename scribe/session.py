"""
Recording Session Controller: one live transcription session at a time.

States::

    IDLE --start()--> CONNECTING --connected + mic--> ACTIVE
      ^                   |                             |
      |                   +--connect failed-------------+--stop() / fatal / terminated--> STOPPING --> IDLE

Only one session exists system-wide. It belongs to an owner (a block id, or
None for an ad-hoc session). A start() from a different owner while a session
exists is rejected with SessionBusyError; the running session is untouched.
A start() from the same owner is a no-op.

Errors are never raised out of start()/stop(). They are logged and published
to the error listeners and the notice callback. A transcript target that
raises is reported as TranscriptTargetError and ends the session.

stop() may be called in any state, including while connect() is pending: the
late connection is torn down when it resolves and never becomes ACTIVE.
"""
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from functools import partial
from logging import getLogger
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from config import (
    AUDIO_CHUNK_SIZE_SAMPLES,
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    LISTENING_PLACEHOLDER,
    STT_END_OF_TURN_CONFIDENCE_THRESHOLD,
    STT_FORMAT_TURNS,
    STT_MAX_TURN_SILENCE_MS,
    STT_MIN_END_OF_TURN_SILENCE_MS,
)
from scribe.audio_feed import AudioSource, CaptureConfig, CaptureHandle, RecordedAudio
from scribe.errors import (
    CaptureError,
    ConfigurationError,
    FatalAuthError,
    ScribeError,
    SessionBusyError,
    SttConnectionError,
    TranscriptTargetError,
)
from scribe.reconciler import FatalErrorPredicate, TranscriptReconciler, is_auth_error
from scribe.stt_provider import RealtimeSttChannel, SessionTerminated, TranscriptError
from scribe.stt_provider_assemblyai import AssemblyAiRealtimeChannel, AssemblyAiSttConfig

logger = getLogger(__name__)


STATUS_STARTING = "Starting transcription…"
STATUS_STOPPING = "Stopping…"
STATUS_CONNECT_FAILED = "Failed to connect."
STATUS_ERROR = "Transcription error: {}"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass(frozen=True)
class RecordingState:
    running: bool
    owner_id: Optional[str]
    state: SessionState


@dataclass(frozen=True)
class TranscriptTarget:
    """Where the text of a session goes. Only on_final_text is required."""
    on_final_text: Callable[[str], None]
    on_partial_text: Optional[Callable[[str], None]] = None
    on_preview_text: Optional[Callable[[str], None]] = None


@dataclass(frozen=True)
class StreamingSettings:
    sample_rate: int = AUDIO_SAMPLE_RATE
    chunk_size_samples: int = AUDIO_CHUNK_SIZE_SAMPLES
    encoding: str = AUDIO_ENCODING
    format_turns: bool = STT_FORMAT_TURNS
    end_of_turn_confidence_threshold: float = STT_END_OF_TURN_CONFIDENCE_THRESHOLD
    min_end_of_turn_silence_ms: int = STT_MIN_END_OF_TURN_SILENCE_MS
    max_turn_silence_ms: int = STT_MAX_TURN_SILENCE_MS

    def sanitized(self) -> "StreamingSettings":
        """Replace non-positive sample rate / chunk size with the defaults."""
        return replace(
            self,
            sample_rate=self.sample_rate if self.sample_rate > 0 else AUDIO_SAMPLE_RATE,
            chunk_size_samples=self.chunk_size_samples if self.chunk_size_samples > 0 else AUDIO_CHUNK_SIZE_SAMPLES,
        )


@dataclass(eq=False)
class RecordingSession:
    owner_id: Optional[str]
    target: TranscriptTarget
    started_at: datetime
    channel: Optional[RealtimeSttChannel] = None
    capture: Optional[CaptureHandle] = None
    pump_task: Optional[asyncio.Task] = None
    accepting_audio: bool = True
    fatal: bool = False
    target_failed: bool = False
    stopping: bool = False
    recorded: Optional[RecordedAudio] = None


class Listeners:
    """
    Ordered synchronous fan-out.

    subscribe() returns a callable that removes the handler again. A failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: List[Callable[..., None]] = []

    def subscribe(self, handler: Callable[..., None]) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)
        return _unsubscribe

    def publish(self, *args: Any) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception as e:
                logger.exception("[SESSION] %s listener failed: %r", self._name, e)

    def __len__(self) -> int:
        return len(self._handlers)


ChannelFactory = Callable[[AssemblyAiSttConfig], RealtimeSttChannel]
VocabularyHintSupplier = Callable[[], Awaitable[Sequence[str]]]


def default_api_key() -> str:
    """Read the credential fresh on every call so it can be rotated without a restart."""
    return os.getenv("ASSEMBLYAI_API_KEY", "")


def _log_final_text(text: str) -> None:
    logger.info("[SESSION] final: %s", text.strip())


class RecordingSessionController:
    """Arbitrates the single live session and wires channel, reconciler and audio together."""

    def __init__(
            self,
            audio_source: Optional[AudioSource] = None,
            *,
            get_api_key: Callable[[], str] = default_api_key,
            get_settings: Callable[[], StreamingSettings] = StreamingSettings,
            channel_factory: ChannelFactory = AssemblyAiRealtimeChannel,
            get_vocabulary_hints: Optional[VocabularyHintSupplier] = None,
            default_target: Optional[TranscriptTarget] = None,
            on_notice: Optional[Callable[[str], None]] = None,
            is_fatal_error: FatalErrorPredicate = is_auth_error,
    ) -> None:
        self._audio_source = audio_source
        self._get_api_key = get_api_key
        self._get_settings = get_settings
        self._channel_factory = channel_factory
        self._get_vocabulary_hints = get_vocabulary_hints
        self._default_target = default_target or TranscriptTarget(on_final_text=_log_final_text)
        self._on_notice = on_notice

        self._state = SessionState.IDLE
        self._session: Optional[RecordingSession] = None
        self._last_recording: Optional[RecordedAudio] = None
        self._reconciler = TranscriptReconciler(
            self._dispatch_final,
            on_partial_text=self._dispatch_partial,
            on_preview_text=self._dispatch_preview,
            on_error=self._handle_transcript_error,
            on_fatal_error=self._handle_fatal_error,
            is_fatal_error=is_fatal_error,
        )

        self.recording_listeners = Listeners("recording")
        self.preview_listeners = Listeners("preview")
        self.status_listeners = Listeners("status")
        self.audio_frame_listeners = Listeners("audio frame")
        self.error_listeners = Listeners("error")

    # ------------------------------------------------------------------
    # Introspection & subscriptions
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in (SessionState.CONNECTING, SessionState.ACTIVE)

    @property
    def owner_id(self) -> Optional[str]:
        return self._session.owner_id if self._session else None

    @property
    def reconciler(self) -> TranscriptReconciler:
        return self._reconciler

    @property
    def last_recording(self) -> Optional[RecordedAudio]:
        """Audio captured by the most recently stopped session."""
        return self._last_recording

    @property
    def recording_state(self) -> RecordingState:
        return RecordingState(running=self.is_running, owner_id=self.owner_id, state=self._state)

    def on_recording_change(self, handler: Callable[[RecordingState], None]) -> Callable[[], None]:
        return self.recording_listeners.subscribe(handler)

    def on_transcript_preview(self, handler: Callable[[str, RecordingState], None]) -> Callable[[], None]:
        return self.preview_listeners.subscribe(handler)

    def on_status_text(self, handler: Callable[[str], None]) -> Callable[[], None]:
        return self.status_listeners.subscribe(handler)

    def on_audio_frame(self, handler: Callable[[Optional[bytes], RecordingState], None]) -> Callable[[], None]:
        return self.audio_frame_listeners.subscribe(handler)

    def on_error(self, handler: Callable[[ScribeError], None]) -> Callable[[], None]:
        return self.error_listeners.subscribe(handler)

    # ------------------------------------------------------------------
    # start / stop / toggle
    # ------------------------------------------------------------------

    async def start(
            self,
            target: Optional[TranscriptTarget] = None,
            owner_id: Optional[str] = None,
            *,
            audio_source: Optional[AudioSource] = None,
    ) -> bool:
        """
        Start a session for `owner_id`. Returns True if the caller now holds a running session.
        """
        current = self._session
        if current is not None:
            if current.owner_id != owner_id:
                self._report(SessionBusyError(current.owner_id, owner_id))
                return False
            logger.debug("[SESSION] start(): already %s for owner %s", self._state.value, owner_id)
            return self.is_running

        api_key = (self._get_api_key() or "").strip()
        if not api_key:
            self._report(ConfigurationError("Missing AssemblyAI API key. Set ASSEMBLYAI_API_KEY."))
            return False
        settings = self._get_settings().sanitized()

        # claim the session before the first await, concurrent starts see CONNECTING
        session = RecordingSession(owner_id=owner_id, target=target or self._default_target,
                                   started_at=datetime.now())
        self._session = session
        self._reconciler.reset()
        self._set_state(SessionState.CONNECTING)
        self._status(STATUS_STARTING)

        hints = await self._load_vocabulary_hints()
        if session is not self._session:
            logger.info("[SESSION] stopped while loading vocabulary hints.")
            return False

        try:
            channel = self._channel_factory(AssemblyAiSttConfig(
                api_key=api_key,
                sample_rate=settings.sample_rate,
                encoding=settings.encoding,
                format_turns=settings.format_turns,
                end_of_turn_confidence_threshold=settings.end_of_turn_confidence_threshold,
                min_end_of_turn_silence_ms=settings.min_end_of_turn_silence_ms,
                max_turn_silence_ms=settings.max_turn_silence_ms,
                keyterms_prompt=tuple(hints),
            ))
        except ValueError as e:
            self._finish(session)
            self._report(ConfigurationError(f"Invalid streaming settings: {e}"))
            return False
        except Exception as e:
            logger.exception("[SESSION] channel factory failed: %r", e)
            self._status(STATUS_CONNECT_FAILED)
            self._finish(session)
            self._report(SttConnectionError(f"Could not create the streaming channel: {e}"))
            return False
        session.channel = channel

        try:
            await channel.connect()
        except Exception as e:
            if isinstance(e, ScribeError):
                error = e
            else:
                logger.exception("[SESSION] unexpected connect failure: %r", e)
                error = SttConnectionError(f"Failed to connect: {e}")
            await channel.terminate()
            if session is not self._session:
                logger.info("[SESSION] connect failed after stop: %s", error)
                return False
            self._status(STATUS_CONNECT_FAILED)
            self._finish(session)
            self._report(error)
            return False

        if session is not self._session or session.stopping:
            # stop() won the race against connect()
            logger.info("[SESSION] connected after stop, discarding connection.")
            await channel.terminate()
            return False

        session.pump_task = asyncio.create_task(self._pump_events(session))

        capture_cfg = CaptureConfig(sample_rate=settings.sample_rate, chunk_size_samples=settings.chunk_size_samples)
        source = audio_source or self._audio_source
        try:
            if source is None:
                raise CaptureError("No audio source configured.")
            capture = await source.start_capture(
                capture_cfg,
                partial(self._send_chunk, session),
                self._handle_audio_frame,
            )
        except (CaptureError, OSError) as e:
            error = e if isinstance(e, CaptureError) else CaptureError(f"Microphone failed: {e}")
            await self._stop_session(session, notice=False)
            self._report(error)
            return False

        if session is not self._session or session.stopping:
            logger.info("[SESSION] audio started after stop, releasing it.")
            await capture.stop()
            return False

        session.capture = capture
        self._set_state(SessionState.ACTIVE)
        self._status(LISTENING_PLACEHOLDER)
        self._notice("Live transcription started.")
        logger.info("[SESSION] live transcription started (owner=%s).", owner_id)
        return True

    async def stop(self) -> None:
        """Flush the pending tail, close the channel and the audio source. No-op when idle."""
        session = self._session
        if session is None:
            return
        await self._stop_session(session)

    async def toggle(self, target: Optional[TranscriptTarget] = None, owner_id: Optional[str] = None) -> bool:
        """Stop the caller's active session, otherwise start one. Returns True if now running."""
        if self._state is SessionState.ACTIVE and self.owner_id == owner_id:
            await self.stop()
            return False
        return await self.start(target, owner_id)

    async def _stop_session(self, session: RecordingSession, *, notice: bool = True) -> None:
        if session is not self._session or session.stopping:
            return
        session.stopping = True
        session.accepting_audio = False

        # must happen before the first await, so no event can slip in between
        self._reconciler.flush_pending()
        self._set_state(SessionState.STOPPING)
        self._status(STATUS_STOPPING)

        try:
            if session.channel is not None:
                await session.channel.terminate()
            if session.capture is not None:
                session.recorded = await session.capture.stop()
                self._last_recording = session.recorded
            pump = session.pump_task
            if pump is not None and pump is not asyncio.current_task() and not pump.done():
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
        finally:
            target = session.target
            self._finish(session)
            self._deliver(session, target.on_partial_text, "")
            self._deliver(session, target.on_preview_text, "")
            self.audio_frame_listeners.publish(None, self.recording_state)
            self._status("")
            if notice:
                self._notice("Live transcription stopped.")
            logger.info("[SESSION] live transcription stopped (owner=%s).", session.owner_id)

    def _finish(self, session: RecordingSession) -> None:
        if session is self._session:
            self._session = None
            self._set_state(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Event & audio plumbing
    # ------------------------------------------------------------------

    async def _pump_events(self, session: RecordingSession) -> None:
        """Feed channel events to the reconciler in arrival order."""
        channel = session.channel
        async for ev in channel.events():
            if session is not self._session or session.stopping:
                break
            self._reconciler.handle_event(ev)
            if session.fatal or session.target_failed or isinstance(ev, SessionTerminated):
                await self._stop_session(session)
                break
        else:
            # channel went away without a termination event
            if session is self._session and not session.stopping:
                logger.warning("[SESSION] channel closed without termination, stopping.")
                await self._stop_session(session)

    async def _send_chunk(self, session: RecordingSession, chunk: bytes) -> None:
        if not session.accepting_audio or session is not self._session or session.channel is None:
            return
        await session.channel.send_audio(chunk)

    def _handle_audio_frame(self, data: bytes) -> None:
        self.audio_frame_listeners.publish(data, self.recording_state)

    def _deliver(self, session: RecordingSession, sink: Optional[Callable[[str], None]], text: str) -> None:
        """Hand text to a target callback; a failing target is reported once and stops the session."""
        if sink is None:
            return
        try:
            sink(text)
        except Exception as e:
            logger.exception("[SESSION] transcript target failed: %r", e)
            if not session.target_failed:
                session.target_failed = True
                session.accepting_audio = False
                self._report(TranscriptTargetError(f"Could not write transcript: {e}"))

    def _dispatch_final(self, text: str) -> None:
        session = self._session
        if session is not None:
            self._deliver(session, session.target.on_final_text, text)

    def _dispatch_partial(self, text: str) -> None:
        session = self._session
        if session is not None:
            self._deliver(session, session.target.on_partial_text, text)

    def _dispatch_preview(self, preview: str) -> None:
        session = self._session
        if session is not None:
            self._deliver(session, session.target.on_preview_text, preview)
        self.preview_listeners.publish(preview, self.recording_state)
        self._status(preview or LISTENING_PLACEHOLDER)

    def _handle_transcript_error(self, message: str) -> None:
        self._status(STATUS_ERROR.format(message))
        self._notice(STATUS_ERROR.format(message))

    def _handle_fatal_error(self, ev: TranscriptError) -> None:
        session = self._session
        if session is None:
            return
        # no audio from here on; the pump stops the session right after this event
        session.fatal = True
        session.accepting_audio = False
        self._report(FatalAuthError(ev.message), notice=False)

    async def _load_vocabulary_hints(self) -> List[str]:
        if self._get_vocabulary_hints is None:
            return []
        try:
            return list(await self._get_vocabulary_hints())
        except Exception as e:
            # hints are best effort
            logger.warning("[SESSION] vocabulary hints unavailable: %r", e)
            return []

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("[SESSION] %s -> %s", self._state.value, state.value)
        self._state = state
        self.recording_listeners.publish(self.recording_state)

    def _status(self, text: str) -> None:
        self.status_listeners.publish(text)

    def _notice(self, text: str) -> None:
        logger.info("[SESSION] notice: %s", text)
        if self._on_notice is not None:
            self._on_notice(text)

    def _report(self, error: ScribeError, *, notice: bool = True) -> None:
        logger.warning("[SESSION] %s: %s", type(error).__name__, error)
        self.error_listeners.publish(error)
        if notice:
            self._notice(str(error))
