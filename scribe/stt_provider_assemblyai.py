from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from json import loads, dumps, JSONDecodeError
from logging import getLogger
from typing import AsyncIterator, Callable, Iterable, Optional, Tuple, Union
from urllib.parse import urlencode

from websockets import connect, ConnectionClosed
from websockets.exceptions import InvalidHandshake

from config import (
    ASSEMBLYAI_CONNECT_TIMEOUT_S,
    ASSEMBLYAI_STT_REALTIME_URL,
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    STT_END_OF_TURN_CONFIDENCE_THRESHOLD,
    STT_FORMAT_TURNS,
    STT_MAX_KEYTERM_LENGTH,
    STT_MAX_KEYTERMS,
    STT_MAX_TURN_SILENCE_MS,
    STT_MIN_END_OF_TURN_SILENCE_MS,
)
from scribe.errors import ConfigurationError, ProtocolError, SttConnectionError
from scribe.stt_provider import (
    SessionBegin,
    SessionTerminated,
    TranscriptError,
    TranscriptEvent,
    TranscriptUpdate,
)


logger = getLogger(__name__)


# AssemblyAI message types
STT_MSG_BEGIN = "Begin"
STT_MSG_TURN = "Turn"
STT_MSG_TERMINATION = "Termination"
STT_MSG_TERMINATE = "Terminate"  # client -> server


class AudioEncoding(str, Enum):
    PCM_S16LE = "pcm_s16le"
    PCM_MULAW = "pcm_mulaw"


def cap_keyterms(terms: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Trim, drop empty or over-long terms and keep at most STT_MAX_KEYTERMS of them."""
    if not terms:
        return ()
    out = []
    for term in terms:
        term = (term or "").strip()
        if not term or len(term) > STT_MAX_KEYTERM_LENGTH:
            continue
        out.append(term)
        if len(out) >= STT_MAX_KEYTERMS:
            break
    return tuple(out)


@dataclass(frozen=True)
class AssemblyAiSttConfig:
    """
    Configuration for the AssemblyAI Universal Streaming channel.

    Defaults come from config.py and can be overridden per session.
    Optional tuning values set to None are left to the provider default.
    """
    api_key: str

    base_url: str = ASSEMBLYAI_STT_REALTIME_URL
    sample_rate: int = AUDIO_SAMPLE_RATE
    encoding: str = AUDIO_ENCODING

    # Turn detection
    format_turns: bool = STT_FORMAT_TURNS
    end_of_turn_confidence_threshold: Optional[float] = STT_END_OF_TURN_CONFIDENCE_THRESHOLD
    min_end_of_turn_silence_ms: Optional[int] = STT_MIN_END_OF_TURN_SILENCE_MS
    max_turn_silence_ms: Optional[int] = STT_MAX_TURN_SILENCE_MS

    # Vocabulary hints, capped in __post_init__
    keyterms_prompt: Tuple[str, ...] = ()

    connect_timeout_s: float = ASSEMBLYAI_CONNECT_TIMEOUT_S

    def __post_init__(self) -> None:
        # validate, raises ValueError for unknown encodings
        AudioEncoding(self.encoding)
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        threshold = self.end_of_turn_confidence_threshold
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            raise ValueError(f"end_of_turn_confidence_threshold must be in [0, 1], got {threshold}")
        object.__setattr__(self, "keyterms_prompt", cap_keyterms(self.keyterms_prompt))


def parse_message(raw: Union[str, bytes], format_turns: bool) -> Optional[TranscriptEvent]:
    """
    Map one AssemblyAI wire message to a TranscriptEvent.

    Returns None for messages that carry nothing for us (binary frames, turns
    with empty text, unknown types without an error text).

    A turn is final only once it ended and is either formatted, or the caller
    opted out of waiting for formatting.

    Raises:
        ProtocolError: the message is not a JSON object.
    """
    if isinstance(raw, (bytes, bytearray)):
        return None
    if not raw:
        return None
    try:
        msg = loads(raw)
    except JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON from AssemblyAI: {e}") from e
    if not isinstance(msg, dict):
        raise ProtocolError(f"Unexpected AssemblyAI message: {raw[:100]!r}")

    msg_type = msg.get("type")

    if msg_type == STT_MSG_BEGIN:
        session_id = msg.get("id")
        return SessionBegin(session_id=session_id if isinstance(session_id, str) else None)

    if msg_type == STT_MSG_TURN:
        transcript = msg.get("transcript")
        if not isinstance(transcript, str) or not transcript:
            return None
        end_of_turn = bool(msg.get("end_of_turn"))
        formatted = bool(msg.get("turn_is_formatted"))
        return TranscriptUpdate(
            text=transcript,
            is_final=end_of_turn and (formatted or not format_turns),
            end_of_turn=end_of_turn,
            formatted=formatted,
        )

    if msg_type == STT_MSG_TERMINATION:
        return SessionTerminated()

    err = msg.get("error") or msg.get("message")
    if isinstance(err, str) and err.strip():
        code = msg.get("code")
        return TranscriptError(message=err.strip(), code=code if isinstance(code, int) else None)

    return None


class AssemblyAiRealtimeChannel:
    """
    AssemblyAI Universal Streaming over WebSocket.

    Protocol:
      - Connect to wss://streaming.assemblyai.com/v3/ws with query params,
        API key in the Authorization header
      - Send raw binary PCM frames (~50 ms per message)
      - Send {"type": "Terminate"} to end the session
      - Receive JSON messages: Begin, Turn, Termination, errors
    """

    def __init__(self, cfg: AssemblyAiSttConfig, *, ws_connect: Callable = connect) -> None:
        self._cfg = cfg
        self._ws_connect = ws_connect
        self._ws = None
        self._events_q: asyncio.Queue[Optional[TranscriptEvent]] = asyncio.Queue()
        self._rx_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._terminating = False
        self._session_ended = False
        self._dropped_chunks = 0

    @property
    def config(self) -> AssemblyAiSttConfig:
        return self._cfg

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed.is_set() and not self._terminating

    def _build_url(self) -> str:
        """Build WebSocket URL with query parameters."""
        params = {
            "sample_rate": str(self._cfg.sample_rate),
            "encoding": AudioEncoding(self._cfg.encoding).value,
            "format_turns": "true" if self._cfg.format_turns else "false",
        }
        if self._cfg.end_of_turn_confidence_threshold is not None:
            params["end_of_turn_confidence_threshold"] = str(self._cfg.end_of_turn_confidence_threshold)
        if self._cfg.min_end_of_turn_silence_ms is not None:
            params["min_end_of_turn_silence_when_confident"] = str(self._cfg.min_end_of_turn_silence_ms)
        if self._cfg.max_turn_silence_ms is not None:
            params["max_turn_silence"] = str(self._cfg.max_turn_silence_ms)
        if self._cfg.keyterms_prompt:
            params["keyterms_prompt"] = dumps(list(self._cfg.keyterms_prompt))
        return f"{self._cfg.base_url}?{urlencode(params)}"

    async def connect(self) -> None:
        """
        Open the streaming session.

        Raises:
            ConfigurationError: no API key.
            SttConnectionError: handshake rejected, network failure or timeout.
        """
        api_key = (self._cfg.api_key or "").strip()
        if not api_key:
            raise ConfigurationError("Missing AssemblyAI API key.")
        if self._terminating:
            raise SttConnectionError("AssemblyAI channel was already terminated.")
        if self._ws is not None:
            return

        url = self._build_url()
        logger.debug("[STT] AssemblyAI: connecting to %s", self._cfg.base_url)
        try:
            ws = await asyncio.wait_for(
                self._ws_connect(
                    url,
                    additional_headers={"Authorization": api_key},
                    ping_interval=10,
                    ping_timeout=10,
                    close_timeout=5,
                    max_queue=64,
                ),
                timeout=self._cfg.connect_timeout_s,
            )
        except asyncio.TimeoutError:
            raise SttConnectionError(
                f"AssemblyAI WebSocket connection timed out after {self._cfg.connect_timeout_s:.0f}s") from None
        except (InvalidHandshake, OSError) as e:
            raise SttConnectionError(f"Failed to connect to AssemblyAI WebSocket: {e}") from e

        if self._terminating:
            # terminate() raced the handshake; do not leave the socket open
            await self._close_ws(ws)
            raise SttConnectionError("AssemblyAI channel was terminated while connecting.")

        self._ws = ws
        logger.info("[STT] AssemblyAI: WebSocket connected, starting receiver...")
        self._rx_task = asyncio.create_task(self._recv_loop())

    async def __aenter__(self) -> "AssemblyAiRealtimeChannel":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()

    async def send_audio(self, pcm_chunk: bytes) -> None:
        """Send a raw audio frame; dropped when the channel is not open."""
        if not self.is_connected:
            self._dropped_chunks += 1
            if self._dropped_chunks == 1 or self._dropped_chunks % 100 == 0:
                logger.debug("[STT] AssemblyAI: channel not open, dropped %d chunk(s)", self._dropped_chunks)
            return
        try:
            await self._ws.send(pcm_chunk)
        except ConnectionClosed:
            logger.warning("[STT] AssemblyAI: connection closed while sending audio")
            self._closed.set()

    async def terminate(self) -> None:
        """Ask the provider to end the session and tear the connection down. Idempotent."""
        if self._terminating:
            return
        self._terminating = True

        ws = self._ws
        if ws is not None and not self._closed.is_set():
            try:
                await ws.send(dumps({"type": STT_MSG_TERMINATE}))
            except ConnectionClosed:
                logger.debug("[STT] AssemblyAI: connection already closed, Terminate not sent")

        self._closed.set()
        rx_task = self._rx_task
        if rx_task is not None and rx_task is not asyncio.current_task():
            rx_task.cancel()
            try:
                await rx_task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await self._close_ws(ws)

        # Always terminate the events() iterator
        self._events_q.put_nowait(None)
        self._ws = None
        self._rx_task = None
        logger.info("[STT] AssemblyAI: terminated.")

    @staticmethod
    async def _close_ws(ws) -> None:
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug("[STT] AssemblyAI: close failed: %r", e)

    def events(self) -> AsyncIterator[TranscriptEvent]:
        """Async iterator yielding transcript events."""
        async def _aiter() -> AsyncIterator[TranscriptEvent]:
            while True:
                ev = await self._events_q.get()
                if ev is None:
                    break
                yield ev
        return _aiter()

    def _emit(self, ev: TranscriptEvent) -> None:
        if isinstance(ev, SessionTerminated):
            if self._session_ended:
                return
            self._session_ended = True
        self._events_q.put_nowait(ev)

    async def _recv_loop(self) -> None:
        """Background task receiving messages from the WebSocket."""
        try:
            while not self._closed.is_set():
                raw = await self._ws.recv()
                try:
                    ev = parse_message(raw, self._cfg.format_turns)
                except ProtocolError as e:
                    # parse noise must never interrupt the session
                    logger.debug("[STT] AssemblyAI: ignoring malformed message: %s", e)
                    continue
                if ev is None:
                    continue

                if isinstance(ev, SessionBegin):
                    logger.info("[STT] AssemblyAI: session started (id=%s).", ev.session_id)
                elif isinstance(ev, TranscriptError):
                    logger.error("[STT] AssemblyAI: %s", ev.message)
                elif isinstance(ev, TranscriptUpdate) and ev.is_final:
                    logger.debug("[STT] AssemblyAI: final turn: %s", ev.text[:50])
                self._emit(ev)

        except ConnectionClosed as e:
            if self._terminating:
                logger.debug("[STT] AssemblyAI: session closed by us.")
                return
            close_code = e.rcvd.code if e.rcvd else None
            close_reason = (e.rcvd.reason if e.rcvd else "") or ""
            if self._session_ended:
                logger.debug("[STT] AssemblyAI: session closed after termination (code=%s).", close_code)
            else:
                logger.warning("[STT] AssemblyAI: connection closed unexpectedly (code=%s, reason=%s)",
                               close_code, close_reason)
                if close_reason.strip():
                    self._emit(TranscriptError(message=close_reason.strip(), code=close_code))
            self._emit(SessionTerminated())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[STT] AssemblyAI receiver crashed: %r", e)
            self._emit(TranscriptError(message=f"AssemblyAI receiver crashed: {e}"))
            self._emit(SessionTerminated())
        finally:
            self._closed.set()
            self._events_q.put_nowait(None)
