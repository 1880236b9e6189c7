"""
Audio Feed: the capture side of a live session.

The session controller only needs two things from an audio source: PCM16
chunks delivered at a steady cadence, and a ``stop()`` that ends delivery and
hands back what was recorded. Amplitude frames (unsigned bytes centred on
128, like a browser analyser's time-domain data) are delivered alongside for
visualization.

Two sources are provided:

    WavFileAudioSource    streams a PCM16 mono WAV file with real-time pacing
    WebSocketAudioSource  forwards binary frames sent by a browser client
"""
from __future__ import annotations

import asyncio
import sys
import wave
from array import array
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect

from config import AUDIO_CHANNELS, AUDIO_CHUNK_SIZE_SAMPLES, AUDIO_SAMPLE_RATE
from scribe.errors import CaptureError

logger = getLogger(__name__)


ChunkCallback = Callable[[bytes], Awaitable[None]]
FrameCallback = Callable[[bytes], None]

SAMPLE_WIDTH_BYTES = 2
AMPLITUDE_FRAME_SIZE = 128


@dataclass(frozen=True)
class CaptureConfig:
    sample_rate: int = AUDIO_SAMPLE_RATE
    chunk_size_samples: int = AUDIO_CHUNK_SIZE_SAMPLES
    # deliver an amplitude frame every n chunks
    frame_every_chunks: int = 1

    @property
    def chunk_s(self) -> float:
        return self.chunk_size_samples / float(self.sample_rate)


@dataclass(frozen=True)
class RecordedAudio:
    pcm: bytes
    sample_rate: int
    channels: int = AUDIO_CHANNELS

    @property
    def duration_s(self) -> float:
        return len(self.pcm) / float(SAMPLE_WIDTH_BYTES * self.channels * self.sample_rate)


class CaptureHandle(Protocol):
    async def stop(self) -> RecordedAudio: ...
    async def wait_closed(self) -> None: ...


class AudioSource(Protocol):
    async def start_capture(
            self,
            config: CaptureConfig,
            on_chunk: ChunkCallback,
            on_audio_frame: Optional[FrameCallback] = None,
    ) -> CaptureHandle: ...


def make_silence_chunk(duration_s: float, sample_rate: int, sample_width_bytes: int = SAMPLE_WIDTH_BYTES) -> bytes:
    """Create a silence audio chunk of given duration."""
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)


def amplitude_frame(pcm16: bytes, size: int = AMPLITUDE_FRAME_SIZE) -> bytes:
    """Downsample little-endian PCM16 into at most `size` unsigned bytes centred on 128."""
    samples = array("h")
    samples.frombytes(pcm16[: len(pcm16) - len(pcm16) % SAMPLE_WIDTH_BYTES])
    if sys.byteorder == "big":
        samples.byteswap()
    if not samples:
        return b""
    step = max(1, len(samples) // size)
    return bytes(min(255, max(0, (s >> 8) + 128)) for s in samples[::step][:size])


class _TaskCaptureHandle:
    """Capture handle backed by one pump task that records everything it delivered."""

    def __init__(self, sample_rate: int) -> None:
        self._sample_rate = sample_rate
        self._recorded: List[bytes] = []
        self._task: Optional[asyncio.Task] = None

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task

    def _record(self, chunk: bytes) -> None:
        self._recorded.append(chunk)

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def stop(self) -> RecordedAudio:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return RecordedAudio(pcm=b"".join(self._recorded), sample_rate=self._sample_rate)


async def _deliver(
        handle: _TaskCaptureHandle,
        chunk: bytes,
        count: int,
        config: CaptureConfig,
        on_chunk: ChunkCallback,
        on_audio_frame: Optional[FrameCallback],
) -> None:
    handle._record(chunk)
    await on_chunk(chunk)
    if on_audio_frame is not None and count % max(1, config.frame_every_chunks) == 0:
        on_audio_frame(amplitude_frame(chunk))


# ---------------------------------------------------------------------------
# WAV file source
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WavFormat:
    """
    Description of wave format:
    - channels: Number of audio channels (1=mono, 2=stereo).
    - sample_width_bytes: Bytes per sample (2=16-bit).
    - sample_rate: Samples per second in Hz.
    - n_frames: Total number of audio frames in the file.
    - comptype: Compression type code ('NONE' for uncompressed PCM).
    """
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str
    compname: str


def inspect_wav(path: Path) -> WavFormat:
    path = path.resolve()
    with wave.open(str(path), "rb") as wf:
        return WavFormat(
            channels=wf.getnchannels(),
            sample_width_bytes=wf.getsampwidth(),
            sample_rate=wf.getframerate(),
            n_frames=wf.getnframes(),
            comptype=wf.getcomptype(),
            compname=wf.getcompname(),
        )


def iter_wav_pcm_chunks(
        path: Path,
        *,
        chunk_size_samples: int,
        expected_sample_rate: int,
        expected_channels: int = 1,
        expected_sample_width_bytes: int = SAMPLE_WIDTH_BYTES,
) -> Iterator[bytes]:
    """
    Yield raw PCM frames from a WAV file in fixed chunk sizes.

    Assumptions/enforced:
      - uncompressed PCM WAV (comptype == 'NONE')
      - expected sample rate / channels / sample width

    The format is validated before the first chunk is yielded.
    """
    fmt = inspect_wav(path)
    logger.debug("[AUDIO] file: %s; format: %r", str(path), fmt)

    if fmt.comptype != "NONE":
        raise ValueError(f"{path.name}: compressed WAV not supported (comptype={fmt.comptype} {fmt.compname})")
    if fmt.sample_rate != expected_sample_rate:
        raise ValueError(f"{path.name}: sample_rate={fmt.sample_rate} expected={expected_sample_rate}")
    if fmt.channels != expected_channels:
        raise ValueError(f"{path.name}: channels={fmt.channels} expected={expected_channels}")
    if fmt.sample_width_bytes != expected_sample_width_bytes:
        raise ValueError(
            f"{path.name}: sample_width_bytes={fmt.sample_width_bytes} expected={expected_sample_width_bytes}"
        )
    if chunk_size_samples <= 0:
        raise ValueError("chunk_size_samples must be positive")

    def _chunks() -> Iterator[bytes]:
        with wave.open(str(path), "rb") as wf:
            while True:
                data = wf.readframes(chunk_size_samples)
                if not data:
                    break
                yield data

    return _chunks()


class WavFileAudioSource:
    """
    Streams a WAV file as if it were a microphone.

    realtime_factor:
      - 1.0 = realtime
      - 0.5 = 2x faster
      - 0.0 = no pacing sleep (still chunked)

    post_roll_silence_s of silence is appended so the provider's turn
    detection can end the last turn. `closed` is set when streaming ends.
    """

    def __init__(self, path: Path, *, realtime_factor: float = 1.0, post_roll_silence_s: float = 0.0) -> None:
        self._path = Path(path)
        self._realtime_factor = realtime_factor
        self._post_roll_silence_s = post_roll_silence_s
        self.closed = asyncio.Event()

    async def start_capture(
            self,
            config: CaptureConfig,
            on_chunk: ChunkCallback,
            on_audio_frame: Optional[FrameCallback] = None,
    ) -> _TaskCaptureHandle:
        if not self._path.is_file():
            raise CaptureError(f"WAV file not found: {self._path}")
        try:
            chunks = iter_wav_pcm_chunks(
                self._path,
                chunk_size_samples=config.chunk_size_samples,
                expected_sample_rate=config.sample_rate,
            )
        except (ValueError, wave.Error, EOFError) as e:
            raise CaptureError(f"Cannot stream {self._path.name}: {e}") from e

        self.closed.clear()
        handle = _TaskCaptureHandle(config.sample_rate)
        handle._attach(asyncio.create_task(self._pump(handle, chunks, config, on_chunk, on_audio_frame)))
        logger.info("[AUDIO] streaming %s", self._path.name)
        return handle

    async def _pump(
            self,
            handle: _TaskCaptureHandle,
            chunks: Iterator[bytes],
            config: CaptureConfig,
            on_chunk: ChunkCallback,
            on_audio_frame: Optional[FrameCallback],
    ) -> None:
        pause = config.chunk_s * self._realtime_factor
        cnt = 0
        try:
            for chunk in chunks:
                cnt += 1
                await _deliver(handle, chunk, cnt, config, on_chunk, on_audio_frame)
                if cnt % 20 == 0:
                    logger.debug("[AUDIO] sent chunk %d.", cnt)
                if pause > 0:
                    await asyncio.sleep(pause)

            # allow the provider to end the last turn by sending silence
            total = 0.0
            silence = make_silence_chunk(config.chunk_s, config.sample_rate)
            while total < self._post_roll_silence_s:
                cnt += 1
                await _deliver(handle, silence, cnt, config, on_chunk, on_audio_frame)
                if pause > 0:
                    await asyncio.sleep(pause)
                total += config.chunk_s

            logger.info("[AUDIO] wav streaming done, sent %d chunks.", cnt)
        finally:
            self.closed.set()


# ---------------------------------------------------------------------------
# Browser WebSocket source
# ---------------------------------------------------------------------------

class WebSocketAudioSource:
    """
    Forwards binary microphone frames sent by a client over a FastAPI WebSocket.

    Text messages are passed to on_text (control messages). Capture ends when
    the client disconnects; `closed` is set once no more audio will arrive.
    """

    def __init__(self, ws: WebSocket, *, on_text: Optional[Callable[[str], None]] = None) -> None:
        self._ws = ws
        self._on_text = on_text
        self.closed = asyncio.Event()

    async def start_capture(
            self,
            config: CaptureConfig,
            on_chunk: ChunkCallback,
            on_audio_frame: Optional[FrameCallback] = None,
    ) -> _TaskCaptureHandle:
        handle = _TaskCaptureHandle(config.sample_rate)
        handle._attach(asyncio.create_task(self._pump(handle, config, on_chunk, on_audio_frame)))
        return handle

    async def _pump(
            self,
            handle: _TaskCaptureHandle,
            config: CaptureConfig,
            on_chunk: ChunkCallback,
            on_audio_frame: Optional[FrameCallback],
    ) -> None:
        cnt = 0
        try:
            logger.info("[WS] client audio capture started.")
            while True:
                msg = await self._ws.receive()
                if msg.get("type") == "websocket.disconnect":
                    logger.info("[WS] client disconnected.")
                    break

                # mic
                if msg.get("bytes") is not None:
                    cnt += 1
                    await _deliver(handle, msg["bytes"], cnt, config, on_chunk, on_audio_frame)

                # text (control messages)
                elif msg.get("text") is not None:
                    logger.info("[WS] Text from client: %s", msg["text"])
                    if self._on_text is not None:
                        self._on_text(msg["text"])

        except WebSocketDisconnect:
            logger.info("[WS] client disconnected.")

        except RuntimeError as e:
            if 'Cannot call "receive" once a disconnect message has been received.' in str(e):
                logger.info("[WS] receive(): client disconnected.")
            else:
                raise

        finally:
            self.closed.set()
            logger.info("[WS] audio capture finished after %d chunks.", cnt)


# ---------------------------------------------------------------------------
# Recordings
# ---------------------------------------------------------------------------

def write_wav(audio: RecordedAudio, path: Path) -> Path:
    """Write recorded PCM16 audio to a WAV file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(audio.channels)
        wf.setsampwidth(SAMPLE_WIDTH_BYTES)
        wf.setframerate(audio.sample_rate)
        wf.writeframes(audio.pcm)
    logger.info("[AUDIO] recording written to %s (%.1f s)", path, audio.duration_s)
    return path
