"""
STT Channel Protocol: the interface every real-time transcription channel implements.

A channel owns one bidirectional connection to a streaming transcription
provider and translates the provider's wire messages into the small event
vocabulary defined here. The protocol uses structural typing
(typing.Protocol), so channels do not need to inherit from it.

Lifecycle
---------
1. **Construction** — instantiate with a provider-specific frozen dataclass
   config (API key, sample rate, turn tuning, vocabulary hints). No network
   calls happen here.

2. **connect()** — opens the connection. Raises ``SttConnectionError`` when
   authentication or network setup fails. Audio must not be sent before it
   returns. The channel can also be used as an async context manager, which
   calls ``connect()`` on enter and ``terminate()`` on exit.

3. **Streaming** — ``send_audio(chunk)`` is fire-and-forget: when the channel
   is not open the chunk is dropped (no queuing, stale audio is worthless).
   ``events()`` yields ``TranscriptEvent`` objects in arrival order and ends
   once the connection is gone.

4. **terminate()** — graceful close; idempotent, safe before ``connect()``.

Event vocabulary
----------------
    SessionBegin        provider accepted the session
    TranscriptUpdate    partial (is_final=False) or final text for the current turn
    SessionTerminated   the session is over (graceful or not)
    TranscriptError     provider or transport error, with an optional close code

Invariant: per session at most one update is "live" (non-final) at a time,
and a final update supersedes the previous partial text of its turn.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Union


@dataclass(frozen=True)
class SessionBegin:
    """The provider opened the session."""
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TranscriptUpdate:
    """
    A transcript update for the turn in progress.

    Attributes:
        text: The transcribed text of the whole turn so far.
        is_final: True once the turn is authoritative and will not change.
        end_of_turn: The provider detected the end of the turn.
        formatted: The text carries provider punctuation and casing.
    """
    text: str
    is_final: bool
    end_of_turn: bool = False
    formatted: bool = False


@dataclass(frozen=True)
class SessionTerminated:
    """The session ended; no more updates will arrive."""


@dataclass(frozen=True)
class TranscriptError:
    """
    An error reported by the provider or the transport.

    Attributes:
        message: Human readable error text.
        code: Structured close/error code when the provider supplied one.
    """
    message: str
    code: Optional[int] = None


TranscriptEvent = Union[SessionBegin, TranscriptUpdate, SessionTerminated, TranscriptError]


class RealtimeSttChannel(Protocol):
    """
    Structural protocol for streaming transcription channels.

    See the module docstring for lifecycle details.
    """
    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...
    async def send_audio(self, pcm_chunk: bytes) -> None: ...
    async def terminate(self) -> None: ...

    def events(self) -> AsyncIterator[TranscriptEvent]: ...
