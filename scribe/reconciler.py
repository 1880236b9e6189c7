"""
Transcript Reconciler: turns a stream of provider events into committed text.

Providers send many partial updates per turn and (usually) one final update
when the turn ends. The reconciler keeps three pieces of state:

    finalized_text            all committed turns, each followed by one space
    current_partial_text      latest non-final text of the turn in progress
    pending_unformatted_text  latest end-of-turn partial that is not formatted yet

and drives three sinks:

    on_final_text(text)    called exactly once per committed turn, in order
    on_partial_text(text)  the in-progress turn ("" once it is committed)
    on_preview_text(text)  finalized + in-progress text, trimmed

Some providers end a turn with an unformatted partial and then never send
the formatted final (for example because the session was stopped). Those
words are remembered and committed by ``flush_pending()`` when the session
terminates or is stopped, so speech right before a stop is not lost.

``finalized_text`` only ever grows between two ``reset()`` calls, so sinks
can append committed text without re-reading earlier output.
"""
from __future__ import annotations

from logging import getLogger
from typing import Callable, Optional

from scribe.stt_provider import (
    SessionBegin,
    SessionTerminated,
    TranscriptError,
    TranscriptEvent,
    TranscriptUpdate,
)

logger = getLogger(__name__)


TextCallback = Callable[[str], None]
FatalErrorPredicate = Callable[[TranscriptError], bool]

NOT_AUTHORIZED_MARKER = "not authorized"
# Close codes the provider uses for rejected/revoked credentials.
AUTH_ERROR_CODES = frozenset({1008, 4001})


def is_auth_error(error: TranscriptError) -> bool:
    """Default fatal-error predicate: authorization failures cannot self-recover."""
    if error.code is not None and error.code in AUTH_ERROR_CODES:
        return True
    return NOT_AUTHORIZED_MARKER in error.message.lower()


def _noop(_: str) -> None:
    pass


class TranscriptReconciler:
    """
    Owns the authoritative transcript of one live session.

    All handlers are synchronous and must be called in event arrival order.
    """

    def __init__(
            self,
            on_final_text: TextCallback,
            *,
            on_partial_text: Optional[TextCallback] = None,
            on_preview_text: Optional[TextCallback] = None,
            on_error: Optional[TextCallback] = None,
            on_fatal_error: Optional[Callable[[TranscriptError], None]] = None,
            is_fatal_error: FatalErrorPredicate = is_auth_error,
    ) -> None:
        self._on_final_text = on_final_text
        self._on_partial_text = on_partial_text or _noop
        self._on_preview_text = on_preview_text or _noop
        self._on_error = on_error or _noop
        self._on_fatal_error = on_fatal_error
        self._is_fatal_error = is_fatal_error

        self._finalized = ""
        self._current = ""
        self._pending_unformatted = ""
        self._commits = 0

    @property
    def finalized_text(self) -> str:
        return self._finalized

    @property
    def current_partial_text(self) -> str:
        return self._current

    @property
    def pending_unformatted_text(self) -> str:
        return self._pending_unformatted

    @property
    def commit_count(self) -> int:
        return self._commits

    @property
    def preview_text(self) -> str:
        return (self._finalized + self._current).strip()

    def reset(self) -> None:
        """Forget everything; called at the start of each session."""
        self._finalized = ""
        self._current = ""
        self._pending_unformatted = ""
        self._commits = 0

    def handle_event(self, ev: TranscriptEvent) -> None:
        if isinstance(ev, TranscriptUpdate):
            self._handle_update(ev)
        elif isinstance(ev, SessionTerminated):
            logger.debug("[RECONCILER] session terminated, flushing pending text")
            self.flush_pending()
        elif isinstance(ev, TranscriptError):
            self._handle_error(ev)
        elif isinstance(ev, SessionBegin):
            logger.debug("[RECONCILER] session %s began", ev.session_id)
        else:
            logger.warning("[RECONCILER] ignoring unknown event %r", ev)

    def _handle_update(self, ev: TranscriptUpdate) -> None:
        if ev.is_final:
            self._commit(ev.text.strip(), ev.text)
        else:
            self._current = ev.text
            if ev.end_of_turn and not ev.formatted:
                self._pending_unformatted = ev.text
            self._on_partial_text(ev.text)
        self._on_preview_text(self.preview_text)

    def _handle_error(self, ev: TranscriptError) -> None:
        logger.warning("[RECONCILER] transcription error: %s", ev.message)
        self._on_error(ev.message)
        if self._is_fatal_error(ev):
            logger.error("[RECONCILER] fatal error, session must stop: %s", ev.message)
            if self._on_fatal_error is not None:
                self._on_fatal_error(ev)

    def _commit(self, trimmed: str, raw: str) -> None:
        self._finalized += trimmed + " "
        self._current = ""
        self._pending_unformatted = ""
        self._commits += 1
        # sinks get the raw text, trimming is their concern
        self._on_final_text(raw)
        self._on_partial_text("")

    def flush_pending(self) -> Optional[str]:
        """
        Commit the unformatted tail (or the current partial) if there is one.

        Returns the committed text, or None if there was nothing to flush.
        A second call right after the first is a no-op.
        """
        fallback = (self._pending_unformatted or self._current or "").strip()
        if not fallback:
            self._current = ""
            self._pending_unformatted = ""
            return None
        logger.info("[RECONCILER] flushing uncommitted tail: %s", fallback[:50])
        self._commit(fallback, fallback)
        self._on_preview_text(self.preview_text)
        return fallback
