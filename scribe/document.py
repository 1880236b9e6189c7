"""
In-memory text document with a cursor, used as the commit sink of ad-hoc sessions.

Committed turns are inserted at the cursor and the cursor moves past them,
so consecutive turns append naturally. Ad-hoc sessions are framed by
recording start/stop markers.
"""
from __future__ import annotations

from datetime import datetime
from logging import getLogger
from pathlib import Path
from typing import Callable, Optional, Tuple

from scribe.markers import build_recording_start_marker, build_recording_stop_marker
from scribe.session import RecordingSessionController, RecordingState, SessionState, TranscriptTarget

logger = getLogger(__name__)


class TranscriptDocument:

    def __init__(self, text: str = "", cursor: Optional[int] = None, *,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self._text = text
        self._cursor = len(text) if cursor is None else max(0, min(cursor, len(text)))
        self._clock = clock
        self._recording_started_at: Optional[datetime] = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def offset(self) -> int:
        return self._cursor

    @property
    def cursor(self) -> Tuple[int, int]:
        """(line, column) of the cursor, both zero based."""
        before = self._text[: self._cursor]
        line = before.count("\n")
        return line, len(before) - (before.rfind("\n") + 1)

    def _at_line_start(self) -> bool:
        return self._cursor == 0 or self._text[self._cursor - 1] == "\n"

    def _insert(self, insertion: str) -> None:
        self._text = self._text[: self._cursor] + insertion + self._text[self._cursor:]
        self._cursor += len(insertion)

    def insert_final_text(self, text: str) -> None:
        out = text.strip()
        if not out:
            return
        prefix = "" if self._at_line_start() else " "
        self._insert(prefix + out + " ")

    def insert_marker(self, marker: str) -> None:
        prefix = "" if self._at_line_start() else "\n\n"
        self._insert(f"{prefix}{marker}\n\n")

    def as_target(self) -> TranscriptTarget:
        return TranscriptTarget(on_final_text=self.insert_final_text)

    def attach(self, controller: RecordingSessionController, *, timestamps: bool = True) -> Callable[[], None]:
        """Frame ad-hoc sessions of `controller` with start/stop markers. Returns the unsubscribe handle."""
        def _on_change(state: RecordingState) -> None:
            if state.owner_id is not None:
                return
            if state.running:
                self._handle_recording_start(timestamps)
            elif state.state is SessionState.IDLE:
                self._handle_recording_stop(timestamps)
        return controller.on_recording_change(_on_change)

    def _handle_recording_start(self, timestamps: bool) -> None:
        if self._recording_started_at is not None:
            return
        self._recording_started_at = self._clock()
        if timestamps:
            self.insert_marker(build_recording_start_marker(self._recording_started_at))

    def _handle_recording_stop(self, timestamps: bool) -> None:
        if self._recording_started_at is None:
            return
        started_at = self._recording_started_at
        self._recording_started_at = None
        if timestamps:
            self.insert_marker(build_recording_stop_marker(self._clock(), started_at))

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self._text, encoding="utf-8")
        logger.info("Transcript written to %s", path)
        return path
