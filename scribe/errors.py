"""
Errors raised and reported by the live transcription core.

None of these cross the audio-delivery boundary: a failed audio send is
dropped silently. The session controller catches them, logs them and
publishes them to its error listeners instead of raising to the caller.
"""
from __future__ import annotations

from typing import Optional


class ScribeError(Exception):
    """Base class for all live transcription errors."""


class ConfigurationError(ScribeError):
    """Missing or empty credential; no session is started."""


class SttConnectionError(ScribeError, ConnectionError):
    """The streaming channel could not be opened (auth, network, timeout)."""


class CaptureError(ScribeError):
    """The audio source failed to start after the channel connected."""


class ProtocolError(ScribeError, ValueError):
    """A malformed message arrived from the provider. Never surfaced to the user."""


class FatalAuthError(ScribeError):
    """Authorization was revoked mid-session; the session cannot recover."""


class TranscriptTargetError(ScribeError):
    """The transcript target raised while receiving text; the session is stopped."""


class SessionBusyError(ScribeError):
    """Another owner already holds the single recording session."""

    def __init__(self, active_owner_id: Optional[str], requested_owner_id: Optional[str]) -> None:
        self.active_owner_id = active_owner_id
        self.requested_owner_id = requested_owner_id
        if active_owner_id is None:
            msg = "Live transcription is already running."
        else:
            msg = f"Another block is recording ({active_owner_id})."
        super().__init__(msg)
