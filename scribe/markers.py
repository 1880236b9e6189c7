from __future__ import annotations

from datetime import datetime
from typing import Optional


def format_timestamp(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_duration(seconds: float) -> str:
    """M:SS below an hour, H:MM:SS above. Negative durations count as zero."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def build_recording_start_marker(dt: datetime) -> str:
    return f"--- Recording started {format_timestamp(dt)} ---"


def build_recording_stop_marker(dt: datetime, started_at: Optional[datetime] = None) -> str:
    if started_at is None:
        return f"--- Recording stopped {format_timestamp(dt)} ---"
    duration = format_duration((dt - started_at).total_seconds())
    return f"--- Recording stopped {format_timestamp(dt)} (duration {duration}) ---"
