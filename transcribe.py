"""
Live-transcribe a WAV file through the recording session controller.

The file is streamed with real-time pacing as if it were a microphone, the
live preview is printed while it plays, and the committed text (framed by
recording start/stop markers) is written as markdown to ``out/``.

Usage
-----
    source .venv/bin/activate
    python transcribe.py path/to/audio.wav
    python transcribe.py path/to/audio.wav --realtime-factor 0 --save-audio
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from logging import getLogger
from pathlib import Path
from typing import Callable, List, Optional

from config import OUT_PATH, VOCAB_PATH
from scribe.audio_feed import WavFileAudioSource, write_wav
from scribe.document import TranscriptDocument
from scribe.session import ChannelFactory, RecordingSessionController, SessionState, default_api_key
from scribe.stt_provider_assemblyai import AssemblyAiRealtimeChannel
from scribe.utils import setup_logging
from scribe.vocab import vocab_hint_supplier

logger = getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live-transcribe a PCM16 mono 16 kHz WAV file with AssemblyAI.")
    parser.add_argument("wav", type=Path, help="WAV file to stream")
    parser.add_argument("--out", type=Path, default=None,
                        help="Markdown output path (default: out/<name>_<timestamp>.md)")
    parser.add_argument("--realtime-factor", type=float, default=1.0,
                        help="Pacing: 1.0 = realtime, 0.5 = 2x faster, 0 = no pacing")
    parser.add_argument("--post-roll", type=float, default=2.0,
                        help="Seconds of silence appended so the last turn can end")
    parser.add_argument("--settle", type=float, default=1.5,
                        help="Seconds to wait for late final turns before stopping")
    parser.add_argument("--vocab", type=Path, default=VOCAB_PATH, help="Vocabulary hint file")
    parser.add_argument("--no-markers", action="store_true", help="Do not write recording start/stop markers")
    parser.add_argument("--save-audio", action="store_true", help="Also write the streamed audio next to the output")
    return parser


async def transcribe_file(
        args: argparse.Namespace,
        *,
        channel_factory: ChannelFactory = AssemblyAiRealtimeChannel,
        get_api_key: Callable[[], str] = default_api_key,
) -> int:
    source = WavFileAudioSource(args.wav, realtime_factor=args.realtime_factor,
                                post_roll_silence_s=args.post_roll)
    notices: List[str] = []
    controller = RecordingSessionController(
        source,
        get_api_key=get_api_key,
        channel_factory=channel_factory,
        get_vocabulary_hints=vocab_hint_supplier(args.vocab),
        on_notice=notices.append,
    )

    doc = TranscriptDocument()
    doc.attach(controller, timestamps=not args.no_markers)
    controller.on_transcript_preview(lambda text, _state: print(f"\r{text[-100:]}", end="", flush=True))

    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    out_path: Path = args.out or OUT_PATH / f"{args.wav.stem}_{ts}.md"

    idle = asyncio.Event()
    unsubscribe = controller.on_recording_change(
        lambda state: idle.set() if state.state is SessionState.IDLE else None
    )
    try:
        if not await controller.start(doc.as_target()):
            for text in notices:
                print(text, file=sys.stderr)
            return 1

        _, pending = await asyncio.wait(
            {asyncio.create_task(source.closed.wait()), asyncio.create_task(idle.wait())},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for t in pending:
            t.cancel()
        if not idle.is_set() and args.settle > 0:
            await asyncio.sleep(args.settle)
        await controller.stop()
    finally:
        unsubscribe()
    print()

    doc.save(out_path)
    if args.save_audio and controller.last_recording is not None:
        write_wav(controller.last_recording, out_path.with_suffix(".wav"))
    print(f"Transcript: {out_path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging()
    return asyncio.run(transcribe_file(args))


if __name__ == "__main__":
    sys.exit(main())
