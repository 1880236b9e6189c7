"""
Tests for the recording session controller.

Drives the controller with a fake channel and a fake audio source, so the
whole start/stream/stop cycle runs in memory.

    pytest tests/test_session.py -v
"""
from __future__ import annotations

import asyncio
import unittest
from typing import List, Optional, Tuple

from config import AUDIO_CHUNK_SIZE_SAMPLES, AUDIO_SAMPLE_RATE, LISTENING_PLACEHOLDER
from fakes import FakeAudioSource, FakeChannelFactory, settle
from scribe.errors import (
    CaptureError,
    ConfigurationError,
    FatalAuthError,
    ScribeError,
    SessionBusyError,
    SttConnectionError,
    TranscriptTargetError,
)
from scribe.session import (
    STATUS_CONNECT_FAILED,
    STATUS_ERROR,
    STATUS_STARTING,
    Listeners,
    RecordingSessionController,
    RecordingState,
    SessionState,
    StreamingSettings,
    TranscriptTarget,
)
from scribe.stt_provider import SessionTerminated, TranscriptError, TranscriptUpdate


def _partial(text: str, end_of_turn: bool = False) -> TranscriptUpdate:
    return TranscriptUpdate(text=text, is_final=False, end_of_turn=end_of_turn)


def _final(text: str) -> TranscriptUpdate:
    return TranscriptUpdate(text=text, is_final=True, end_of_turn=True, formatted=True)


class _BrokenFactory(FakeChannelFactory):
    """channel_factory that fails before any channel exists."""

    def __call__(self, cfg):
        raise RuntimeError("factory exploded")


class _Sink:
    """TranscriptTarget that remembers everything it was given."""

    def __init__(self) -> None:
        self.finals: List[str] = []
        self.partials: List[str] = []
        self.previews: List[str] = []

    def target(self) -> TranscriptTarget:
        return TranscriptTarget(
            on_final_text=self.finals.append,
            on_partial_text=self.partials.append,
            on_preview_text=self.previews.append,
        )


class TestRecordingSessionController(unittest.IsolatedAsyncioTestCase):

    def _controller(
            self,
            *,
            factory: Optional[FakeChannelFactory] = None,
            source: Optional[FakeAudioSource] = None,
            api_key: str = "test-key",
            **kwargs,
    ) -> RecordingSessionController:
        self.factory = factory or FakeChannelFactory()
        self.source = source or FakeAudioSource()
        self.notices: List[str] = []
        self.errors: List[ScribeError] = []
        self.states: List[RecordingState] = []
        self.statuses: List[str] = []
        ctrl = RecordingSessionController(
            self.source,
            get_api_key=lambda: api_key,
            channel_factory=self.factory,
            on_notice=self.notices.append,
            **kwargs,
        )
        ctrl.on_error(self.errors.append)
        ctrl.on_recording_change(self.states.append)
        ctrl.on_status_text(self.statuses.append)
        self.ctrl = ctrl
        return ctrl

    async def asyncTearDown(self) -> None:
        ctrl = getattr(self, "ctrl", None)
        if ctrl is not None:
            await ctrl.stop()

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def test_start(self) -> None:
        ctrl = self._controller()
        sink = _Sink()

        self.assertTrue(await ctrl.start(sink.target(), owner_id="block-1"))

        self.assertEqual(ctrl.state, SessionState.ACTIVE)
        self.assertEqual(ctrl.owner_id, "block-1")
        self.assertTrue(ctrl.is_running)
        self.assertEqual([s.state for s in self.states], [SessionState.CONNECTING, SessionState.ACTIVE])
        self.assertTrue(all(s.running for s in self.states))
        self.assertEqual(self.statuses, [STATUS_STARTING, LISTENING_PLACEHOLDER])
        self.assertEqual(len(self.factory.channels), 1)
        self.assertTrue(self.factory.last.is_connected)
        self.assertEqual(self.source.config.sample_rate, AUDIO_SAMPLE_RATE)
        self.assertEqual(self.notices, ["Live transcription started."])

    async def test_start_twice_is_noop(self) -> None:
        ctrl = self._controller()

        results = await asyncio.gather(ctrl.start(), ctrl.start())

        self.assertEqual(results, [True, True])
        self.assertEqual(len(self.factory.channels), 1)
        self.assertEqual(len(self.source.handles), 1)
        self.assertEqual(self.errors, [])

    async def test_busy_owner_is_rejected(self) -> None:
        ctrl = self._controller()
        await ctrl.start(owner_id="a")
        channel = self.factory.last

        self.assertFalse(await ctrl.start(owner_id="b"))

        self.assertEqual(ctrl.state, SessionState.ACTIVE)
        self.assertEqual(ctrl.owner_id, "a")
        self.assertEqual(len(self.factory.channels), 1)
        self.assertEqual(channel.terminate_calls, 0)
        self.assertEqual(len(self.errors), 1)
        busy = self.errors[0]
        self.assertIsInstance(busy, SessionBusyError)
        self.assertEqual((busy.active_owner_id, busy.requested_owner_id), ("a", "b"))
        self.assertEqual(str(busy), "Another block is recording (a).")

    async def test_block_is_rejected_while_ad_hoc_session_runs(self) -> None:
        ctrl = self._controller()
        await ctrl.start()

        self.assertFalse(await ctrl.start(owner_id="block-1"))
        self.assertEqual(str(self.errors[0]), "Live transcription is already running.")
        self.assertIsNone(ctrl.owner_id)

    async def test_missing_api_key(self) -> None:
        ctrl = self._controller(api_key="  ")

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.factory.channels, [])
        self.assertIsInstance(self.errors[0], ConfigurationError)
        self.assertEqual(self.states, [])

    async def test_invalid_settings(self) -> None:
        ctrl = self._controller(get_settings=lambda: StreamingSettings(encoding="flac"))

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.factory.channels, [])
        self.assertIsInstance(self.errors[0], ConfigurationError)

    async def test_non_positive_settings_fall_back_to_defaults(self) -> None:
        ctrl = self._controller(get_settings=lambda: StreamingSettings(sample_rate=0, chunk_size_samples=-5))

        self.assertTrue(await ctrl.start())

        self.assertEqual(self.source.config.sample_rate, AUDIO_SAMPLE_RATE)
        self.assertEqual(self.source.config.chunk_size_samples, AUDIO_CHUNK_SIZE_SAMPLES)
        self.assertEqual(self.factory.last.cfg.sample_rate, AUDIO_SAMPLE_RATE)

    async def test_connect_failure(self) -> None:
        factory = FakeChannelFactory(connect_error=SttConnectionError("handshake rejected"))
        ctrl = self._controller(factory=factory)

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(factory.last.terminate_calls, 1)
        self.assertEqual(self.source.handles, [])
        self.assertIn(STATUS_CONNECT_FAILED, self.statuses)
        self.assertIsInstance(self.errors[0], SttConnectionError)
        self.assertEqual([s.state for s in self.states], [SessionState.CONNECTING, SessionState.IDLE])

    async def test_unexpected_connect_exception_releases_session(self) -> None:
        factory = FakeChannelFactory(connect_error=RuntimeError("invalid uri"))
        ctrl = self._controller(factory=factory)

        self.assertFalse(await ctrl.start(owner_id="a"))

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertIsNone(ctrl.owner_id)
        self.assertEqual(factory.last.terminate_calls, 1)
        self.assertIsInstance(self.errors[0], SttConnectionError)
        self.assertIn("invalid uri", str(self.errors[0]))

        # a different owner is not told the controller is busy
        self.assertFalse(await ctrl.start(owner_id="b"))
        self.assertIsInstance(self.errors[1], SttConnectionError)
        self.assertEqual(len(factory.channels), 2)

    async def test_failing_channel_factory_releases_session(self) -> None:
        ctrl = self._controller(factory=_BrokenFactory())

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.source.handles, [])
        self.assertIsInstance(self.errors[0], SttConnectionError)
        self.assertIn(STATUS_CONNECT_FAILED, self.statuses)
        self.assertEqual([s.state for s in self.states], [SessionState.CONNECTING, SessionState.IDLE])

    async def test_capture_failure_stops_session(self) -> None:
        ctrl = self._controller(source=FakeAudioSource(error=CaptureError("no microphone")))

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.factory.last.terminate_calls, 1)
        self.assertIsInstance(self.errors[0], CaptureError)
        self.assertEqual(str(self.errors[0]), "no microphone")

    async def test_capture_os_error_is_reported_as_capture_error(self) -> None:
        ctrl = self._controller(source=FakeAudioSource(error=PermissionError("denied")))

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertIsInstance(self.errors[0], CaptureError)

    async def test_stop_while_connecting(self) -> None:
        gate = asyncio.Event()
        factory = FakeChannelFactory(connect_gate=gate)
        ctrl = self._controller(factory=factory)

        starting = asyncio.create_task(ctrl.start())
        await settle()
        self.assertEqual(ctrl.state, SessionState.CONNECTING)

        await ctrl.stop()
        self.assertEqual(ctrl.state, SessionState.IDLE)

        gate.set()
        self.assertFalse(await starting)
        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertGreaterEqual(factory.last.terminate_calls, 1)
        self.assertEqual(self.source.handles, [])
        self.assertEqual(self.errors, [])

    async def test_vocabulary_hints(self) -> None:
        async def hints() -> List[str]:
            return ["Kubernetes", "gRPC"]

        ctrl = self._controller(get_vocabulary_hints=hints)
        await ctrl.start()

        self.assertEqual(self.factory.last.cfg.keyterms_prompt, ("Kubernetes", "gRPC"))

    async def test_failing_vocabulary_hints_are_ignored(self) -> None:
        async def hints() -> List[str]:
            raise OSError("VOCAB.md unreadable")

        ctrl = self._controller(get_vocabulary_hints=hints)

        self.assertTrue(await ctrl.start())
        self.assertEqual(self.factory.last.cfg.keyterms_prompt, ())

    async def test_audio_source_per_start(self) -> None:
        ctrl = self._controller()
        other = FakeAudioSource()

        self.assertTrue(await ctrl.start(audio_source=other))

        self.assertEqual(len(other.handles), 1)
        self.assertEqual(self.source.handles, [])

    async def test_no_audio_source(self) -> None:
        ctrl = RecordingSessionController(get_api_key=lambda: "k", channel_factory=FakeChannelFactory())
        errors: List[ScribeError] = []
        ctrl.on_error(errors.append)

        self.assertFalse(await ctrl.start())

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertIsInstance(errors[0], CaptureError)

    # ------------------------------------------------------------------
    # streaming
    # ------------------------------------------------------------------

    async def test_audio_reaches_channel(self) -> None:
        ctrl = self._controller()
        await ctrl.start()

        await self.source.feed(b"\x01\x02")
        await self.source.feed(b"\x03\x04")

        self.assertEqual(self.factory.last.sent, [b"\x01\x02", b"\x03\x04"])

    async def test_transcript_reaches_target(self) -> None:
        ctrl = self._controller()
        previews: List[Tuple[str, RecordingState]] = []
        ctrl.on_transcript_preview(lambda text, state: previews.append((text, state)))
        sink = _Sink()
        await ctrl.start(sink.target(), owner_id="block-1")

        self.factory.last.push(_partial("hello"))
        self.factory.last.push(_final("hello world"))
        await settle()

        self.assertEqual(sink.finals, ["hello world"])
        self.assertEqual(sink.partials, ["hello", ""])
        self.assertEqual(sink.previews, ["hello", "hello world"])
        self.assertEqual([text for text, _ in previews], ["hello", "hello world"])
        self.assertEqual(previews[0][1].owner_id, "block-1")
        self.assertEqual(self.statuses[-1], "hello world")

    async def test_audio_frames(self) -> None:
        ctrl = self._controller()
        frames: List[Optional[bytes]] = []
        ctrl.on_audio_frame(lambda data, _state: frames.append(data))
        await ctrl.start()

        self.source.frame(b"\x80\x81")
        await ctrl.stop()

        self.assertEqual(frames, [b"\x80\x81", None])

    async def test_auth_error_stops_session(self) -> None:
        ctrl = self._controller()
        sink = _Sink()
        await ctrl.start(sink.target())
        channel = self.factory.last
        handle = self.source.handles[-1]
        await self.source.feed(b"before")

        channel.push(TranscriptError(message="Not Authorized: token expired"))
        await settle()

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(channel.terminate_calls, 1)
        self.assertEqual(handle.stop_calls, 1)
        self.assertTrue(any(isinstance(e, FatalAuthError) for e in self.errors))

        await self.source.feed(b"after")
        self.assertEqual(channel.sent, [b"before"])

    async def test_failing_target_stops_session(self) -> None:
        def _write_fails(text: str) -> None:
            raise RuntimeError("editor write failed")

        ctrl = self._controller()
        await ctrl.start(TranscriptTarget(on_final_text=_write_fails))
        channel = self.factory.last
        handle = self.source.handles[-1]

        channel.push(_final("Hi."))
        channel.push(TranscriptError(message="Not authorized"))
        await settle()

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(channel.terminate_calls, 1)
        self.assertEqual(handle.stop_calls, 1)
        self.assertEqual(ctrl.reconciler.finalized_text, "Hi. ")
        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], TranscriptTargetError)
        self.assertIn("editor write failed", str(self.errors[0]))

        await self.source.feed(b"after")
        self.assertEqual(channel.sent, [])

    async def test_failing_partial_target_is_reported_once(self) -> None:
        finals: List[str] = []

        def _partial_fails(text: str) -> None:
            raise ValueError("no cursor")

        ctrl = self._controller()
        await ctrl.start(TranscriptTarget(on_final_text=finals.append, on_partial_text=_partial_fails))

        self.factory.last.push(_partial("hel"))
        await settle()

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual([type(e) for e in self.errors], [TranscriptTargetError])
        # the stop flush still commits the tail to the final sink
        self.assertEqual(finals, ["hel"])

    async def test_auth_close_code_stops_session(self) -> None:
        ctrl = self._controller()
        await ctrl.start()

        self.factory.last.push(TranscriptError(message="policy violation", code=1008))
        await settle()

        self.assertEqual(ctrl.state, SessionState.IDLE)

    async def test_non_fatal_error_keeps_session(self) -> None:
        ctrl = self._controller()
        await ctrl.start()

        self.factory.last.push(TranscriptError(message="rate limited"))
        await settle()

        self.assertEqual(ctrl.state, SessionState.ACTIVE)
        self.assertIn(STATUS_ERROR.format("rate limited"), self.statuses)
        self.assertIn("Transcription error: rate limited", self.notices)

    async def test_provider_termination_flushes_and_stops(self) -> None:
        ctrl = self._controller()
        sink = _Sink()
        await ctrl.start(sink.target())

        self.factory.last.push(_partial("testing", end_of_turn=True))
        self.factory.last.push(SessionTerminated())
        await settle()

        self.assertEqual(sink.finals, ["testing"])
        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(ctrl.reconciler.finalized_text, "testing ")

        await ctrl.stop()
        self.assertEqual(sink.finals, ["testing"])

    async def test_channel_gone_without_termination(self) -> None:
        ctrl = self._controller()
        await ctrl.start()

        self.factory.last.close_stream()
        await settle()

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.source.handles[-1].stop_calls, 1)

    # ------------------------------------------------------------------
    # stop / toggle
    # ------------------------------------------------------------------

    async def test_stop_flushes_pending_text(self) -> None:
        ctrl = self._controller()
        sink = _Sink()
        await ctrl.start(sink.target())

        self.factory.last.push(_partial("last words", end_of_turn=True))
        await settle()
        await ctrl.stop()

        self.assertEqual(sink.finals, ["last words"])
        self.assertEqual(sink.partials[-1], "")
        self.assertEqual(sink.previews[-1], "")
        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.factory.last.terminate_calls, 1)
        self.assertEqual(self.source.handles[-1].stop_calls, 1)
        self.assertEqual(self.statuses[-1], "")
        self.assertEqual(self.notices[-1], "Live transcription stopped.")
        self.assertEqual([s.state for s in self.states][-2:], [SessionState.STOPPING, SessionState.IDLE])

    async def test_events_after_stop_are_ignored(self) -> None:
        ctrl = self._controller()
        sink = _Sink()
        await ctrl.start(sink.target())
        channel = self.factory.last

        channel.push(_partial("tail", end_of_turn=True))
        await settle()
        await ctrl.stop()
        channel.push(_final("Tail."))
        await settle()

        self.assertEqual(sink.finals, ["tail"])

    async def test_stop_when_idle(self) -> None:
        ctrl = self._controller()
        await ctrl.stop()

        self.assertEqual(ctrl.state, SessionState.IDLE)
        self.assertEqual(self.notices, [])

    async def test_last_recording(self) -> None:
        ctrl = self._controller()
        self.assertIsNone(ctrl.last_recording)
        await ctrl.start()
        await self.source.feed(b"\x00\x00" * 10)
        await ctrl.stop()

        self.assertEqual(ctrl.last_recording.pcm, b"\x00\x00" * 10)
        self.assertEqual(ctrl.last_recording.sample_rate, AUDIO_SAMPLE_RATE)

    async def test_restart_resets_transcript(self) -> None:
        ctrl = self._controller()
        await ctrl.start()
        self.factory.last.push(_final("first"))
        await settle()
        await ctrl.stop()

        await ctrl.start()
        self.assertEqual(ctrl.reconciler.finalized_text, "")
        self.assertEqual(len(self.factory.channels), 2)

    async def test_toggle(self) -> None:
        ctrl = self._controller()

        self.assertTrue(await ctrl.toggle(owner_id="a"))
        self.assertEqual(ctrl.state, SessionState.ACTIVE)

        self.assertFalse(await ctrl.toggle(owner_id="b"))
        self.assertEqual(ctrl.owner_id, "a")

        self.assertFalse(await ctrl.toggle(owner_id="a"))
        self.assertEqual(ctrl.state, SessionState.IDLE)


class TestListeners(unittest.TestCase):

    def test_order_and_unsubscribe(self) -> None:
        listeners = Listeners("test")
        calls: List[str] = []
        listeners.subscribe(lambda v: calls.append(f"a{v}"))
        unsubscribe = listeners.subscribe(lambda v: calls.append(f"b{v}"))

        listeners.publish(1)
        unsubscribe()
        unsubscribe()
        listeners.publish(2)

        self.assertEqual(calls, ["a1", "b1", "a2"])
        self.assertEqual(len(listeners), 1)

    def test_failing_handler_does_not_stop_others(self) -> None:
        listeners = Listeners("test")
        calls: List[int] = []

        def _boom(_: int) -> None:
            raise RuntimeError("boom")

        listeners.subscribe(_boom)
        listeners.subscribe(calls.append)

        with self.assertLogs("scribe.session", level="ERROR"):
            listeners.publish(5)
        self.assertEqual(calls, [5])


if __name__ == "__main__":
    unittest.main()
