"""
Live transcription over a WebSocket.

A browser streams PCM16 microphone frames to ``/ws/transcribe/{owner_id}``
and receives JSON messages back:

    {"type": "started"}
    {"type": "partial", "text": ...}   in-progress turn ("" once committed)
    {"type": "preview", "text": ...}   everything so far, for display
    {"type": "final",   "text": ...}   one committed turn
    {"type": "busy",    "message": ...} another owner or connection is recording
    {"type": "error",   "message": ...}
    {"type": "stopped"}

There is one recording session for the whole app. The text message "stop"
ends the session; so does disconnecting.

Run as:
    python server.py
    uvicorn server:app
"""
from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from config import VOCAB_PATH
from scribe.audio_feed import WebSocketAudioSource
from scribe.errors import ScribeError, SessionBusyError
from scribe.session import RecordingSessionController, RecordingState, SessionState, TranscriptTarget
from scribe.utils import setup_logging
from scribe.vocab import vocab_hint_supplier

logger = getLogger(__name__)


STOP_COMMAND = "stop"


async def _drain_outbox(ws: WebSocket, outbox: asyncio.Queue[Optional[Dict[str, Any]]]) -> None:
    """Send queued JSON messages to the client until the None sentinel."""
    while True:
        payload = await outbox.get()
        if payload is None:
            break
        try:
            await ws.send_json(payload)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("[WS] client gone, dropping outgoing messages: %r", e)
            break


def create_app(controller: Optional[RecordingSessionController] = None) -> FastAPI:
    controller = controller or RecordingSessionController(get_vocabulary_hints=vocab_hint_supplier(VOCAB_PATH))
    app = FastAPI(title="live-scribe")
    app.state.controller = controller

    @app.websocket("/ws/transcribe/{owner_id}")
    async def transcribe_ws(ws: WebSocket, owner_id: str) -> None:
        await ws.accept()
        logger.info("[WS] client %s connected.", owner_id)

        outbox: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        stop_requested = asyncio.Event()
        session_over = asyncio.Event()
        starting = True

        def _on_text(text: str) -> None:
            if text.strip().lower() == STOP_COMMAND:
                stop_requested.set()

        def _on_error(error: ScribeError) -> None:
            if isinstance(error, SessionBusyError):
                if error.requested_owner_id == owner_id:
                    outbox.put_nowait({"type": "busy", "message": str(error)})
            elif starting or controller.owner_id == owner_id:
                outbox.put_nowait({"type": "error", "message": str(error)})

        def _on_recording_change(state: RecordingState) -> None:
            if state.state is SessionState.IDLE:
                session_over.set()

        target = TranscriptTarget(
            on_final_text=lambda text: outbox.put_nowait({"type": "final", "text": text}),
            on_partial_text=lambda text: outbox.put_nowait({"type": "partial", "text": text}),
            on_preview_text=lambda text: outbox.put_nowait({"type": "preview", "text": text}),
        )
        source = WebSocketAudioSource(ws, on_text=_on_text)
        unsubscribe_error = controller.on_error(_on_error)
        unsubscribe_state = controller.on_recording_change(_on_recording_change)
        sender = asyncio.create_task(_drain_outbox(ws, outbox))

        try:
            if controller.is_running and controller.owner_id == owner_id:
                # start() would be a no-op, this socket's audio would never be read
                logger.info("[WS] owner %s already streaming on another connection.", owner_id)
                outbox.put_nowait({"type": "busy", "message": str(SessionBusyError(owner_id, owner_id))})
                return
            started = await controller.start(target, owner_id=owner_id, audio_source=source)
            starting = False
            if started:
                outbox.put_nowait({"type": "started"})
                waiters = {
                    asyncio.create_task(source.closed.wait()),
                    asyncio.create_task(stop_requested.wait()),
                    asyncio.create_task(session_over.wait()),
                }
                _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for t in pending:
                    t.cancel()
                if controller.owner_id == owner_id:
                    await controller.stop()
                outbox.put_nowait({"type": "stopped"})
        finally:
            unsubscribe_error()
            unsubscribe_state()
            outbox.put_nowait(None)
            await sender
            try:
                await ws.close()
            except (WebSocketDisconnect, RuntimeError) as e:
                # client already gone
                logger.debug("[WS] close failed: %r", e)
            logger.info("[WS] client %s finished.", owner_id)

    return app


app = create_app()


if __name__ == "__main__":
    setup_logging()
    uvicorn.run(app, host="127.0.0.1", port=8000)
