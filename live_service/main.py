from __future__ import annotations

import functools
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from common.config import GeminiSettings, LiveSettings
from common.schemas import (
    LiveClientMessageType,
    LiveErrorMessage,
    LiveServerMessageType,
    LiveStartMessage,
    LiveStatusMessage,
    TranscriptMessage,
    TurnCompleteMessage,
)
from live_service.channel import GeminiLiveChannel
from live_service.devices import ClientMicrophone, ClientSpeaker
from live_service.session import LiveAudioSession, LiveSessionCallbacks, SessionManager, TurnTranscript
from pipeline.errors import ChannelError, PermissionDenied

logger = logging.getLogger(__name__)

settings = LiveSettings()
app = FastAPI(title="PlagiaFix Live Service")
manager = SessionManager(max_sessions=settings.max_sessions)
channel_factory = functools.partial(GeminiLiveChannel.connect, settings, GeminiSettings().api_key)


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.websocket("/live")
async def live_endpoint(ws: WebSocket):
    await ws.accept()
    session_id: str | None = None
    session: LiveAudioSession | None = None
    try:
        # Expect a start message first (text frame)
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != LiveClientMessageType.start:
            await _send(ws, LiveErrorMessage(session_id="", detail="Expected start message"))
            await ws.close()
            return

        start = LiveStartMessage.model_validate(msg)
        session_id = start.session_id
        microphone = ClientMicrophone(
            frame_size=settings.frame_size,
            sample_rate=start.sample_rate,
            channels=start.channels,
            encoding=start.encoding,
            target_sample_rate=settings.input_sample_rate,
            granted=start.microphone_granted,
        )
        session = await manager.create(
            session_id,
            microphone=microphone,
            speaker=ClientSpeaker(ws, session_id),
            channel_factory=channel_factory,
            settings=settings,
        )

        try:
            await session.connect(start.mode, _client_callbacks(ws, session_id))
        except PermissionDenied as exc:
            await _send(ws, LiveErrorMessage(session_id=session_id, detail=str(exc), code="permission_denied"))
            await ws.close()
            return
        except ChannelError as exc:
            await _send(ws, LiveErrorMessage(session_id=session_id, detail=str(exc), code="channel_error"))
            await ws.close()
            return

        await _send(ws, LiveStatusMessage(type=LiveServerMessageType.open, session_id=session_id))

        # Main loop: microphone frames and control messages from the client
        while not session.closed:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break
            if message.get("bytes"):
                microphone.feed(message["bytes"])
            elif message.get("text"):
                data = json.loads(message["text"])
                if data.get("type") == LiveClientMessageType.end:
                    break

    except WebSocketDisconnect:
        logger.info("Live client disconnected: %s", session_id)
    except ValidationError as exc:
        await _send(ws, LiveErrorMessage(session_id=session_id or "", detail=f"Invalid start message: {exc}"))
    except RuntimeError as exc:
        logger.warning("Session error: %s", exc)
        await _send(ws, LiveErrorMessage(session_id=session_id or "", detail=str(exc)))
    except Exception:
        logger.exception("Unexpected error in live endpoint")
    finally:
        if session is not None and session_id:
            await manager.remove(session_id)


def _client_callbacks(ws: WebSocket, session_id: str) -> LiveSessionCallbacks:
    async def on_input(text: str) -> None:
        await _send(ws, TranscriptMessage(type=LiveServerMessageType.input_transcript, session_id=session_id, text=text))

    async def on_output(text: str) -> None:
        await _send(ws, TranscriptMessage(type=LiveServerMessageType.output_transcript, session_id=session_id, text=text))

    async def on_turn(turn: TurnTranscript) -> None:
        await _send(
            ws,
            TurnCompleteMessage(session_id=session_id, input_text=turn.input_text, output_text=turn.output_text),
        )

    async def on_error(exc: Exception) -> None:
        await _send(ws, LiveErrorMessage(session_id=session_id, detail=str(exc), code="channel_error"))

    async def on_close() -> None:
        await _send(ws, LiveStatusMessage(type=LiveServerMessageType.closed, session_id=session_id))

    return LiveSessionCallbacks(
        on_input_transcription=on_input,
        on_output_transcription=on_output,
        on_turn_complete=on_turn,
        on_error=on_error,
        on_close=on_close,
    )


async def _send(ws: WebSocket, message) -> None:
    try:
        await ws.send_text(message.model_dump_json(by_alias=True))
    except Exception:
        logger.debug("Could not deliver %s to client", type(message).__name__)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
