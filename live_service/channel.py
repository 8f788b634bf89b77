from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Protocol

import websockets

from common.config import LiveSettings
from common.schemas import HumanizeMode
from pipeline.errors import ChannelError

logger = logging.getLogger(__name__)

MODE_STYLES = {
    HumanizeMode.standard: "Clear, natural phrasing with a professional tone.",
    HumanizeMode.ghost: "Neutral, unobtrusive phrasing that mirrors the speaker closely.",
    HumanizeMode.academic: "Precise academic vocabulary, varied sentence length, no filler.",
    HumanizeMode.creative: "Vivid, varied phrasing with a conversational rhythm.",
}


def build_setup(settings: LiveSettings, mode: HumanizeMode) -> dict[str, Any]:
    """Session setup payload: model, voice and style for the given mode."""
    instruction = (
        f"Mode: {mode.value}. Restate what the user says as polished spoken prose. "
        f"{MODE_STYLES[mode]}"
    )
    return {
        "model": f"models/{settings.model_name}",
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": settings.voice_name}}
            },
        },
        "systemInstruction": {"parts": [{"text": instruction}]},
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }


class LiveChannel(Protocol):
    async def send_audio(self, blob: dict[str, str]) -> None: ...

    def messages(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class GeminiLiveChannel:
    """Bidirectional Gemini Live session over a WebSocket."""

    def __init__(self, ws) -> None:
        self._ws = ws

    @classmethod
    async def connect(cls, settings: LiveSettings, api_key: str, setup: dict[str, Any]) -> "GeminiLiveChannel":
        try:
            ws = await websockets.connect(
                f"{settings.ws_url}?key={api_key}",
                ping_interval=30,
                ping_timeout=60,
                close_timeout=5,
            )
        except (OSError, websockets.WebSocketException) as exc:
            raise ChannelError(f"Could not open live channel: {exc}") from exc

        try:
            await ws.send(json.dumps({"setup": setup}))
            reply = _decode(await ws.recv())
            if "setupComplete" not in reply:
                raise ChannelError(f"Unexpected setup reply: {reply}")
        except websockets.ConnectionClosed as exc:
            await ws.close()
            raise ChannelError(f"Live channel closed during setup: {exc}") from exc
        except ChannelError:
            await ws.close()
            raise
        logger.info("Live channel open (%s)", settings.model_name)
        return cls(ws)

    async def send_audio(self, blob: dict[str, str]) -> None:
        try:
            await self._ws.send(json.dumps({"realtimeInput": {"audio": blob}}))
        except websockets.ConnectionClosed as exc:
            raise ChannelError(f"Live channel closed: {exc}") from exc

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for raw in self._ws:
                yield _decode(raw)
        except websockets.ConnectionClosedOK:
            return
        except websockets.ConnectionClosed as exc:
            raise ChannelError(f"Live channel dropped: {exc}") from exc

    async def close(self) -> None:
        await self._ws.close()


def _decode(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ChannelError(f"Undecodable live message: {raw[:100]}") from exc
