"""Audio devices bridged to a browser client over the live WebSocket.

The browser owns the real microphone and speakers. Microphone frames arrive
as binary WebSocket messages; scheduled playback is sent back as an
``audio`` JSON header followed by the PCM16 payload, with ``start_time``
measured on this session's clock (seconds since the speaker was created).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Protocol

import numpy as np
from fastapi import WebSocket

from common.schemas import AudioScheduledMessage, StopAudioMessage
from live_service.audio_utils import FrameBuffer, float_to_pcm16, normalize_audio
from pipeline.errors import PermissionDenied

logger = logging.getLogger(__name__)


class AudioInput(Protocol):
    async def open(self) -> None: ...

    def frames(self) -> AsyncIterator[np.ndarray]: ...

    async def close(self) -> None: ...


class ClientMicrophone:
    """Microphone fed by the client; yields fixed-size float32 frames."""

    def __init__(
        self,
        frame_size: int = 4096,
        sample_rate: int = 16000,
        channels: int = 1,
        encoding: str = "pcm_f32le",
        target_sample_rate: int = 16000,
        granted: bool = True,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.encoding = encoding
        self.target_sample_rate = target_sample_rate
        self.granted = granted
        self._frames = FrameBuffer(frame_size)
        self._queue: asyncio.Queue[np.ndarray | None] = asyncio.Queue()
        self.is_open = False
        self.released = False

    async def open(self) -> None:
        if not self.granted:
            raise PermissionDenied("Microphone access was denied by the client")
        self.is_open = True

    def feed(self, data: bytes) -> None:
        if not self.is_open or self.released:
            return
        samples = normalize_audio(
            data,
            input_sample_rate=self.sample_rate,
            input_channels=self.channels,
            input_encoding=self.encoding,
            target_sample_rate=self.target_sample_rate,
        )
        self._frames.add(samples)
        while self._frames.has_frame():
            self._queue.put_nowait(self._frames.pop_frame())

    async def frames(self) -> AsyncIterator[np.ndarray]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        if self.released:
            return
        self.released = True
        self.is_open = False
        remainder = self._frames.flush()
        if remainder is not None:
            logger.debug("Discarding %d trailing microphone samples", len(remainder))
        self._queue.put_nowait(None)


class ClientSpeaker:
    """Playback output that forwards scheduled buffers to the client."""

    def __init__(self, ws: WebSocket, session_id: str) -> None:
        self.ws = ws
        self.session_id = session_id
        self._epoch = time.monotonic()

    @property
    def current_time(self) -> float:
        return time.monotonic() - self._epoch

    async def start(self, source_id: int, samples: np.ndarray, sample_rate: int, start_time: float) -> None:
        header = AudioScheduledMessage(
            session_id=self.session_id,
            source_id=source_id,
            start_time=round(start_time, 6),
            duration=len(samples) / sample_rate,
            sample_rate=sample_rate,
        )
        await self.ws.send_text(header.model_dump_json(by_alias=True))
        await self.ws.send_bytes(float_to_pcm16(samples))

    async def stop(self, source_ids: list[int]) -> None:
        message = StopAudioMessage(session_id=self.session_id, source_ids=source_ids)
        await self.ws.send_text(message.model_dump_json(by_alias=True))
