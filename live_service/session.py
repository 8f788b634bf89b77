from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from common.config import LiveSettings
from common.schemas import HumanizeMode
from live_service.audio_utils import decode_pcm_payload, encode_pcm_blob
from live_service.channel import LiveChannel, build_setup
from live_service.devices import AudioInput
from live_service.playback import AudioOutput, PlaybackScheduler
from pipeline.errors import ChannelError, PermissionDenied

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[dict[str, Any]], Awaitable[LiveChannel]]


class SessionState(str, Enum):
    idle = "idle"
    connecting = "connecting"
    open = "open"
    streaming = "streaming"
    interrupted = "interrupted"
    closed = "closed"


@dataclass
class TurnTranscript:
    input_text: str
    output_text: str


def _noop(*args) -> None:
    return None


@dataclass
class LiveSessionCallbacks:
    """Session event hooks. Each may be a plain function or a coroutine function."""

    on_input_transcription: Callable[[str], Any] = _noop
    on_output_transcription: Callable[[str], Any] = _noop
    on_turn_complete: Callable[[TurnTranscript], Any] = _noop
    on_error: Callable[[Exception], Any] = _noop
    on_close: Callable[[], Any] = _noop


async def _emit(callback: Callable[..., Any], *args) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("Live session callback %s failed", getattr(callback, "__name__", callback), exc_info=True)


class LiveAudioSession:
    """One live humanizer session: microphone in, model audio and transcripts out."""

    def __init__(
        self,
        session_id: str,
        microphone: AudioInput,
        speaker: AudioOutput,
        channel_factory: ChannelFactory,
        settings: LiveSettings | None = None,
    ) -> None:
        self.session_id = session_id
        self.settings = settings or LiveSettings()
        self.microphone = microphone
        self.playback = PlaybackScheduler(speaker, self.settings.output_sample_rate)
        self._channel_factory = channel_factory
        self._channel: Optional[LiveChannel] = None
        self._callbacks = LiveSessionCallbacks()
        self._tasks: list[asyncio.Task] = []

        self.state = SessionState.idle
        self.input_transcript = ""
        self.output_transcript = ""
        self.committed_blocks: list[str] = []

    @property
    def closed(self) -> bool:
        return self.state == SessionState.closed

    async def connect(self, mode: HumanizeMode, callbacks: LiveSessionCallbacks | None = None) -> None:
        if self.state != SessionState.idle:
            raise RuntimeError(f"Session {self.session_id} already started ({self.state.value})")
        self._callbacks = callbacks or LiveSessionCallbacks()
        self.state = SessionState.connecting

        try:
            await self.microphone.open()
        except PermissionDenied:
            logger.info("Microphone denied for %s", self.session_id)
            self.state = SessionState.closed
            raise
        except Exception as exc:
            logger.warning("Microphone failed to open for %s: %s", self.session_id, exc)
            await self.microphone.close()
            self.state = SessionState.closed
            raise ChannelError(f"Microphone failed to open: {exc}") from exc

        try:
            self._channel = await self._channel_factory(build_setup(self.settings, mode))
        except Exception as exc:
            logger.warning("Live channel failed to open for %s: %s", self.session_id, exc)
            await self.microphone.close()
            self.state = SessionState.closed
            if isinstance(exc, ChannelError):
                raise
            raise ChannelError(str(exc)) from exc

        self.state = SessionState.open
        logger.info("Live session open: %s (%s)", self.session_id, mode.value)
        self._tasks = [
            asyncio.create_task(self._capture_loop()),
            asyncio.create_task(self._receive_loop()),
        ]

    async def _capture_loop(self) -> None:
        try:
            async for frame in self.microphone.frames():
                await self._channel.send_audio(encode_pcm_blob(frame, self.settings.input_sample_rate))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(exc)

    async def _receive_loop(self) -> None:
        try:
            async for message in self._channel.messages():
                await self.handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(exc)
            return
        logger.info("Live channel closed by server: %s", self.session_id)
        await self.stop()

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Demultiplex one server message."""
        content = message.get("serverContent") or {}

        heard = (content.get("inputTranscription") or {}).get("text")
        if heard:
            self.input_transcript += heard
            await _emit(self._callbacks.on_input_transcription, heard)

        said = (content.get("outputTranscription") or {}).get("text")
        if said:
            self.output_transcript += said
            await _emit(self._callbacks.on_output_transcription, said)

        for part in (content.get("modelTurn") or {}).get("parts") or []:
            data = (part.get("inlineData") or {}).get("data")
            if data:
                await self.playback.schedule(decode_pcm_payload(data))
                self.state = SessionState.streaming

        if content.get("interrupted"):
            stopped = await self.playback.interrupt()
            self.state = SessionState.interrupted
            logger.info("Session %s interrupted, dropped %d sources", self.session_id, len(stopped))

        if content.get("turnComplete"):
            await self._commit_turn()

    async def _commit_turn(self) -> None:
        turn = TurnTranscript(input_text=self.input_transcript, output_text=self.output_transcript)
        if turn.output_text:
            self.committed_blocks.append(turn.output_text)
        self.input_transcript = ""
        self.output_transcript = ""
        await _emit(self._callbacks.on_turn_complete, turn)

    def committed_text(self) -> str:
        return "\n\n".join([*self.committed_blocks, self.output_transcript]).strip()

    async def _fail(self, exc: Exception) -> None:
        if self.closed:
            return
        error = exc if isinstance(exc, ChannelError) else ChannelError(str(exc))
        logger.warning("Live session %s failed: %s", self.session_id, error)
        await _emit(self._callbacks.on_error, error)
        await self.stop()

    async def stop(self) -> None:
        """Tear the session down. Safe to call more than once, from any path."""
        if self.closed:
            return
        self.state = SessionState.closed

        current = asyncio.current_task()
        others = [task for task in self._tasks if task is not current]
        for task in others:
            task.cancel()
        await asyncio.gather(*others, return_exceptions=True)

        await self.microphone.close()
        try:
            await self.playback.interrupt()
        except Exception:
            logger.warning("Could not stop playback for %s", self.session_id, exc_info=True)
        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception:
                logger.warning("Error closing live channel for %s", self.session_id, exc_info=True)

        if self.output_transcript:
            self.committed_blocks.append(self.output_transcript)
            self.output_transcript = ""

        logger.info("Live session closed: %s", self.session_id)
        await _emit(self._callbacks.on_close)


class SessionManager:
    def __init__(self, max_sessions: int = 10) -> None:
        self._max = max_sessions
        self._sessions: dict[str, LiveAudioSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session_id: str, **kwargs) -> LiveAudioSession:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if session_id in self._sessions:
                raise RuntimeError(f"Session {session_id} already exists")
            session = LiveAudioSession(session_id=session_id, **kwargs)
            self._sessions[session_id] = session
            logger.info("Session created: %s (%d active)", session_id, len(self._sessions))
            return session

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            logger.info("Session removed: %s (%d active)", session_id, len(self._sessions))
        if session is not None:
            await session.stop()

    def get(self, session_id: str) -> LiveAudioSession | None:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
