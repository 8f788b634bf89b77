"""Gapless scheduling of streamed audio buffers."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

logger = logging.getLogger(__name__)


class AudioOutput(Protocol):
    """Playback device with its own clock, in seconds."""

    @property
    def current_time(self) -> float: ...

    async def start(self, source_id: int, samples: np.ndarray, sample_rate: int, start_time: float) -> None: ...

    async def stop(self, source_ids: list[int]) -> None: ...


@dataclass(frozen=True)
class ScheduledSource:
    source_id: int
    start_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class PlaybackScheduler:
    """Queues buffers back to back: each starts at ``max(now, cursor)``.

    The cursor only moves forward, except on interruption where it is reset
    to the output clock's current time.
    """

    def __init__(self, output: AudioOutput, sample_rate: int = 24000) -> None:
        self.output = output
        self.sample_rate = sample_rate
        self.cursor = 0.0
        self.sources: dict[int, ScheduledSource] = {}
        self._ids = itertools.count()

    def _prune(self, now: float) -> None:
        finished = [sid for sid, src in self.sources.items() if src.end_time <= now]
        for sid in finished:
            del self.sources[sid]

    async def schedule(self, samples: np.ndarray) -> ScheduledSource:
        now = self.output.current_time
        self._prune(now)
        source = ScheduledSource(
            source_id=next(self._ids),
            start_time=max(now, self.cursor),
            duration=len(samples) / self.sample_rate,
        )
        await self.output.start(source.source_id, samples, self.sample_rate, source.start_time)
        self.cursor = source.end_time
        self.sources[source.source_id] = source
        return source

    async def interrupt(self) -> list[int]:
        """Stop every source that has not finished and reset the cursor to now."""
        now = self.output.current_time
        self._prune(now)
        stopped = sorted(self.sources)
        self.sources.clear()
        self.cursor = now
        if stopped:
            logger.debug("Stopping %d scheduled sources", len(stopped))
            await self.output.stop(stopped)
        return stopped
