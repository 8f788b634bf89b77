"""Fire-and-forget event log sink.

Recording an event never raises and never blocks the caller: the write runs
as a background task and any failure is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

import httpx

from common.config import TelemetrySettings

logger = logging.getLogger(__name__)


class EventType:
    SCAN = "SCAN"
    FIX = "FIX"
    ERROR = "ERROR"
    VISIT = "VISIT"
    SLIDE = "SLIDE"
    FEATURE = "FEATURE"


class TelemetrySink(Protocol):
    def record(self, event_type: str, details: str) -> None: ...


class LoggingTelemetry:
    """Sink that only writes to the application log."""

    def record(self, event_type: str, details: str) -> None:
        logger.info("telemetry %s: %s", event_type, details)


class SupabaseTelemetry:
    """Inserts rows into a Supabase table through its PostgREST endpoint."""

    def __init__(
        self,
        settings: TelemetrySettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or TelemetrySettings()
        self._client = client
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.supabase_url and self.settings.supabase_key)

    def record(self, event_type: str, details: str) -> None:
        if not self.enabled:
            logger.debug("telemetry disabled, dropping %s", event_type)
            return
        try:
            task = asyncio.get_running_loop().create_task(self._insert(event_type, details))
        except RuntimeError:
            logger.warning("No running loop; telemetry event %s dropped", event_type)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight writes. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _insert(self, event_type: str, details: str) -> None:
        url = f"{self.settings.supabase_url.rstrip('/')}/rest/v1/{self.settings.table}"
        headers = {
            "apikey": self.settings.supabase_key,
            "Authorization": f"Bearer {self.settings.supabase_key}",
            "Prefer": "return=minimal",
        }
        row = {"type": event_type, "details": details, "timestamp": int(time.time() * 1000)}
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=row, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.post(url, json=row, headers=headers)
            resp.raise_for_status()
        except Exception:
            logger.warning("Telemetry write failed for %s", event_type, exc_info=True)
