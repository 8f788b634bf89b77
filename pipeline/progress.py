from __future__ import annotations

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProgressReporter:
    """Serializes progress updates so the percentage never moves backwards.

    Concurrent chunk tasks finish in any order; the reported percentage is the
    highest seen so far while the message always reflects the latest update.
    """

    def __init__(self, callback: Optional[ProgressCallback], total: int) -> None:
        self._callback = callback
        self.total = max(total, 1)
        self.percent = 0

    def chunk_percent(self, index: int) -> int:
        return round((index + 1) / self.total * 100)

    def report(self, percent: int, message: str) -> None:
        self.percent = max(self.percent, min(100, int(percent)))
        if self._callback is None:
            return
        try:
            self._callback(self.percent, message)
        except Exception:
            logger.warning("Progress callback failed", exc_info=True)

    def chunk(self, index: int, message: str) -> None:
        self.report(self.chunk_percent(index), message)
