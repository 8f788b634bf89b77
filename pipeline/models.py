"""Internal models for document pipeline processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from common.schemas import FixOptions


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str

    def __len__(self) -> int:
        return len(self.text)


class Operation(str, Enum):
    classify = "classify"
    rewrite = "rewrite"


@dataclass(frozen=True)
class ProcessingTask:
    chunk: Chunk
    operation: Operation
    total: int
    options: FixOptions = field(default_factory=FixOptions)
    issues: tuple[str, ...] = ()
    style_sample: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.chunk.index + 1}/{self.total}"
