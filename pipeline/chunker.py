"""Size-bounded document chunking along paragraph and sentence boundaries."""

from __future__ import annotations

import re
from typing import List

from pipeline.models import Chunk

PARAGRAPH_RE = re.compile(r"(\n\s*\n)")
SENTENCE_RE = re.compile(r"((?<=[.!?])\s+)")

# Below this many paragraphs the text is treated as one wall of prose.
MIN_PARAGRAPHS = 3


def _split_units(text: str, pattern: re.Pattern) -> List[str]:
    """Split text into units that each keep their trailing separator.

    Concatenating the units gives back ``text`` exactly.
    """
    parts = pattern.split(text)
    units: List[str] = []
    carry = ""
    for i in range(0, len(parts), 2):
        unit = carry + parts[i] + (parts[i + 1] if i + 1 < len(parts) else "")
        carry = ""
        if not unit:
            continue
        if not unit.strip():
            # a bare separator rides along with the next unit
            carry = unit
            continue
        units.append(unit)
    if carry:
        if units:
            units[-1] += carry
        else:
            units.append(carry)
    return units


def _hard_split(unit: str, max_size: int) -> List[str]:
    slices = [unit[i : i + max_size] for i in range(0, len(unit), max_size)]
    if len(slices) > 1 and not slices[-1].strip():
        # shift text from the previous slice so the tail is not blank
        joined = slices[-2] + slices[-1]
        slices[-2:] = [joined[: len(joined) - max_size], joined[-max_size:]]
    return slices


def _bounded_units(text: str, max_size: int) -> List[str]:
    units = _split_units(text, PARAGRAPH_RE)
    if len(units) < MIN_PARAGRAPHS:
        units = _split_units(text, SENTENCE_RE)

    bounded: List[str] = []
    for unit in units:
        if len(unit) <= max_size:
            bounded.append(unit)
            continue
        for sentence in _split_units(unit, SENTENCE_RE):
            if len(sentence) <= max_size:
                bounded.append(sentence)
            else:
                bounded.extend(_hard_split(sentence, max_size))
    return bounded


def chunk_text(text: str, max_size: int) -> List[Chunk]:
    """Split ``text`` into ordered chunks no longer than ``max_size``.

    Separators stay attached to the piece they follow, so
    ``"".join(c.text for c in chunks) == text``.
    """
    if max_size < 1:
        raise ValueError("max_size must be at least 1")
    if not text:
        return []
    if len(text) <= max_size:
        return [Chunk(index=0, text=text)]

    pieces: List[str] = []
    buffer = ""
    for unit in _bounded_units(text, max_size):
        if buffer and len(buffer) + len(unit) > max_size:
            pieces.append(buffer)
            buffer = unit
        else:
            buffer += unit
    if buffer:
        pieces.append(buffer)

    return [Chunk(index=i, text=piece) for i, piece in enumerate(pieces)]


def join_chunks(chunks: List[Chunk]) -> str:
    return "".join(chunk.text for chunk in chunks)
