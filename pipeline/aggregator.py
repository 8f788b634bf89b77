"""Merge per-chunk partial results into one document-level result."""

from __future__ import annotations

import logging
from typing import Callable, Hashable, Iterable, List, Optional, Sequence, TypeVar

from common.schemas import (
    AnalysisResult,
    BibliographyEntry,
    ChunkAnalysis,
    ChunkRewrite,
    FixResult,
    ForensicData,
)
from pipeline.errors import NoValidResults

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CRITIQUE = "Analysis complete. No chunk returned a critique."
REWRITE_SEPARATOR = "\n\n"


def valid_partials(partials: Iterable[Optional[T]]) -> List[T]:
    valid = [p for p in partials if p is not None]
    if not valid:
        raise NoValidResults("No chunk produced a usable result")
    return valid


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def ordered_union(lists: Iterable[Iterable[T]]) -> List[T]:
    seen: dict = {}
    for items in lists:
        for item in items:
            if item not in seen:
                seen[item] = None
    return list(seen)


def merge_by_key(items: Iterable[T], key: Callable[[T], Hashable]) -> List[T]:
    """Last write wins per key; each key keeps the position it first appeared at."""
    merged: dict = {}
    for item in items:
        k = key(item)
        if not k:
            continue
        merged[k] = item
    return list(merged.values())


def pick_representative(partials: Sequence[T], rank: Callable[[T], float]) -> T:
    """Highest ranked partial; the first one wins exact ties."""
    best = partials[0]
    for partial in partials[1:]:
        if rank(partial) > rank(best):
            best = partial
    return best


def _merge_forensics(partials: Sequence[ChunkAnalysis]) -> ForensicData:
    reports = [p.forensics for p in partials if p.forensics is not None]
    if not reports:
        return ForensicData()
    return ForensicData(
        avg_sentence_length=round(mean([r.avg_sentence_length for r in reports]), 1),
        sentence_variance=round(mean([r.sentence_variance for r in reports]), 1),
        unique_word_ratio=round(mean([r.unique_word_ratio for r in reports]), 2),
        ai_trigger_words_found=ordered_union(r.ai_trigger_words_found for r in reports),
        readability_score=round(mean([r.readability_score for r in reports])),
    )


def aggregate_analysis(partials: Sequence[Optional[ChunkAnalysis]]) -> AnalysisResult:
    valid = valid_partials(partials)
    logger.info("Aggregating %d/%d analysis partials", len(valid), len(partials))

    plagiarism = round(mean([p.plagiarism_score for p in valid]))
    worst = pick_representative(valid, lambda p: p.plagiarism_score)

    return AnalysisResult(
        original_score=plagiarism,
        plagiarism_score=plagiarism,
        ai_probability=round(mean([p.ai_probability for p in valid])),
        critique=worst.critique or DEFAULT_CRITIQUE,
        detected_issues=ordered_union(p.detected_issues for p in valid),
        paragraph_breakdown=[para for p in valid for para in p.paragraph_breakdown],
        sources_found=merge_by_key(
            (s for p in valid for s in p.sources_found), key=lambda s: s.url
        ),
        forensics=_merge_forensics(valid),
        chunks_total=len(partials),
        chunks_failed=len(partials) - len(valid),
    )


def aggregate_fix(partials: Sequence[Optional[ChunkRewrite]]) -> FixResult:
    valid = valid_partials(partials)
    logger.info("Aggregating %d/%d rewrite partials", len(valid), len(partials))

    bibliography: List[BibliographyEntry] = merge_by_key(
        (b for p in valid for b in p.bibliography), key=lambda b: b.url
    )

    return FixResult(
        rewritten_text=REWRITE_SEPARATOR.join(p.rewritten_text for p in valid),
        new_plagiarism_score=round(mean([p.new_plagiarism_score for p in valid])),
        new_ai_probability=round(mean([p.new_ai_probability for p in valid])),
        improvements_made=ordered_union(p.improvements_made for p in valid),
        bibliography=bibliography,
        references=[b.full_citation for b in bibliography if b.full_citation],
        chunks_total=len(partials),
        chunks_failed=len(partials) - len(valid),
    )

