"""Document analysis and rewrite entry points.

Both operations share one flow: chunk the document, run every chunk through
the remote collaborator in rate-limited batches with per-call retries, drop
the chunks that failed, and aggregate the rest.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

from common.config import PipelineSettings
from common.schemas import AnalysisResult, ChunkAnalysis, ChunkRewrite, FixOptions, FixResult
from common.telemetry import EventType, LoggingTelemetry, TelemetrySink
from pipeline.aggregator import aggregate_analysis, aggregate_fix
from pipeline.batching import process_in_batches
from pipeline.cancellation import CancellationToken
from pipeline.chunker import chunk_text
from pipeline.errors import ExhaustedRetries, MalformedResponse, NoValidResults, RemoteRequestRejected
from pipeline.models import Chunk, Operation, ProcessingTask
from pipeline.progress import ProgressCallback, ProgressReporter
from pipeline.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

P = TypeVar("P")


class TextClassifier(Protocol):
    async def classify(self, text: str, task: ProcessingTask) -> ChunkAnalysis: ...


class TextRewriter(Protocol):
    async def rewrite(self, text: str, task: ProcessingTask) -> ChunkRewrite: ...


class DocumentPipeline:
    def __init__(
        self,
        classifier: TextClassifier,
        rewriter: TextRewriter,
        settings: PipelineSettings | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self.classifier = classifier
        self.rewriter = rewriter
        self.settings = settings or PipelineSettings()
        self.telemetry = telemetry or LoggingTelemetry()
        self.policy = RetryPolicy.from_settings(self.settings)

    async def analyze(
        self,
        text: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AnalysisResult:
        chunks = self._chunks(text, self.settings.analyze_chunk_size)
        reporter = ProgressReporter(on_progress, len(chunks))

        partials = await self._run(
            chunks,
            operation=Operation.classify,
            call=self.classifier.classify,
            batch_size=self.settings.analyze_batch_size,
            delay_ms=self.settings.analyze_delay_ms,
            reporter=reporter,
            cancel_token=cancel_token,
            step="Auditing segment",
        )
        try:
            result = aggregate_analysis(partials)
        except NoValidResults:
            self._record(EventType.ERROR, f"analysis failed for all {len(chunks)} chunks")
            raise

        reporter.report(100, "Analysis complete")
        self._record(
            EventType.SCAN,
            f"chunks={len(chunks)} failed={result.chunks_failed} score={result.plagiarism_score}",
        )
        return result

    async def fix(
        self,
        text: str,
        issues: Sequence[str] = (),
        options: FixOptions | None = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FixResult:
        options = options or FixOptions()
        chunks = self._chunks(text, self.settings.fix_chunk_size)
        reporter = ProgressReporter(on_progress, len(chunks))

        partials = await self._run(
            chunks,
            operation=Operation.rewrite,
            call=self.rewriter.rewrite,
            batch_size=self.settings.fix_batch_size,
            delay_ms=self.settings.fix_delay_ms,
            reporter=reporter,
            cancel_token=cancel_token,
            step="Rewriting part",
            options=options,
            issues=tuple(issues),
        )
        try:
            result = aggregate_fix(partials)
        except NoValidResults:
            self._record(EventType.ERROR, f"rewrite failed for all {len(chunks)} chunks")
            raise

        reporter.report(100, "Rewrite complete")
        self._record(
            EventType.FIX,
            f"mode={options.mode.value} chunks={len(chunks)} failed={result.chunks_failed}",
        )
        return result

    def _chunks(self, text: str, max_size: int) -> list[Chunk]:
        if not text or not text.strip():
            raise NoValidResults("Document contains no text")
        # whitespace-only slices have nothing to classify or rewrite
        pieces = [chunk.text for chunk in chunk_text(text, max_size) if chunk.text.strip()]
        return [Chunk(index=i, text=piece) for i, piece in enumerate(pieces)]

    async def _run(
        self,
        chunks: list[Chunk],
        operation: Operation,
        call: Callable[[str, ProcessingTask], Awaitable[P]],
        batch_size: int,
        delay_ms: int,
        reporter: ProgressReporter,
        cancel_token: Optional[CancellationToken],
        step: str,
        options: FixOptions | None = None,
        issues: tuple[str, ...] = (),
    ) -> list[Optional[P]]:
        async def run_chunk(chunk: Chunk, index: int) -> Optional[P]:
            task = ProcessingTask(
                chunk=chunk,
                operation=operation,
                total=len(chunks),
                options=options or FixOptions(),
                issues=issues,
                style_sample=(options.style_sample if options else None),
            )

            async def attempt() -> P:
                reporter.chunk(index, f"{step} {task.label}")
                return await call(chunk.text.strip(), task)

            try:
                return await with_retry(
                    attempt,
                    on_retry=lambda msg: reporter.chunk(index, msg),
                    policy=self.policy,
                    cancel_token=cancel_token,
                )
            except (ExhaustedRetries, MalformedResponse, RemoteRequestRejected) as exc:
                logger.warning("Chunk %s (%s) dropped: %s", task.label, operation.value, exc)
                return None

        logger.info(
            "%s: %d chunks, batch size %d, delay %dms",
            operation.value, len(chunks), batch_size, delay_ms,
        )
        return await process_in_batches(
            chunks,
            batch_size,
            delay_ms,
            run_chunk,
            on_batch_complete=lambda: logger.debug("%s batch done (%d%%)", operation.value, reporter.percent),
            cancel_token=cancel_token,
        )

    def _record(self, event_type: str, details: str) -> None:
        try:
            self.telemetry.record(event_type, details)
        except Exception:
            logger.warning("Telemetry sink raised; ignoring", exc_info=True)
