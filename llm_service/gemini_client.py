from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from common.config import GeminiSettings
from common.schemas import (
    BibliographyEntry,
    ChunkAnalysis,
    ChunkRewrite,
    SlideContent,
    SummaryMemo,
)
from llm_service.prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    SLIDES_PROMPT,
    SUMMARY_PROMPT,
    build_analysis_prompt,
    build_rewrite_prompt,
    build_rewrite_system_prompt,
)
from pipeline.errors import MalformedResponse, RemoteRequestRejected, TransientRemoteFailure
from pipeline.models import ProcessingTask
from pipeline.recovery import parse_structured_response

logger = logging.getLogger(__name__)

# Derived artifacts only look at the head of the document.
ARTIFACT_INPUT_LIMIT = 15000

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class Generation:
    text: str
    grounding: list[dict[str, Any]] = field(default_factory=list)


class GeminiClient:
    """Gemini ``generateContent`` client implementing the classifier and rewriter."""

    def __init__(
        self,
        settings: GeminiSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or GeminiSettings()
        self._http = httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout_s,
            headers={"x-goog-api-key": self.settings.api_key},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GeminiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        json_output: bool = True,
        search: bool = False,
        thinking_budget: Optional[int] = None,
    ) -> Generation:
        """Call generateContent and return the concatenated text parts."""
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        generation_config: dict[str, Any] = {}
        # Search grounding does not accept a JSON response mime type.
        if json_output and not search:
            generation_config["responseMimeType"] = "application/json"
        if thinking_budget:
            generation_config["thinkingConfig"] = {"thinkingBudget": thinking_budget}
        if generation_config:
            payload["generationConfig"] = generation_config
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if search:
            payload["tools"] = [{"google_search": {}}]

        try:
            resp = await self._http.post(f"/models/{model}:generateContent", json=payload)
        except httpx.TransportError as exc:
            raise TransientRemoteFailure(f"Transport error: {exc}") from exc

        if resp.status_code >= 400:
            body = resp.text
            rate_limited = resp.status_code == 429 or "RESOURCE_EXHAUSTED" in body
            if resp.status_code in RETRYABLE_STATUS or rate_limited:
                raise TransientRemoteFailure(
                    f"Gemini returned {resp.status_code}: {body[:200]}",
                    status_code=resp.status_code,
                    rate_limited=rate_limited,
                )
            raise RemoteRequestRejected(f"Gemini rejected request ({resp.status_code}): {body[:200]}")

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise TransientRemoteFailure("Gemini returned no candidates")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if not part.get("thought"))
        grounding = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
        return Generation(text=text, grounding=grounding)

    async def classify(self, text: str, task: ProcessingTask) -> ChunkAnalysis:
        generation = await self.generate(
            self.settings.flash_model,
            build_analysis_prompt(text, task.label),
            system=ANALYSIS_SYSTEM_PROMPT,
        )
        return _validate(ChunkAnalysis, generation.text, task)

    async def rewrite(self, text: str, task: ProcessingTask) -> ChunkRewrite:
        options = task.options
        generation = await self.generate(
            self.settings.pro_model,
            build_rewrite_prompt(text, task.label, task.issues),
            system=build_rewrite_system_prompt(options, task.style_sample),
            search=options.include_citations,
            thinking_budget=self.settings.thinking_budget,
        )
        result = _validate(ChunkRewrite, generation.text, task)
        if options.include_citations and generation.grounding:
            style = options.citation_style.value if options.citation_style else "APA"
            result.bibliography = merge_grounding(result.bibliography, generation.grounding, style)
        return result

    async def generate_slides(self, text: str) -> list[SlideContent]:
        generation = await self.generate(
            self.settings.flash_model, SLIDES_PROMPT + text[:ARTIFACT_INPUT_LIMIT]
        )
        parsed = parse_structured_response(generation.text)
        if not isinstance(parsed, list):
            logger.warning("Slide generation returned no usable deck")
            return []
        slides = []
        for item in parsed:
            try:
                slides.append(SlideContent.model_validate(item))
            except ValidationError:
                logger.info("Skipping malformed slide: %.100s", item)
        return slides

    async def generate_summary(self, text: str) -> SummaryMemo:
        generation = await self.generate(
            self.settings.flash_model, SUMMARY_PROMPT + text[:ARTIFACT_INPUT_LIMIT]
        )
        parsed = parse_structured_response(generation.text)
        if isinstance(parsed, dict):
            try:
                return SummaryMemo.model_validate(parsed)
            except ValidationError:
                logger.warning("Summary memo failed validation", exc_info=True)
        return SummaryMemo()

    async def check_connection(self) -> dict[str, Any]:
        start = time.monotonic()
        try:
            await self.generate(self.settings.flash_model, "ping", json_output=False)
        except Exception as exc:
            return {"status": "ERROR", "latency": 0, "error": str(exc)}
        return {"status": "OK", "latency": round((time.monotonic() - start) * 1000)}


def _validate(model, raw: str, task: ProcessingTask):
    parsed = parse_structured_response(raw)
    if not isinstance(parsed, dict):
        raise MalformedResponse(f"Unusable {task.operation.value} output for chunk {task.label}")
    try:
        return model.model_validate(parsed)
    except ValidationError as exc:
        raise MalformedResponse(f"Invalid {task.operation.value} output for chunk {task.label}: {exc}") from exc


def merge_grounding(
    bibliography: list[BibliographyEntry],
    grounding: list[dict[str, Any]],
    citation_style: str,
) -> list[BibliographyEntry]:
    """Append search-grounding sources the model did not cite itself."""
    known = {entry.url for entry in bibliography}
    merged = list(bibliography)
    for chunk in grounding:
        web = chunk.get("web") or {}
        url = web.get("uri")
        if not url or url in known:
            continue
        title = web.get("title") or "Web source"
        merged.append(
            BibliographyEntry(
                url=url,
                title=title,
                snippet="Source located via search grounding.",
                full_citation=f"{title}. Available at: {url} ({citation_style})",
            )
        )
        known.add(url)
    return merged
