import json

import httpx
import pytest
from fastapi.testclient import TestClient

from common.config import GeminiSettings
from common.schemas import (
    AnalysisResult,
    BibliographyEntry,
    CitationStyle,
    FixOptions,
    ForensicData,
    HumanizeMode,
)
from common.telemetry import LoggingTelemetry, SupabaseTelemetry
from llm_service.gemini_client import GeminiClient, merge_grounding
from llm_service.main import create_app
from llm_service.prompts import build_rewrite_prompt, build_rewrite_system_prompt
from pipeline.errors import (
    MalformedResponse,
    NoValidResults,
    OperationCancelled,
    RemoteRequestRejected,
    TransientRemoteFailure,
)
from pipeline.models import Chunk, Operation, ProcessingTask


def _reply(text, grounding=None):
    candidate = {"content": {"parts": [{"text": text}]}}
    if grounding is not None:
        candidate["groundingMetadata"] = {"groundingChunks": grounding}
    return {"candidates": [candidate]}


def _client(handler):
    settings = GeminiSettings(api_key="test-key", base_url="https://gemini.test/v1beta")
    return GeminiClient(settings, transport=httpx.MockTransport(handler))


def _task(operation=Operation.classify, options=None):
    return ProcessingTask(
        chunk=Chunk(index=0, text="Some text."),
        operation=operation,
        total=1,
        options=options or FixOptions(),
    )


class TestPrompts:
    def test_rewrite_system_prompt_reflects_options(self):
        options = FixOptions(
            mode=HumanizeMode.academic,
            include_citations=True,
            citation_style=CitationStyle.mla,
        )
        prompt = build_rewrite_system_prompt(options, style_sample="short and punchy")
        assert "Academic" in prompt
        assert "MLA" in prompt
        assert "short and punchy" in prompt
        assert "JSON" in prompt

    def test_rewrite_prompt_lists_issues(self):
        prompt = build_rewrite_prompt("segment text", "2/5", ["Stock phrases"])
        assert "Segment 2/5" in prompt
        assert "Stock phrases" in prompt
        assert "segment text" in prompt


class TestGeminiClient:
    @pytest.mark.asyncio
    async def test_classify_parses_fenced_output(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.headers["x-goog-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_reply('```json\n{"plagiarismScore": 42, "critique": "ok"}\n```'))

        async with _client(handler) as client:
            result = await client.classify("Some text.", _task())

        assert result.plagiarism_score == 42
        assert result.critique == "ok"
        assert seen["path"] == "/v1beta/models/gemini-3-flash-preview:generateContent"
        assert seen["key"] == "test-key"
        assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_transient_failure(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}})

        async with _client(handler) as client:
            with pytest.raises(TransientRemoteFailure) as info:
                await client.classify("Some text.", _task())
        assert info.value.rate_limited
        assert info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retryable(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"status": "INVALID_ARGUMENT"}})

        async with _client(handler) as client:
            with pytest.raises(RemoteRequestRejected):
                await client.classify("Some text.", _task())

    @pytest.mark.asyncio
    async def test_unusable_output_is_malformed(self):
        def handler(request):
            return httpx.Response(200, json=_reply("I cannot help with that."))

        async with _client(handler) as client:
            with pytest.raises(MalformedResponse):
                await client.classify("Some text.", _task())

    @pytest.mark.asyncio
    async def test_rewrite_with_citations_merges_grounding(self):
        seen = {}
        model_output = json.dumps({
            "rewrittenText": "Rewritten.",
            "improvementsMade": ["Tighter prose"],
            "bibliography": [{"url": "https://known.test", "fullCitation": "Known (2020)"}],
        })
        grounding = [
            {"web": {"uri": "https://known.test", "title": "Known"}},
            {"web": {"uri": "https://new.test", "title": "New Source"}},
            {"retrievedContext": {}},
        ]

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_reply(model_output, grounding))

        options = FixOptions(include_citations=True, citation_style=CitationStyle.apa)
        async with _client(handler) as client:
            result = await client.rewrite("Some text.", _task(Operation.rewrite, options))

        assert seen["path"].endswith("gemini-3-pro-preview:generateContent")
        assert seen["body"]["tools"] == [{"google_search": {}}]
        assert "responseMimeType" not in seen["body"]["generationConfig"]
        assert seen["body"]["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 16000}
        assert result.rewritten_text == "Rewritten."
        assert [b.url for b in result.bibliography] == ["https://known.test", "https://new.test"]
        assert result.bibliography[1].full_citation == "New Source. Available at: https://new.test (APA)"

    @pytest.mark.asyncio
    async def test_summary_defaults_when_output_unusable(self):
        def handler(request):
            return httpx.Response(200, json=_reply("no memo today"))

        async with _client(handler) as client:
            memo = await client.generate_summary("text")
        assert memo.subject == "Synthesis Report"

    @pytest.mark.asyncio
    async def test_slides_skip_malformed_entries(self):
        deck = [{"title": "Intro", "bullets": ["a"], "speakerNotes": "hi"}, "not a slide"]

        def handler(request):
            return httpx.Response(200, json=_reply(json.dumps(deck)))

        async with _client(handler) as client:
            slides = await client.generate_slides("text")
        assert len(slides) == 1
        assert slides[0].speaker_notes == "hi"

    @pytest.mark.asyncio
    async def test_check_connection_reports_error(self):
        def handler(request):
            raise httpx.ConnectError("offline")

        async with _client(handler) as client:
            status = await client.check_connection()
        assert status["status"] == "ERROR"


class TestMergeGrounding:
    def test_skips_known_and_duplicate_urls(self):
        merged = merge_grounding(
            [BibliographyEntry(url="https://a")],
            [{"web": {"uri": "https://a"}}, {"web": {"uri": "https://b"}}, {"web": {"uri": "https://b"}}],
            "IEEE",
        )
        assert [b.url for b in merged] == ["https://a", "https://b"]
        assert merged[1].title == "Web source"


def _analysis_result():
    return AnalysisResult(
        original_score=40,
        plagiarism_score=40,
        ai_probability=55,
        critique="Uniform sentence rhythm.",
        detected_issues=["Flat rhythm"],
        paragraph_breakdown=[],
        sources_found=[],
        forensics=ForensicData(),
        chunks_total=2,
    )


class FakePipeline:
    def __init__(self, fail=False, block=False):
        self.fail = fail
        self.block = block
        self.cancelled_with = None

    async def analyze(self, text, on_progress=None, cancel_token=None):
        if self.block:
            try:
                await cancel_token.sleep(5)
            except OperationCancelled:
                self.cancelled_with = cancel_token.reason
                raise
        if self.fail:
            raise NoValidResults("No chunk produced a usable result")
        if on_progress:
            on_progress(50, "Auditing segment 1/2")
        return _analysis_result()

    async def fix(self, text, issues=(), options=None, on_progress=None, cancel_token=None):
        raise NoValidResults("No chunk produced a usable result")


class FakeGemini:
    async def check_connection(self):
        return {"status": "OK", "latency": 5}


class TestLLMService:
    def test_health(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline())) as client:
            assert client.get("/health").json() == {"status": "ok"}
            assert client.get("/health/model").json()["status"] == "OK"

    def test_analyze_returns_camel_case(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline())) as client:
            resp = client.post("/analyze", json={"text": "Some document."})
        assert resp.status_code == 200
        data = resp.json()
        assert data["plagiarismScore"] == 40
        assert data["detectedIssues"] == ["Flat rhythm"]

    def test_total_failure_is_502(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline(fail=True))) as client:
            resp = client.post("/analyze", json={"text": "Some document."})
        assert resp.status_code == 502

    def test_stream_sends_progress_then_result(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline())) as client:
            with client.websocket_connect("/stream") as ws:
                ws.send_text(json.dumps({"type": "analyze", "text": "Some document."}))
                messages = []
                while True:
                    msg = ws.receive_json()
                    messages.append(msg)
                    if msg["type"] != "progress":
                        break

        assert messages[0] == {"type": "progress", "percent": 50, "message": "Auditing segment 1/2"}
        assert messages[-1]["type"] == "result"
        assert messages[-1]["result"]["aiProbability"] == 55

    def test_stream_reports_total_failure(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline())) as client:
            with client.websocket_connect("/stream") as ws:
                ws.send_text(json.dumps({"type": "fix", "text": "Some document."}))
                msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["code"] == "no_valid_results"

    def test_stream_rejects_bad_request(self):
        with TestClient(create_app(client=FakeGemini(), pipeline=FakePipeline())) as client:
            with client.websocket_connect("/stream") as ws:
                ws.send_text(json.dumps({"type": "translate"}))
                msg = ws.receive_json()
        assert msg["code"] == "bad_request"

    def test_stream_cancel_message_stops_job(self):
        pipeline = FakePipeline(block=True)
        with TestClient(create_app(client=FakeGemini(), pipeline=pipeline)) as client:
            with client.websocket_connect("/stream") as ws:
                ws.send_text(json.dumps({"type": "analyze", "text": "Some document."}))
                ws.send_text(json.dumps({"type": "cancel"}))
                msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["code"] == "cancelled"
        assert pipeline.cancelled_with == "cancelled by client"

    def test_telemetry_needs_url_and_key(self, monkeypatch):
        monkeypatch.setenv("TELEMETRY_SUPABASE_URL", "https://project.supabase.test")
        monkeypatch.delenv("TELEMETRY_SUPABASE_KEY", raising=False)
        app = create_app(client=FakeGemini(), pipeline=FakePipeline())
        with TestClient(app):
            assert isinstance(app.state.telemetry, LoggingTelemetry)

        monkeypatch.setenv("TELEMETRY_SUPABASE_KEY", "anon-key")
        app = create_app(client=FakeGemini(), pipeline=FakePipeline())
        with TestClient(app):
            assert isinstance(app.state.telemetry, SupabaseTelemetry)
