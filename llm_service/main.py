from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from common.config import GeminiSettings, LLMServiceSettings, PipelineSettings, TelemetrySettings
from common.schemas import (
    AnalysisResult,
    AnalyzeRequest,
    ErrorMessage,
    FixRequest,
    FixResult,
    ProgressMessage,
    ResultMessage,
    SlideContent,
    StreamRequest,
    StreamRequestType,
    SummaryMemo,
    TextRequest,
)
from common.telemetry import EventType, LoggingTelemetry, SupabaseTelemetry
from llm_service.gemini_client import GeminiClient
from pipeline.cancellation import CancellationToken
from pipeline.errors import NoValidResults, OperationCancelled, PipelineError
from pipeline.service import DocumentPipeline

logger = logging.getLogger(__name__)

settings = LLMServiceSettings()

CLIENT_GONE = "client disconnected"


def create_app(
    client: GeminiClient | None = None,
    pipeline: DocumentPipeline | None = None,
) -> FastAPI:
    """Build the HTTP app. Collaborators not passed in are built at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = client is None
        gemini = client or GeminiClient(GeminiSettings())
        supabase = SupabaseTelemetry(TelemetrySettings())
        telemetry = supabase if supabase.enabled else LoggingTelemetry()
        app.state.gemini = gemini
        app.state.telemetry = telemetry
        app.state.pipeline = pipeline or DocumentPipeline(
            gemini, gemini, settings=PipelineSettings(), telemetry=telemetry
        )
        try:
            yield
        finally:
            if isinstance(telemetry, SupabaseTelemetry):
                await telemetry.drain()
            if owned:
                await gemini.aclose()

    app = FastAPI(title="PlagiaFix LLM Service", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/health/model")
    async def model_health():
        return await app.state.gemini.check_connection()

    @app.post("/analyze", response_model=AnalysisResult)
    async def analyze(req: AnalyzeRequest):
        try:
            return await app.state.pipeline.analyze(req.text)
        except NoValidResults as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except PipelineError:
            logger.exception("Analysis failed")
            raise HTTPException(status_code=502, detail="Model service unavailable")

    @app.post("/fix", response_model=FixResult)
    async def fix(req: FixRequest):
        try:
            return await app.state.pipeline.fix(req.text, req.issues, req.options)
        except NoValidResults as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except PipelineError:
            logger.exception("Rewrite failed")
            raise HTTPException(status_code=502, detail="Model service unavailable")

    @app.post("/slides", response_model=list[SlideContent])
    async def slides(req: TextRequest):
        try:
            deck = await app.state.gemini.generate_slides(req.text)
        except PipelineError:
            logger.exception("Slide generation failed")
            raise HTTPException(status_code=502, detail="Model service unavailable")
        app.state.telemetry.record(EventType.SLIDE, f"slides={len(deck)}")
        return deck

    @app.post("/summary", response_model=SummaryMemo)
    async def summary(req: TextRequest):
        try:
            return await app.state.gemini.generate_summary(req.text)
        except PipelineError:
            logger.exception("Summary generation failed")
            raise HTTPException(status_code=502, detail="Model service unavailable")

    @app.websocket("/stream")
    async def stream_endpoint(ws: WebSocket):
        await ws.accept()
        token = CancellationToken()
        try:
            raw = await ws.receive_text()
            try:
                req = StreamRequest.model_validate_json(raw)
            except ValidationError as exc:
                await _send(ws, ErrorMessage(detail=f"Invalid request: {exc}", code="bad_request"))
                await ws.close()
                return

            queue: asyncio.Queue = asyncio.Queue()
            sender = asyncio.create_task(_send_progress(ws, queue))
            watcher = asyncio.create_task(_watch_client(ws, token))

            def on_progress(percent: int, message: str) -> None:
                queue.put_nowait(ProgressMessage(percent=percent, message=message))

            pipeline_: DocumentPipeline = app.state.pipeline
            try:
                if req.type == StreamRequestType.analyze:
                    result = await pipeline_.analyze(req.text, on_progress, token)
                else:
                    result = await pipeline_.fix(req.text, req.issues, req.options, on_progress, token)
                reply = ResultMessage(result=result)
            except NoValidResults as exc:
                reply = ErrorMessage(detail=str(exc), code="no_valid_results")
            except OperationCancelled:
                logger.info("Stream cancelled: %s", token.reason)
                if token.reason == CLIENT_GONE:
                    return
                reply = ErrorMessage(detail="Cancelled by client", code="cancelled")
            except PipelineError as exc:
                logger.exception("Stream processing failed")
                reply = ErrorMessage(detail=str(exc), code="pipeline_error")
            finally:
                watcher.cancel()
                queue.put_nowait(None)
                await sender

            await _send(ws, reply)
            await ws.close()
        except WebSocketDisconnect:
            token.cancel(CLIENT_GONE)
            logger.info("Stream client disconnected")

    return app


async def _send(ws: WebSocket, message) -> None:
    await ws.send_text(message.model_dump_json(by_alias=True))


async def _send_progress(ws: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued progress updates to the client in order."""
    while True:
        message = await queue.get()
        if message is None:
            return
        try:
            await _send(ws, message)
        except Exception:
            logger.info("Dropping progress update; client gone")


async def _watch_client(ws: WebSocket, token: CancellationToken) -> None:
    """Cancel the running job on disconnect or an explicit cancel message."""
    while not token.cancelled:
        message = await ws.receive()
        if message.get("type") == "websocket.disconnect":
            token.cancel(CLIENT_GONE)
        elif "text" in message and message["text"]:
            try:
                data = json.loads(message["text"])
            except json.JSONDecodeError:
                continue
            if data.get("type") == "cancel":
                token.cancel("cancelled by client")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
