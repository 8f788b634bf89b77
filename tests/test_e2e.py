"""End-to-end tests: they need running services and a Gemini key, or are skipped."""

import json
import os

import pytest

E2E = os.environ.get("RUN_E2E", "").lower() in ("1", "true", "yes")
pytestmark = pytest.mark.skipif(not E2E, reason="E2E tests disabled (set RUN_E2E=1)")

SAMPLE = (
    "In today's fast-paced world, it is important to note that technology plays a pivotal role.\n\n"
    "Furthermore, the landscape of education continues to evolve in unprecedented ways.\n\n"
    "In conclusion, we must delve into these changes to unlock their full potential."
)


@pytest.mark.asyncio
async def test_llm_analyze():
    import httpx

    url = os.environ.get("LLM_URL", "http://localhost:8002/analyze")
    async with httpx.AsyncClient(timeout=300) as client:
        resp = await client.post(url, json={"text": SAMPLE})
        assert resp.status_code == 200
        data = resp.json()
        assert 0 <= data["plagiarismScore"] <= 100
        assert "critique" in data


@pytest.mark.asyncio
async def test_llm_stream_fix():
    import websockets

    uri = os.environ.get("LLM_WS_URL", "ws://localhost:8002/stream")
    async with websockets.connect(uri) as ws:
        await ws.send(json.dumps({"type": "fix", "text": SAMPLE, "options": {"mode": "Ghost"}}))

        messages = []
        async for msg in ws:
            data = json.loads(msg)
            messages.append(data)
            if data["type"] != "progress":
                break

        assert messages[-1]["type"] == "result"
        assert messages[-1]["result"]["rewrittenText"]


@pytest.mark.asyncio
async def test_live_session_opens_and_closes():
    import websockets
    import numpy as np

    uri = os.environ.get("LIVE_WS_URL", "ws://localhost:8000/live")
    async with websockets.connect(uri) as ws:
        await ws.send(json.dumps({
            "type": "start",
            "sessionId": "e2e-test",
            "sampleRate": 16000,
            "encoding": "pcm_f32le",
            "channels": 1,
        }))
        opened = json.loads(await ws.recv())
        assert opened["type"] == "open"

        # 1s of silence in two frames
        silence = np.zeros(16000, dtype=np.float32).tobytes()
        half = len(silence) // 2
        await ws.send(silence[:half])
        await ws.send(silence[half:])

        await ws.send(json.dumps({"type": "end", "sessionId": "e2e-test"}))

        types = []
        async for msg in ws:
            if isinstance(msg, bytes):
                continue
            data = json.loads(msg)
            types.append(data["type"])
            if data["type"] == "closed":
                break

        assert "closed" in types
