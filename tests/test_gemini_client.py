import asyncio
import base64
import json
import logging

import httpx
import pytest

from geminiflow.core.config import AppConfig, GeminiCredentials
from geminiflow.core.models import AgentMode, Attachment, LimitConfig
from geminiflow.core.rate_limit import CompositeLimiter
from geminiflow.services.container import ServiceContainer
from geminiflow.services.gemini_client import GeminiClient, GeminiConfigError, GeminiError


def _reply(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class Recorder:
    def __init__(self, status_code: int, **kwargs) -> None:
        self.status_code = status_code
        self.kwargs = kwargs
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, **self.kwargs)

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _client(handler, clock, short_max: int = 2, **overrides) -> GeminiClient:
    config = AppConfig(creds=GeminiCredentials(api_key="test-key", auth_method="api-key"), **overrides)
    limiter = CompositeLimiter.from_limits(
        LimitConfig(max_requests=short_max, window_ms=1000),
        LimitConfig(max_requests=5, window_ms=86_400_000),
        clock=clock,
        sleep=clock.sleep,
    )
    return GeminiClient(config, limiter=limiter, transport=httpx.MockTransport(handler))


def test_execute_posts_prompt_and_returns_text(clock):
    recorder = Recorder(200, json=_reply("hello there"))
    client = _client(recorder, clock)

    async def scenario():
        try:
            return await client.execute("Say hi", AgentMode.CODER)
        finally:
            await client.aclose()

    text = asyncio.run(scenario())

    assert text == "hello there"
    request = recorder.requests[0]
    assert request.url.path.endswith("/models/gemini-1.5-pro:generateContent")
    assert request.headers["x-goog-api-key"] == "test-key"
    body = recorder.last_body
    assert body["contents"] == [{"role": "user", "parts": [{"text": "Say hi"}]}]
    assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 8192}
    usage = client.get_rate_limit_status()
    assert usage.short.used == 1
    assert usage.long.used == 1


def test_multimodal_inlines_files_and_takes_one_permit(clock):
    recorder = Recorder(200, json=_reply("a cat"))
    client = _client(recorder, clock)
    files = [Attachment("image/png", b"\x89PNG"), Attachment("application/pdf", b"%PDF-1.4")]

    async def scenario():
        try:
            return await client.execute_multimodal("Describe", files, "ask")
        finally:
            await client.aclose()

    assert asyncio.run(scenario()) == "a cat"

    parts = recorder.last_body["contents"][0]["parts"]
    assert parts[0] == {"text": "Describe"}
    assert parts[1]["inlineData"] == {"mimeType": "image/png", "data": base64.b64encode(b"\x89PNG").decode()}
    assert parts[2]["inlineData"]["mimeType"] == "application/pdf"
    assert client.get_rate_limit_status().short.used == 1


def test_http_failure_is_wrapped_and_still_counted(clock):
    recorder = Recorder(500, json={"error": {"message": "boom"}})
    client = _client(recorder, clock)

    async def scenario():
        try:
            await client.execute("hi", "ask")
        finally:
            await client.aclose()

    with pytest.raises(GeminiError, match="Gemini execution failed") as excinfo:
        asyncio.run(scenario())

    assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)
    assert client.get_rate_limit_status().short.used == 1


def test_blocked_prompt_raises_with_reason(clock):
    recorder = Recorder(200, json={"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})
    client = _client(recorder, clock)

    async def scenario():
        try:
            await client.execute("hi", "ask")
        finally:
            await client.aclose()

    with pytest.raises(GeminiError, match="SAFETY"):
        asyncio.run(scenario())


def test_third_call_waits_for_minute_window(clock):
    recorder = Recorder(200, json=_reply("ok"))
    client = _client(recorder, clock)

    async def scenario():
        try:
            for _ in range(3):
                await client.execute("hi", "ask")
        finally:
            await client.aclose()

    asyncio.run(scenario())

    assert len(recorder.requests) == 3
    assert clock.now == pytest.approx(1.0, abs=0.005)


def test_stream_execute_yields_sse_chunks(clock):
    events = "".join(f"data: {json.dumps(_reply(piece))}\r\n\r\n" for piece in ("Hel", "lo"))
    recorder = Recorder(200, content=events.encode())
    client = _client(recorder, clock)

    async def scenario():
        try:
            return [chunk async for chunk in client.stream_execute("hi", AgentMode.TUTORIAL)]
        finally:
            await client.aclose()

    chunks = asyncio.run(scenario())

    assert chunks == ["Hel", "lo"]
    request = recorder.requests[0]
    assert request.url.path.endswith(":streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert recorder.last_body["generationConfig"]["temperature"] == 0.6
    assert client.get_rate_limit_status().long.used == 1


def test_stream_failure_is_wrapped(clock):
    client = _client(Recorder(429), clock)

    async def scenario():
        try:
            return [chunk async for chunk in client.stream_execute("hi", "ask")]
        finally:
            await client.aclose()

    with pytest.raises(GeminiError, match="stream execution failed"):
        asyncio.run(scenario())


def test_health_check_does_not_wait_for_quota(clock):
    recorder = Recorder(200, json=_reply("hi"))
    client = _client(recorder, clock, short_max=1)

    async def scenario():
        try:
            return await client.check_health(), await client.check_health()
        finally:
            await client.aclose()

    first, second = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert len(recorder.requests) == 1
    assert recorder.last_body["generationConfig"] == {"maxOutputTokens": 10}
    assert clock.sleeps == []


def test_health_check_reports_http_failure(clock, caplog):
    client = _client(Recorder(503), clock)

    async def scenario():
        try:
            return await client.check_health()
        finally:
            await client.aclose()

    with caplog.at_level(logging.ERROR, logger="geminiflow.services.gemini_client"):
        assert asyncio.run(scenario()) is False
    assert "health check failed" in caplog.text


def test_api_key_auth_requires_key():
    config = AppConfig(creds=GeminiCredentials(api_key="", auth_method="api-key"))
    with pytest.raises(GeminiConfigError, match="API key is required"):
        GeminiClient(config)


def test_unknown_auth_method_is_rejected():
    config = AppConfig(creds=GeminiCredentials(api_key="k", auth_method="oauth"))
    with pytest.raises(GeminiConfigError, match="Unknown auth method"):
        GeminiClient(config)


def test_google_account_without_key_warns(monkeypatch, caplog):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    config = AppConfig(creds=GeminiCredentials(api_key="", auth_method="google-account"))

    with caplog.at_level(logging.WARNING, logger="geminiflow.services.gemini_client"):
        client = GeminiClient(config)
    asyncio.run(client.aclose())

    assert "No API key provided" in caplog.text


def test_mode_temperature_falls_back_to_config_then_default(clock):
    client = _client(Recorder(200), clock, temperature=0.9)
    assert client.mode_temperature(AgentMode.DEBUGGER) == 0.1
    assert client.mode_temperature("debugger") == 0.1
    assert client.mode_temperature("freestyle") == 0.9

    plain = _client(Recorder(200), clock)
    assert plain.mode_temperature("freestyle") == 0.5
    asyncio.run(client.aclose())
    asyncio.run(plain.aclose())


def test_container_shares_limiter_with_client():
    config = AppConfig(creds=GeminiCredentials(api_key="k", auth_method="api-key"), requests_per_minute=7)
    services = ServiceContainer.build(config, transport=httpx.MockTransport(Recorder(200, json=_reply("x"))))

    assert services.client.limiter is services.limiter
    assert services.limiter.short.limit == LimitConfig(max_requests=7, window_ms=60_000)
    assert services.limiter.long.limit.window_ms == 86_400_000
    asyncio.run(services.aclose())
