import httpx
import pytest

from pipeline.cancellation import CancellationToken
from pipeline.errors import ExhaustedRetries, MalformedResponse, OperationCancelled, TransientRemoteFailure
from pipeline.retry import RetryPolicy, is_rate_limited, with_retry


class FlakyCall:
    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or TransientRemoteFailure("connection reset")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
    return _sleep


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy()
        assert policy.delay(0, rate_limited=False) == 1.0
        assert policy.delay(3, rate_limited=False) == 8.0
        assert policy.delay(10, rate_limited=False) == 20.0

    def test_rate_limit_wait_has_jitter_window(self):
        policy = RetryPolicy()
        for _ in range(20):
            assert 15.0 <= policy.delay(0, rate_limited=True) <= 20.0

    def test_rate_limit_detection(self):
        assert is_rate_limited(TransientRemoteFailure("slow down", rate_limited=True))
        assert is_rate_limited(RuntimeError("Quota exceeded for project"))
        assert is_rate_limited(RuntimeError("RESOURCE_EXHAUSTED"))
        assert not is_rate_limited(RuntimeError("connection reset"))

    def test_http_429_is_rate_limited(self):
        request = httpx.Request("POST", "https://example.test/generate")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("too many", request=request, response=response)
        assert is_rate_limited(exc)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleeps, fake_sleep):
        call = FlakyCall(failures=2)
        messages = []
        result = await with_retry(call, on_retry=messages.append, sleep=fake_sleep)
        assert result == "ok"
        assert call.calls == 3
        assert sleeps == [1.0, 2.0]
        assert len(messages) == 2
        assert "retrying" in messages[0]

    @pytest.mark.asyncio
    async def test_gives_up_without_sleeping_after_last_attempt(self, sleeps, fake_sleep):
        error = TransientRemoteFailure("still down")
        call = FlakyCall(failures=100, error=error)
        with pytest.raises(ExhaustedRetries) as info:
            await with_retry(call, max_attempts=4, sleep=fake_sleep)
        assert call.calls == 4
        assert len(sleeps) == 3
        assert info.value.last_error is error
        assert info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_rate_limit_uses_long_wait_and_distinct_message(self, sleeps, fake_sleep):
        call = FlakyCall(failures=1, error=RuntimeError("429 Too Many Requests"))
        messages = []
        await with_retry(call, on_retry=messages.append, sleep=fake_sleep)
        assert 15.0 <= sleeps[0] <= 20.0
        assert messages[0].startswith("Rate limited")

    @pytest.mark.asyncio
    async def test_malformed_response_is_not_retried(self, sleeps, fake_sleep):
        call = FlakyCall(failures=5, error=MalformedResponse("garbage"))
        with pytest.raises(MalformedResponse):
            await with_retry(call, sleep=fake_sleep)
        assert call.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_calling(self):
        token = CancellationToken()
        token.cancel("user stopped")
        call = FlakyCall(failures=0)
        with pytest.raises(OperationCancelled):
            await with_retry(call, cancel_token=token)
        assert call.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff(self):
        token = CancellationToken()
        call = FlakyCall(failures=1)

        def cancel_on_retry(message: str) -> None:
            token.cancel("user stopped")

        policy = RetryPolicy(base_delay_s=30.0)
        with pytest.raises(OperationCancelled):
            await with_retry(call, on_retry=cancel_on_retry, policy=policy, cancel_token=token)
        assert call.calls == 1
