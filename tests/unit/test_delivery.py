"""
Unit tests for the circuit breaker, retry policy and delivery client
"""

import asyncio
import json
import httpx
import pytest
from core.exceptions import CircuitOpenError
from exporter.delivery.circuit_breaker import CircuitBreaker, CircuitState
from exporter.delivery.client import APP_KEY_HEADER, BATCH_ENDPOINT, SINGLE_ENDPOINT, build_timeout
from exporter.delivery.retry import RetryPolicy
from core.config import Settings
from schemas.delivery import DeliveryOutcome
from schemas.envelope import Envelope, ReportEvent, ReportUser


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_envelope(n: int) -> Envelope:
    return Envelope(
        user=ReportUser(user_unique_id=f"user-{n:09d}"),
        events=[ReportEvent(event="page_vidw", params="{}", local_time_ms=1000 + n)],
        record_id=n,
        table_name="page_vidw",
    )


def make_breaker(clock, **kwargs) -> CircuitBreaker:
    options = dict(failure_rate_threshold=50.0, sliding_window_size=10, minimum_calls=5, wait_duration=30.0)
    options.update(kwargs)
    return CircuitBreaker(name="test", clock=clock, **options)


class TestCircuitBreaker:
    """Test breaker state transitions"""

    def test_stays_closed_below_minimum_calls(self):
        breaker = make_breaker(FakeClock())

        for _ in range(4):
            breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_opens_when_failure_rate_reaches_threshold(self):
        breaker = make_breaker(FakeClock())

        for _ in range(3):
            breaker.record_success()
        for _ in range(3):
            breaker.record_failure()

        assert breaker.failure_rate == 50.0
        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.times_opened == 1

    def test_stays_closed_below_threshold(self):
        breaker = make_breaker(FakeClock())

        for _ in range(6):
            breaker.record_success()
        for _ in range(4):
            breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_window_only_keeps_recent_calls(self):
        breaker = make_breaker(FakeClock(), sliding_window_size=4, minimum_calls=4)

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_success()
        breaker.record_success()

        assert breaker.failure_rate == 25.0
        assert breaker.state == CircuitState.CLOSED

    def test_open_circuit_rejects(self):
        breaker = make_breaker(FakeClock())
        for _ in range(5):
            breaker.record_failure()

        assert not breaker.allow_request()
        with pytest.raises(CircuitOpenError):
            breaker.acquire()
        assert breaker.stats.rejected_calls == 2

    def test_single_trial_after_cool_down(self):
        """Test exactly one call is admitted once the wait duration elapsed"""
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(5):
            breaker.record_failure()

        clock.advance(29)
        assert not breaker.allow_request()

        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_trial_success_closes(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)

        assert breaker.allow_request()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_rate == 0.0

    def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)

        assert breaker.allow_request()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.times_opened == 2
        clock.advance(29)
        assert not breaker.allow_request()

    def test_released_trial_admits_next_call(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(30)

        assert breaker.allow_request()
        breaker.release_trial()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_release_trial_ignored_when_closed(self):
        breaker = make_breaker(FakeClock())

        breaker.release_trial()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_reset(self):
        breaker = make_breaker(FakeClock())
        for _ in range(5):
            breaker.record_failure()

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()


class TestRetryPolicy:
    """Test the bounded retry loop"""

    @pytest.mark.asyncio
    async def test_stops_on_first_success(self, retry_policy, sleeps):
        outcomes = [DeliveryOutcome.failed(500, "HTTP 500"), DeliveryOutcome.succeeded(1)]
        calls = []

        async def attempt():
            calls.append(1)
            return outcomes[len(calls) - 1]

        outcome = await retry_policy.run(attempt, description="test")

        assert outcome.success
        assert len(calls) == 2
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_max_attempts_with_sleep_between(self, retry_policy, sleeps):
        calls = []

        async def attempt():
            calls.append(1)
            return DeliveryOutcome.failed(503, "HTTP 503")

        outcome = await retry_policy.run(attempt)

        assert not outcome.success
        assert outcome.http_status == 503
        assert len(calls) == 3
        assert sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_circuit_open_stops_immediately(self, retry_policy, sleeps):
        calls = []

        async def attempt():
            calls.append(1)
            return DeliveryOutcome.rejected("Circuit breaker 'test' is open")

        outcome = await retry_policy.run(attempt)

        assert outcome.circuit_open
        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_single_attempt_policy(self, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        policy = RetryPolicy(max_attempts=1, interval_seconds=5.0, sleep=fake_sleep)

        async def attempt():
            return DeliveryOutcome.failed(0, "Connection error")

        outcome = await policy.run(attempt)

        assert not outcome.success
        assert sleeps == []


class TestDeliveryClient:
    """Test HTTP delivery and response classification"""

    @pytest.mark.asyncio
    async def test_send_single_posts_envelope(self, make_client):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"e": 0, "message": "success", "sc": 1, "ec": 0})

        client = make_client(handler)
        outcome = await client.send_single(make_envelope(1))

        assert outcome.success
        assert outcome.success_count == 1
        assert outcome.error_count == 0
        assert not outcome.is_partial

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == SINGLE_ENDPOINT
        assert request.headers[APP_KEY_HEADER] == "test-app-key"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {
            "user": {"user_unique_id": "user-000000001"},
            "header": {},
            "events": [{"event": "page_vidw", "params": "{}", "local_time_ms": 1001}],
        }

    @pytest.mark.asyncio
    async def test_send_batch_posts_array(self, make_client):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"sc": 3, "ec": 0})

        client = make_client(handler)
        outcome = await client.send_batch([make_envelope(n) for n in range(3)])

        assert outcome.success
        assert requests[0].url.path == BATCH_ENDPOINT
        assert len(json.loads(requests[0].content)) == 3

    @pytest.mark.asyncio
    async def test_batch_truncated_to_cap(self, make_client, caplog):
        """Test batches above the provider cap are cut to exactly the cap with a warning"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"sc": 50, "ec": 0})

        client = make_client(handler)
        with caplog.at_level("WARNING"):
            outcome = await client.send_batch([make_envelope(n) for n in range(60)])

        assert outcome.success
        body = json.loads(requests[0].content)
        assert len(body) == 50
        assert body[-1]["user"]["user_unique_id"] == "user-000000049"
        assert "Batch size 60 exceeds maximum 50, truncating" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_batch_sends_nothing(self, make_client):
        requests = []
        client = make_client(lambda request: requests.append(request) or httpx.Response(200))

        outcome = await client.send_batch([])

        assert outcome.success
        assert requests == []

    @pytest.mark.asyncio
    async def test_non_200_is_failure_with_body(self, make_client):
        client = make_client(lambda request: httpx.Response(500, text="internal error"))

        outcome = await client.send_single(make_envelope(1))

        assert not outcome.success
        assert outcome.http_status == 500
        assert outcome.raw_response == "internal error"
        assert outcome.error_message == "HTTP 500: internal error"

    @pytest.mark.asyncio
    async def test_unparseable_200_is_success(self, make_client):
        client = make_client(lambda request: httpx.Response(200, text="OK"))

        outcome = await client.send_single(make_envelope(1))

        assert outcome.success
        assert outcome.raw_response == "OK"
        assert outcome.success_count is None

    @pytest.mark.asyncio
    async def test_partial_success(self, make_client):
        client = make_client(lambda request: httpx.Response(200, json={"e": 0, "message": "partial", "sc": 18, "ec": 2}))

        outcome = await client.send_batch([make_envelope(n) for n in range(20)])

        assert outcome.success
        assert outcome.is_partial
        assert outcome.error_count == 2

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, make_client):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        outcome = await client.send_single(make_envelope(1))

        assert not outcome.success
        assert outcome.http_status == 0
        assert outcome.error_message.startswith("Timeout (ReadTimeout)")

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self, make_client):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        outcome = await client.send_single(make_envelope(1))

        assert not outcome.success
        assert outcome.error_message.startswith("Connection error")

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_without_request(self, make_client):
        """Test the call after the breaker opens issues zero network calls"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(503, text="unavailable")

        clock = FakeClock()
        breaker = make_breaker(clock)
        client = make_client(handler, breaker_override=breaker)

        for n in range(5):
            await client.send_single(make_envelope(n))
        assert breaker.state == CircuitState.OPEN
        assert len(requests) == 5

        outcome = await client.send_single(make_envelope(99))

        assert outcome.circuit_open
        assert not outcome.success
        assert len(requests) == 5

        clock.advance(30)
        outcome = await client.send_single(make_envelope(100))
        assert len(requests) == 6
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_trial_does_not_block_circuit(self, make_client):
        """Test a half-open trial cancelled mid-request frees the slot for the next call"""
        calls = []
        hold = asyncio.Event()
        entered = asyncio.Event()

        async def handler(request):
            calls.append(request)
            if len(calls) <= 5:
                return httpx.Response(503, text="unavailable")
            if len(calls) == 6:
                entered.set()
                await hold.wait()
            return httpx.Response(200, json={"sc": 1, "ec": 0})

        clock = FakeClock()
        breaker = make_breaker(clock)
        client = make_client(handler, breaker_override=breaker)
        for n in range(5):
            await client.send_single(make_envelope(n))
        assert breaker.state == CircuitState.OPEN

        clock.advance(30)
        trial = asyncio.ensure_future(client.send_single(make_envelope(5)))
        await entered.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        outcome = await client.send_single(make_envelope(6))

        assert outcome.success
        assert len(calls) == 7
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_successes_recorded_on_breaker(self, make_client, breaker):
        client = make_client(lambda request: httpx.Response(200, json={"sc": 1, "ec": 0}))

        await client.send_single(make_envelope(1))

        assert breaker.stats.successful_calls == 1


class TestTimeouts:
    """Test timeout configuration"""

    def test_build_timeout_from_settings(self):
        settings = Settings(
            HTTP_CONNECT_TIMEOUT_MS=2000,
            HTTP_SOCKET_TIMEOUT_MS=7000,
            HTTP_CONNECTION_REQUEST_TIMEOUT_MS=500,
        )

        timeout = build_timeout(settings)

        assert timeout.connect == 2.0
        assert timeout.read == 7.0
        assert timeout.write == 7.0
        assert timeout.pool == 0.5
