"""Tests for the HTTP payment gateway adapter and the circuit breaker."""

import json
from decimal import Decimal

import httpx
import pytest

from app.breaker import CircuitBreaker, CircuitBreakerOpen
from app.gateway import GatewayDeclined, GatewayTransientError, HttpPaymentGateway


def make_gateway(handler, **kwargs):
    return HttpPaymentGateway(
        "http://payments.test",
        api_key="sk_test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_authorize_sends_key_and_amount():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "auth_123", "amount": "50.00", "status": "requires_capture"})

    gateway = make_gateway(handler)
    result = await gateway.authorize(Decimal("50.00"), "usd", "booking:b1:authorize", {"booking_id": "b1"})
    await gateway.close()

    assert result.reference == "auth_123"
    assert result.amount == Decimal("50.00")
    request = seen[0]
    assert request.url.path == "/authorizations"
    assert request.headers["Idempotency-Key"] == "booking:b1:authorize"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert json.loads(request.content) == {
        "amount": "50.00",
        "currency": "usd",
        "metadata": {"booking_id": "b1"},
    }


@pytest.mark.asyncio
async def test_capture_and_refund_paths():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"status": "ok"})

    gateway = make_gateway(handler)
    captured = await gateway.capture("auth_1", Decimal("20.00"), "k1")
    refunded = await gateway.refund("auth_1", Decimal("20.00"), "k2")
    await gateway.close()

    assert paths == ["/authorizations/auth_1/capture", "/authorizations/auth_1/refund"]
    assert captured.reference == refunded.reference == "auth_1"


@pytest.mark.asyncio
async def test_card_decline_is_hard_failure():
    def handler(request):
        return httpx.Response(402, json={"reason": "card_declined"})

    gateway = make_gateway(handler)

    with pytest.raises(GatewayDeclined) as exc:
        await gateway.authorize(Decimal("10.00"), "usd", "k")

    assert exc.value.reason == "card_declined"
    assert exc.value.status_code == 402


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 503, 429, 409])
async def test_retryable_statuses_are_transient(status):
    def handler(request):
        return httpx.Response(status)

    gateway = make_gateway(handler)

    with pytest.raises(GatewayTransientError):
        await gateway.capture("auth_1", Decimal("10.00"), "k")


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    gateway = make_gateway(handler)

    with pytest.raises(GatewayTransientError):
        await gateway.refund("auth_1", Decimal("10.00"), "k")


@pytest.mark.asyncio
async def test_response_without_reference_is_transient():
    def handler(request):
        return httpx.Response(200, json={"status": "pending"})

    gateway = make_gateway(handler)

    with pytest.raises(GatewayTransientError):
        await gateway.authorize(Decimal("10.00"), "usd", "k")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>ok</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"id": "ref_1", "amount": "lots"}),
    ],
    ids=["html", "json-list", "bad-amount"],
)
async def test_unreadable_success_body_is_transient(response):
    def handler(request):
        return response

    gateway = make_gateway(handler)

    with pytest.raises(GatewayTransientError):
        await gateway.refund("auth_1", Decimal("10.00"), "k")


@pytest.mark.asyncio
async def test_unreadable_success_body_counts_against_breaker(redis):
    def handler(request):
        return httpx.Response(200, text="<html>ok</html>")

    breaker = CircuitBreaker("payment-gateway", redis, failure_threshold=3, reset_timeout_seconds=60)
    gateway = make_gateway(handler, breaker=breaker)

    with pytest.raises(GatewayTransientError):
        await gateway.capture("auth_1", Decimal("10.00"), "k")

    assert (await breaker.status())["failures"] == 1


@pytest.mark.asyncio
async def test_empty_success_body_keeps_reference():
    def handler(request):
        return httpx.Response(204)

    gateway = make_gateway(handler)
    result = await gateway.capture("auth_1", Decimal("10.00"), "k")

    assert result.reference == "auth_1"
    assert result.amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_breaker_opens_and_blocks_calls(redis):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    breaker = CircuitBreaker("payment-gateway", redis, failure_threshold=3, reset_timeout_seconds=60)
    gateway = make_gateway(handler, breaker=breaker)

    for _ in range(3):
        with pytest.raises(GatewayTransientError):
            await gateway.capture("auth_1", Decimal("10.00"), "k")

    with pytest.raises(GatewayTransientError):
        await gateway.capture("auth_1", Decimal("10.00"), "k")

    assert len(calls) == 3
    assert (await breaker.status())["state"] == "OPEN"


@pytest.mark.asyncio
async def test_decline_does_not_trip_breaker(redis):
    def handler(request):
        return httpx.Response(402, json={"detail": "insufficient_funds"})

    breaker = CircuitBreaker("payment-gateway", redis, failure_threshold=1)
    gateway = make_gateway(handler, breaker=breaker)

    with pytest.raises(GatewayDeclined):
        await gateway.authorize(Decimal("10.00"), "usd", "k")

    assert (await breaker.status())["state"] == "CLOSED"


# ---------------------------------------------------------------------------
# Breaker state machine
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_breaker_half_opens_after_timeout(redis):
    breaker = CircuitBreaker("svc", redis, failure_threshold=1, reset_timeout_seconds=0)

    await breaker.record_failure()
    await breaker.allow_request()

    assert (await breaker.status())["state"] == "HALF_OPEN"

    await breaker.record_failure()
    assert (await breaker.status())["state"] == "OPEN"


@pytest.mark.asyncio
async def test_breaker_success_closes_and_resets(redis):
    breaker = CircuitBreaker("svc", redis, failure_threshold=5)

    await breaker.record_failure()
    await breaker.record_failure()
    assert (await breaker.status())["failures"] == 2

    await breaker.record_success()

    status = await breaker.status()
    assert status == {"name": "svc", "state": "CLOSED", "failures": 0}


@pytest.mark.asyncio
async def test_open_breaker_rejects(redis):
    breaker = CircuitBreaker("svc", redis, failure_threshold=1, reset_timeout_seconds=60)
    await breaker.open()

    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()


class Ticker:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_open_breaker_reports_cooldown_then_lets_a_call_through(redis):
    ticker = Ticker()
    breaker = CircuitBreaker("svc", redis, failure_threshold=2, reset_timeout_seconds=30, clock=ticker)

    await breaker.record_failure()
    await breaker.record_failure()
    ticker.now += 20

    with pytest.raises(CircuitBreakerOpen) as exc:
        await breaker.allow_request()
    assert exc.value.retry_in == pytest.approx(10)

    ticker.now += 10
    await breaker.allow_request()
    assert await breaker.state() == "HALF_OPEN"

    await breaker.record_success()
    assert await breaker.status() == {"name": "svc", "state": "CLOSED", "failures": 0}


@pytest.mark.asyncio
async def test_failures_are_counted_within_window(redis):
    breaker = CircuitBreaker("svc", redis, failure_threshold=3, failure_window_seconds=45)

    await breaker.record_failure()

    assert 0 < await redis.ttl("breaker:svc:failures") <= 45
    assert await breaker.state() == "CLOSED"
