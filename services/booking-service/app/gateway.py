"""
Payment gateway adapter.

Anything with these three coroutines can act as a gateway:

    authorize(amount, currency, idempotency_key, metadata) -> GatewayResult
    capture(reference, amount, idempotency_key) -> GatewayResult
    refund(reference, amount, idempotency_key) -> GatewayResult

and raises GatewayDeclined for hard rejections, GatewayTransientError for
anything worth retrying.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import HTTP_TIMEOUT

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 409, 425, 429}


class GatewayError(Exception):
    pass


class GatewayDeclined(GatewayError):
    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class GatewayTransientError(GatewayError):
    pass


@dataclass(frozen=True)
class GatewayResult:
    reference: str
    amount: Decimal
    status: str


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        breaker: CircuitBreaker | None = None,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.breaker = breaker
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def authorize(self, amount: Decimal, currency: str, idempotency_key: str, metadata: dict | None = None) -> GatewayResult:
        payload = {"amount": str(amount), "currency": currency, "metadata": metadata or {}}
        data = await self._post("/authorizations", payload, idempotency_key)
        return self._result(data, amount)

    async def capture(self, reference: str, amount: Decimal, idempotency_key: str) -> GatewayResult:
        data = await self._post(f"/authorizations/{reference}/capture", {"amount": str(amount)}, idempotency_key)
        return self._result(data, amount, reference)

    async def refund(self, reference: str, amount: Decimal, idempotency_key: str) -> GatewayResult:
        data = await self._post(f"/authorizations/{reference}/refund", {"amount": str(amount)}, idempotency_key)
        return self._result(data, amount, reference)

    @staticmethod
    def _result(data: dict, amount: Decimal, reference: str | None = None) -> GatewayResult:
        ref = data.get("id") or reference
        if not ref:
            raise GatewayTransientError("gateway response without id")
        try:
            settled = Decimal(str(data.get("amount", amount)))
        except InvalidOperation:
            raise GatewayTransientError(f"gateway response with bad amount: {data.get('amount')!r}")
        return GatewayResult(
            reference=str(ref),
            amount=settled,
            status=str(data.get("status") or "ok"),
        )

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        if self.breaker is not None:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise GatewayTransientError(str(e))

        headers = {"Idempotency-Key": idempotency_key}

        try:
            resp = await self._get_client().post(path, json=payload, headers=headers)
        except httpx.TimeoutException:
            await self._record_failure()
            raise GatewayTransientError(f"Timeout calling payment gateway: {path}")
        except httpx.TransportError as e:
            await self._record_failure()
            raise GatewayTransientError(f"Transport error calling payment gateway: {e}")

        if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUSES:
            await self._record_failure()
            raise GatewayTransientError(f"Payment gateway returned {resp.status_code} for {path}")

        if resp.status_code >= 400:
            # upstream answered: the breaker only tracks availability
            await self._record_success()
            reason = resp.text
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                reason = body.get("reason") or body.get("detail") or reason
            logger.info("payment gateway rejected %s: %s %s", path, resp.status_code, reason)
            raise GatewayDeclined(str(reason), status_code=resp.status_code)

        data = {}
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                # a 2xx we cannot read says nothing about whether money moved
                await self._record_failure()
                logger.warning("unreadable payment gateway response for %s: %.200r", path, resp.text)
                raise GatewayTransientError(f"Unreadable payment gateway response for {path}")

        await self._record_success()
        return data

    async def _record_failure(self):
        if self.breaker is not None:
            await self.breaker.record_failure()

    async def _record_success(self):
        if self.breaker is not None:
            await self.breaker.record_success()
