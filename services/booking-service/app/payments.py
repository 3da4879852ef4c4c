"""
Payment orchestrator.

Ties money movement to booking transitions. Every operation is idempotent
against its own terminal state and against its idempotency key:

  - authorize: places a hold, or fails with PaymentDeclined (never retried
    on a decline; the caller decides)
  - capture: authorized -> captured. Replaying a key is a no-op success.
    A captured payment may take one more capture under a new key (the
    balance on completion).
  - refund: authorized|captured -> refunded. Refunding a refunded payment is
    a no-op success.

Transient gateway errors are retried with exponential backoff; once the
attempts run out the caller gets PaymentOperationFailed and is expected to
compensate.
"""

import asyncio
import enum
import logging
import uuid
from decimal import Decimal

from shared.database import utcnow
from shared.idempotency import booking_key, payment_key

from .config import (
    CURRENCY,
    PAYMENT_MAX_ATTEMPTS,
    PAYMENT_BACKOFF_SECONDS,
    PAYMENT_BACKOFF_MAX_SECONDS,
)
from .errors import (
    InvalidPaymentState,
    PaymentDeclined,
    PaymentNotFound,
    PaymentOperationFailed,
)
from .gateway import GatewayDeclined, GatewayTransientError
from .locks import KeyedLock
from .models import Payment, PaymentOperation
from .pricing import to_money

logger = logging.getLogger(__name__)


class PaymentState(str, enum.Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"


CAPTURABLE = {PaymentState.AUTHORIZED.value, PaymentState.CAPTURED.value}
REFUNDABLE = {PaymentState.AUTHORIZED.value, PaymentState.CAPTURED.value}


class PaymentOrchestrator:
    def __init__(
        self,
        gateway,
        payments,
        *,
        currency: str = CURRENCY,
        max_attempts: int = PAYMENT_MAX_ATTEMPTS,
        backoff_seconds: float = PAYMENT_BACKOFF_SECONDS,
        backoff_max_seconds: float = PAYMENT_BACKOFF_MAX_SECONDS,
        sleep=asyncio.sleep,
    ):
        self.gateway = gateway
        self.payments = payments
        self.currency = currency
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._locks = KeyedLock("payment")

    async def get(self, payment_id: str) -> Payment:
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        return payment

    async def authorize(self, booking_id: str, amount: Decimal, currency: str | None = None) -> Payment:
        amount = to_money(amount)
        currency = currency or self.currency
        payment_id = str(uuid.uuid4())
        key = booking_key(booking_id, "authorize")

        try:
            result = await self._with_retry(
                "authorize",
                lambda: self.gateway.authorize(amount, currency, key, {"booking_id": booking_id}),
            )
        except GatewayDeclined as e:
            await self.payments.insert(
                Payment(
                    payment_id=payment_id,
                    booking_id=booking_id,
                    amount=amount,
                    currency=currency,
                    state=PaymentState.FAILED.value,
                    failure_reason=e.reason,
                )
            )
            logger.info("authorization declined for booking %s: %s", booking_id, e.reason)
            raise PaymentDeclined(e.reason)

        payment = Payment(
            payment_id=payment_id,
            booking_id=booking_id,
            amount=amount,
            currency=currency,
            state=PaymentState.AUTHORIZED.value,
            gateway_ref=result.reference,
            captured_amount=Decimal("0.00"),
            refunded_amount=Decimal("0.00"),
        )
        operation = PaymentOperation(
            payment_id=payment_id,
            idempotency_key=key,
            kind="authorize",
            amount=amount,
            gateway_ref=result.reference,
        )
        await self.payments.insert(payment, operation)
        logger.info("authorized %s %s for booking %s (payment %s)", amount, currency, booking_id, payment_id)
        return payment

    async def capture(self, payment_id: str, amount: Decimal, idempotency_key: str | None = None) -> Payment:
        amount = to_money(amount)
        key = idempotency_key or payment_key(payment_id, "capture")

        async with self._locks.hold(payment_id):
            payment = await self.get(payment_id)

            if await self.payments.find_operation(key) is not None:
                logger.debug("capture %s already applied to payment %s", key, payment_id)
                return payment

            if payment.state not in CAPTURABLE:
                raise InvalidPaymentState(payment_id, payment.state, "capture")

            if amount <= 0:
                return payment

            captured = to_money(payment.captured_amount) + amount
            if captured > to_money(payment.amount):
                raise InvalidPaymentState(
                    payment_id, payment.state, "capture",
                    reason=f"{captured} exceeds the authorized {to_money(payment.amount)}",
                )

            result = await self._with_retry(
                "capture",
                lambda: self.gateway.capture(payment.gateway_ref, amount, key),
                hard_fail=True,
            )

            return await self._record(
                payment,
                key=key,
                kind="capture",
                amount=amount,
                gateway_ref=result.reference,
                values={
                    "state": PaymentState.CAPTURED.value,
                    "captured_amount": captured,
                },
            )

    async def refund(self, payment_id: str, idempotency_key: str | None = None) -> Payment:
        key = idempotency_key or payment_key(payment_id, "refund")

        async with self._locks.hold(payment_id):
            payment = await self.get(payment_id)

            if payment.state == PaymentState.REFUNDED.value:
                return payment
            if await self.payments.find_operation(key) is not None:
                return payment
            if payment.state not in REFUNDABLE:
                raise InvalidPaymentState(payment_id, payment.state, "refund")

            # everything captured goes back; an uncaptured hold is released for 0
            amount = to_money(payment.captured_amount)
            result = await self._with_retry(
                "refund",
                lambda: self.gateway.refund(payment.gateway_ref, amount, key),
                hard_fail=True,
            )

            return await self._record(
                payment,
                key=key,
                kind="refund",
                amount=amount,
                gateway_ref=result.reference,
                values={
                    "state": PaymentState.REFUNDED.value,
                    "refunded_amount": amount,
                },
            )

    async def _record(self, payment: Payment, *, key: str, kind: str, amount: Decimal, gateway_ref: str, values: dict) -> Payment:
        values = dict(values, updated_at=utcnow())
        updated = await self.payments.apply(
            payment.payment_id,
            expected_version=payment.version,
            values=values,
            operation=PaymentOperation(
                payment_id=payment.payment_id,
                idempotency_key=key,
                kind=kind,
                amount=amount,
                gateway_ref=gateway_ref,
            ),
        )
        if updated is None:
            # another worker recorded it first; the gateway saw the same key
            logger.warning("payment %s changed while recording %s; keeping stored state", payment.payment_id, key)
            return await self.get(payment.payment_id)

        logger.info("%s %s on payment %s -> %s", kind, amount, payment.payment_id, updated.state)
        return updated

    async def _with_retry(self, operation: str, call, hard_fail: bool = False):
        """
        hard_fail: a gateway decline surfaces as PaymentOperationFailed
        instead of propagating GatewayDeclined.
        """
        attempt = 0
        delay = self.backoff_seconds
        while True:
            attempt += 1
            try:
                return await call()
            except GatewayDeclined as e:
                if hard_fail:
                    raise PaymentOperationFailed(operation, e.reason, attempts=attempt)
                raise
            except GatewayTransientError as e:
                if attempt >= self.max_attempts:
                    logger.error("payment %s gave up after %d attempts: %s", operation, attempt, e)
                    raise PaymentOperationFailed(operation, str(e), attempts=attempt)
                logger.warning(
                    "payment %s attempt %d/%d failed, retrying in %.2fs: %s",
                    operation, attempt, self.max_attempts, delay, e,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.backoff_max_seconds)
