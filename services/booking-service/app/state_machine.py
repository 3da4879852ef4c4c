"""
Booking state machine.

The single authority over booking status. Every transition, for a given
booking id, runs under that booking's lock and is written with a
compare-and-swap on (status, version), so "read status, check edge, write
status" is atomic within a process and across processes.

A transition applies at most one payment side effect. If it raises anything
at all, the booking is put back where it was and the caller gets a
PaymentOperationFailed.
"""

import logging
import uuid
from datetime import timedelta

from shared.database import utcnow
from shared.idempotency import booking_key

from .config import NORMAL_RESPONSE_WINDOW_MINUTES, SOS_RESPONSE_WINDOW_MINUTES
from .errors import (
    AlreadyAssigned,
    BookingError,
    BookingNotFound,
    DeadlineElapsed,
    InvalidPaymentState,
    InvalidTransition,
    PaymentOperationFailed,
    ProviderSearchUnavailable,
)
from .events import (
    BOOKING_CREATED,
    BOOKING_SOS_DISPATCHED,
    STATUS_EVENTS,
    booking_data,
    build_event,
    to_json,
)
from .locks import KeyedLock
from .models import Booking
from .pricing import quote, to_money
from .schemas import CreateBookingRequest, Location, ProviderCandidate
from .transitions import Action, BookingMode, BookingStatus, SideEffect, next_edge

logger = logging.getLogger(__name__)


class BookingStateMachine:
    def __init__(
        self,
        bookings,
        payments,
        deadlines,
        ranker=None,
        publisher=None,
        *,
        clock=utcnow,
        sos_window: timedelta = timedelta(minutes=SOS_RESPONSE_WINDOW_MINUTES),
        normal_window: timedelta = timedelta(minutes=NORMAL_RESPONSE_WINDOW_MINUTES),
    ):
        self.bookings = bookings
        self.payments = payments
        self.deadlines = deadlines
        self.ranker = ranker
        self.publisher = publisher
        self._clock = clock
        self.sos_window = sos_window
        self.normal_window = normal_window
        self._locks = KeyedLock("booking")

        deadlines.bind(self.expire)

    async def get(self, booking_id: str) -> Booking:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    # ---- creation ----

    async def create(self, request: CreateBookingRequest) -> Booking:
        mode = BookingMode(request.mode)
        service = request.service
        q = quote(mode, service.base_price, service.deposit_percent)
        booking_id = str(uuid.uuid4())

        dispatch = mode == BookingMode.SOS and not request.provider_id
        candidates: list[ProviderCandidate] = []
        if dispatch:
            # rank before any money moves; an empty list still creates the booking
            candidates = await self._rank(service.category_id, request.location, request.urgency_level)

        # the hold covers the whole total; the deposit is the first capture against it.
        # PaymentDeclined / PaymentOperationFailed propagate: nothing persisted yet
        payment = await self.payments.authorize(booking_id, q.total_amount)

        now = self._clock()
        window = self.sos_window if mode == BookingMode.SOS else self.normal_window
        location = request.location

        booking = Booking(
            booking_id=booking_id,
            mode=mode.value,
            status=BookingStatus.PENDING.value,
            version=1,
            customer_id=request.customer_id,
            provider_id=request.provider_id,
            category_id=service.category_id,
            subcategory_id=service.subcategory_id,
            service_id=service.service_id,
            base_price=to_money(service.base_price),
            total_amount=q.total_amount,
            deposit_amount=q.deposit_amount,
            platform_fee=q.platform_fee,
            currency=payment.currency,
            urgency_level=request.urgency_level.value,
            service_address=location.address if location else None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            customer_notes=request.notes,
            response_deadline=now + window,
            payment_ref=payment.payment_id,
            created_at=now,
            status_changed_at=now,
        )

        try:
            booking = await self.bookings.insert(booking)
        except Exception:
            logger.exception("persisting booking %s failed, releasing payment hold", booking_id)
            try:
                await self.payments.refund(payment.payment_id)
            except Exception as e:
                logger.critical("could not release hold %s for unsaved booking %s: %s", payment.payment_id, booking_id, e)
            raise

        self.deadlines.watch(booking_id, booking.response_deadline)
        logger.info(
            "created %s booking %s for customer %s (total=%s deposit=%s)",
            mode.value, booking_id, request.customer_id, q.total_amount, q.deposit_amount,
        )

        await self._publish(BOOKING_CREATED, booking)
        if dispatch:
            await self._publish_dispatch(booking, candidates)
        return booking

    async def redispatch(self, booking_id: str) -> list[ProviderCandidate]:
        """Re-rank and re-notify candidates for an unassigned pending SOS booking."""
        booking = await self.get(booking_id)
        if (
            booking.mode != BookingMode.SOS.value
            or booking.status != BookingStatus.PENDING.value
            or booking.provider_id
        ):
            raise InvalidTransition(booking_id, booking.status, "dispatch", reason="not an open sos request")
        if booking.latitude is None or booking.longitude is None:
            raise InvalidTransition(booking_id, booking.status, "dispatch", reason="booking has no location")

        location = Location(
            latitude=booking.latitude,
            longitude=booking.longitude,
            address=booking.service_address,
        )
        candidates = await self._rank(booking.category_id, location, booking.urgency_level)
        await self._publish_dispatch(booking, candidates)
        return candidates

    # ---- transitions ----

    async def accept(self, booking_id: str, provider_id: str) -> Booking:
        def check(booking, edge):
            if booking.provider_id and booking.provider_id != provider_id:
                raise AlreadyAssigned(booking_id)
            if edge is not None and self._deadline_elapsed(booking):
                raise DeadlineElapsed(booking_id, booking.status, Action.ACCEPT.value)

        return await self._transition(
            booking_id,
            Action.ACCEPT,
            check=check,
            changes={"provider_id": provider_id},
        )

    async def decline(self, booking_id: str, reason: str | None = None) -> Booking:
        return await self._transition(booking_id, Action.DECLINE, changes={"declined_reason": reason})

    async def start(self, booking_id: str) -> Booking:
        return await self._transition(booking_id, Action.START)

    async def complete(self, booking_id: str) -> Booking:
        return await self._transition(booking_id, Action.COMPLETE)

    async def cancel(self, booking_id: str, actor: str, reason: str | None = None) -> Booking:
        return await self._transition(
            booking_id,
            Action.CANCEL,
            changes={"cancelled_by": actor, "cancellation_reason": reason},
        )

    async def expire(self, booking_id: str) -> Booking:
        """System only: called by the deadline manager, never by a user action."""

        def check(booking, edge):
            if edge is not None and not self._deadline_elapsed(booking):
                raise InvalidTransition(booking_id, booking.status, Action.EXPIRE.value, reason="response deadline not reached")

        return await self._transition(booking_id, Action.EXPIRE, check=check)

    # ---- internals ----

    def _deadline_elapsed(self, booking: Booking) -> bool:
        return booking.response_deadline is not None and self._clock() >= booking.response_deadline

    async def _transition(self, booking_id: str, action: Action, *, check=None, changes: dict | None = None) -> Booking:
        async with self._locks.hold(booking_id):
            booking = await self.get(booking_id)
            edge = next_edge(booking.status, action)
            if check is not None:
                check(booking, edge)
            if edge is None:
                raise InvalidTransition(booking_id, booking.status, action.value)

            next_status, effect = edge
            leaving_pending = booking.status == BookingStatus.PENDING.value
            if leaving_pending:
                self.deadlines.cancel(booking_id)

            values = {"status": next_status.value, "status_changed_at": self._clock()}
            if leaving_pending:
                values["response_deadline"] = None
            if changes:
                values.update(changes)

            updated = await self.bookings.compare_and_set(
                booking_id,
                expected_status=booking.status,
                expected_version=booking.version,
                values=values,
            )
            if updated is None:
                # another worker got there first
                current = await self.get(booking_id)
                self._rewatch(current)
                if action == Action.ACCEPT and current.provider_id and current.provider_id != (changes or {}).get("provider_id"):
                    raise AlreadyAssigned(booking_id)
                raise InvalidTransition(booking_id, current.status, action.value, reason="booking changed concurrently")

            try:
                await self._apply_side_effect(effect, updated)
            except Exception as e:
                # whatever broke, the stored status must not run ahead of the money
                await self._compensate(booking, updated, action)
                if isinstance(e, PaymentOperationFailed):
                    raise
                if not isinstance(e, BookingError):
                    logger.exception("booking %s: unexpected error during %s", booking_id, effect.value)
                raise PaymentOperationFailed(effect.value, str(e)) from e

            logger.info("booking %s: %s -> %s (%s)", booking_id, booking.status, updated.status, action.value)

        await self._publish(STATUS_EVENTS[updated.status], updated)
        return updated

    async def _apply_side_effect(self, effect: SideEffect, booking: Booking):
        if effect == SideEffect.NONE:
            return
        if not booking.payment_ref:
            raise InvalidPaymentState("-", "missing", effect.value)

        if effect == SideEffect.CAPTURE_DEPOSIT:
            await self.payments.capture(
                booking.payment_ref,
                booking.deposit_amount,
                idempotency_key=booking_key(booking.booking_id, "capture", "deposit"),
            )
        elif effect == SideEffect.CAPTURE_BALANCE:
            payment = await self.payments.get(booking.payment_ref)
            balance = to_money(booking.total_amount) - to_money(payment.captured_amount)
            if balance > 0:
                await self.payments.capture(
                    booking.payment_ref,
                    balance,
                    idempotency_key=booking_key(booking.booking_id, "capture", "balance"),
                )
        elif effect == SideEffect.REFUND:
            await self.payments.refund(
                booking.payment_ref,
                idempotency_key=booking_key(booking.booking_id, "refund"),
            )

    async def _compensate(self, before: Booking, after: Booking, action: Action):
        restored = await self.bookings.compare_and_set(
            after.booking_id,
            expected_status=after.status,
            expected_version=after.version,
            values={
                "status": before.status,
                "status_changed_at": self._clock(),
                "response_deadline": before.response_deadline,
                "provider_id": before.provider_id,
                "declined_reason": before.declined_reason,
                "cancelled_by": before.cancelled_by,
                "cancellation_reason": before.cancellation_reason,
            },
        )
        if restored is None:
            logger.critical(
                "could not roll back booking %s from %s to %s after payment failure",
                after.booking_id, after.status, before.status,
            )
            return

        logger.warning("rolled back booking %s to %s after failed %s", after.booking_id, before.status, action.value)
        # an expiry retry is scheduled by the deadline manager itself
        if action != Action.EXPIRE:
            self._rewatch(restored)

    def _rewatch(self, booking: Booking):
        if booking.status == BookingStatus.PENDING.value and booking.response_deadline is not None:
            self.deadlines.watch(booking.booking_id, booking.response_deadline)

    async def _rank(self, category_id: str, location: Location, urgency) -> list[ProviderCandidate]:
        if self.ranker is None:
            raise ProviderSearchUnavailable("no provider ranker configured")
        return await self.ranker.rank(category_id, location, urgency)

    async def _publish(self, event_type: str, booking: Booking, extra: dict | None = None):
        if self.publisher is None:
            return
        data = booking_data(booking)
        if extra:
            data.update(extra)
        await self.publisher.publish(event_type, to_json(build_event(event_type, data)))

    async def _publish_dispatch(self, booking: Booking, candidates: list[ProviderCandidate]):
        if not candidates:
            logger.warning("no providers available for sos booking %s", booking.booking_id)
        await self._publish(
            BOOKING_SOS_DISPATCHED,
            booking,
            {"candidates": [c.model_dump() for c in candidates]},
        )
