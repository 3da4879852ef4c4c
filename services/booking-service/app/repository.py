from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .models import Booking, Payment, PaymentOperation
from .transitions import BookingStatus


class BookingRepository:
    """
    Durable store for bookings.

    Writes go through compare_and_set(): the row is only touched when both the
    status and the version still match what the caller read, which makes
    "read status, check edge, write status" atomic across processes.
    """

    def __init__(self, session_factory):
        self._sessions = session_factory

    async def get(self, booking_id: str) -> Booking | None:
        async with self._sessions() as db:
            res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
            return res.scalar_one_or_none()

    async def insert(self, booking: Booking) -> Booking:
        async with self._sessions() as db:
            db.add(booking)
            await db.commit()
            return booking

    async def compare_and_set(
        self,
        booking_id: str,
        *,
        expected_status: str,
        expected_version: int,
        values: dict,
    ) -> Booking | None:
        async with self._sessions() as db:
            res = await db.execute(
                update(Booking)
                .where(
                    Booking.booking_id == booking_id,
                    Booking.status == expected_status,
                    Booking.version == expected_version,
                )
                .values(version=Booking.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if res.rowcount != 1:
                return None

        return await self.get(booking_id)

    async def list_pending(self) -> list[Booking]:
        async with self._sessions() as db:
            res = await db.execute(
                select(Booking)
                .where(Booking.status == BookingStatus.PENDING.value)
                .order_by(Booking.response_deadline)
            )
            return list(res.scalars().all())

    async def list_overdue(self, now: datetime, limit: int = 50) -> list[Booking]:
        async with self._sessions() as db:
            res = await db.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.PENDING.value,
                    Booking.response_deadline <= now,
                )
                .order_by(Booking.response_deadline)
                .limit(limit)
            )
            return list(res.scalars().all())


class PaymentRepository:
    def __init__(self, session_factory):
        self._sessions = session_factory

    async def get(self, payment_id: str) -> Payment | None:
        async with self._sessions() as db:
            res = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
            return res.scalar_one_or_none()

    async def get_by_booking(self, booking_id: str) -> Payment | None:
        async with self._sessions() as db:
            res = await db.execute(
                select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.id.desc())
            )
            return res.scalars().first()

    async def find_operation(self, idempotency_key: str) -> PaymentOperation | None:
        async with self._sessions() as db:
            res = await db.execute(
                select(PaymentOperation).where(PaymentOperation.idempotency_key == idempotency_key)
            )
            return res.scalar_one_or_none()

    async def list_operations(self, payment_id: str) -> list[PaymentOperation]:
        async with self._sessions() as db:
            res = await db.execute(
                select(PaymentOperation)
                .where(PaymentOperation.payment_id == payment_id)
                .order_by(PaymentOperation.id)
            )
            return list(res.scalars().all())

    async def insert(self, payment: Payment, operation: PaymentOperation | None = None) -> Payment:
        async with self._sessions() as db:
            db.add(payment)
            if operation is not None:
                db.add(operation)
            await db.commit()
            return payment

    async def apply(
        self,
        payment_id: str,
        *,
        expected_version: int,
        values: dict,
        operation: PaymentOperation,
    ) -> Payment | None:
        """
        Record one money movement and the resulting payment state together.
        Returns None when the row moved underneath us or the key was already used.
        """
        async with self._sessions() as db:
            try:
                res = await db.execute(
                    update(Payment)
                    .where(Payment.payment_id == payment_id, Payment.version == expected_version)
                    .values(version=Payment.version + 1, **values)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    await db.rollback()
                    return None
                db.add(operation)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None

        return await self.get(payment_id)
