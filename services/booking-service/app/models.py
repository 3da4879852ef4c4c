from sqlalchemy import CheckConstraint, Column, Integer, String, Numeric, Float, Text, UniqueConstraint

from shared.database import Base, UTCDateTime, utcnow

MONEY = Numeric(12, 2)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "(status = 'pending') = (response_deadline IS NOT NULL)",
            name="ck_bookings_deadline_only_while_pending",
        ),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    mode = Column(String, nullable=False)  # normal/sos
    status = Column(String, nullable=False, index=True)  # see transitions.BookingStatus
    version = Column(Integer, nullable=False, default=1)

    customer_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=True, index=True)

    # service snapshot, frozen at creation
    category_id = Column(String, nullable=False)
    subcategory_id = Column(String, nullable=True)
    service_id = Column(String, nullable=True)
    base_price = Column(MONEY, nullable=False)

    total_amount = Column(MONEY, nullable=False)
    deposit_amount = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    currency = Column(String, nullable=False)

    urgency_level = Column(String, nullable=True)
    service_address = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    customer_notes = Column(Text, nullable=True)

    response_deadline = Column(UTCDateTime, nullable=True, index=True)
    payment_ref = Column(String, nullable=True)

    declined_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    status_changed_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, nullable=False, index=True)

    amount = Column(MONEY, nullable=False)  # authorized hold
    currency = Column(String, nullable=False)
    state = Column(String, nullable=False, index=True)  # authorized/captured/refunded/failed
    version = Column(Integer, nullable=False, default=1)

    gateway_ref = Column(String, nullable=True)
    captured_amount = Column(MONEY, nullable=False, default=0)
    refunded_amount = Column(MONEY, nullable=False, default=0)
    failure_reason = Column(String, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PaymentOperation(Base):
    """One row per money movement; the idempotency key makes replays no-ops."""

    __tablename__ = "payment_operations"
    __table_args__ = (UniqueConstraint("idempotency_key", name="uq_payment_operations_key"),)

    id = Column(Integer, primary_key=True)
    payment_id = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # authorize/capture/refund
    amount = Column(MONEY, nullable=False)
    gateway_ref = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
