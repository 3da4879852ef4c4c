import json
import uuid
from datetime import datetime, timezone

BOOKING_CREATED = "booking.created"
BOOKING_SOS_DISPATCHED = "booking.sos_dispatched"
BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_DECLINED = "booking.declined"
BOOKING_STARTED = "booking.started"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_EXPIRED = "booking.expired"

# routing key per status a transition lands on
STATUS_EVENTS = {
    "confirmed": BOOKING_CONFIRMED,
    "declined": BOOKING_DECLINED,
    "in_progress": BOOKING_STARTED,
    "completed": BOOKING_COMPLETED,
    "cancelled": BOOKING_CANCELLED,
    "expired": BOOKING_EXPIRED,
}


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def booking_data(booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "mode": booking.mode,
        "status": booking.status,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id,
        "total_amount": str(booking.total_amount),
        "payment_ref": booking.payment_ref,
        "response_deadline": booking.response_deadline.isoformat() if booking.response_deadline else None,
        "status_changed_at": booking.status_changed_at.isoformat() if booking.status_changed_at else None,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)
