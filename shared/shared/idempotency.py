"""
Stable idempotency keys.

The same logical money operation must always produce the same key, so a
retried call (ours or the gateway's) is recognised as a replay.
"""


def booking_key(booking_id: str, operation: str, *parts: str) -> str:
    return ":".join(["booking", booking_id, operation, *parts])


def payment_key(payment_id: str, operation: str) -> str:
    return f"payment:{payment_id}:{operation}"
