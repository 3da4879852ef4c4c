class BookingError(Exception):
    """Base for everything the booking core raises on purpose."""

    code = "booking_error"


class BookingNotFound(BookingError):
    code = "booking_not_found"

    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class InvalidTransition(BookingError):
    code = "invalid_transition"

    def __init__(self, booking_id: str, status: str, action: str, reason: str | None = None):
        message = f"Cannot {action} booking {booking_id} in status {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.booking_id = booking_id
        self.status = status
        self.action = action


class DeadlineElapsed(InvalidTransition):
    code = "deadline_elapsed"

    def __init__(self, booking_id: str, status: str, action: str):
        super().__init__(booking_id, status, action, reason="response deadline has elapsed")


class AlreadyAssigned(BookingError):
    code = "already_assigned"

    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} was already taken by another provider")
        self.booking_id = booking_id


class PaymentDeclined(BookingError):
    code = "payment_declined"

    def __init__(self, reason: str | None = None):
        super().__init__(f"Payment declined: {reason or 'unknown reason'}")
        self.reason = reason


class PaymentOperationFailed(BookingError):
    code = "payment_operation_failed"

    def __init__(self, operation: str, detail: str | None = None, attempts: int = 1):
        super().__init__(f"Payment {operation} failed after {attempts} attempt(s): {detail or 'gateway error'}")
        self.operation = operation
        self.attempts = attempts


class PaymentNotFound(BookingError):
    code = "payment_not_found"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class InvalidPaymentState(BookingError):
    code = "invalid_payment_state"

    def __init__(self, payment_id: str, state: str, operation: str, reason: str | None = None):
        message = f"Cannot {operation} payment {payment_id} in state {state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.payment_id = payment_id
        self.state = state
        self.operation = operation


class LockTimeout(BookingError):
    code = "lock_timeout"

    def __init__(self, key: str):
        super().__init__(f"Timed out waiting for lock on {key}")
        self.key = key


class ProviderSearchUnavailable(BookingError):
    code = "provider_search_unavailable"
