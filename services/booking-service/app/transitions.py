"""
Booking lifecycle as data.

Every legal edge lives in TRANSITIONS as
(current_status, action) -> (next_status, payment side effect).
Anything not in the table is an illegal transition.
"""

import enum


class BookingMode(str, enum.Enum):
    NORMAL = "normal"
    SOS = "sos"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"


class Action(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    EXPIRE = "expire"


class SideEffect(str, enum.Enum):
    NONE = "none"
    CAPTURE_DEPOSIT = "capture_deposit"
    CAPTURE_BALANCE = "capture_balance"
    REFUND = "refund"


class UrgencyLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER.index(self)


_URGENCY_ORDER = [UrgencyLevel.LOW, UrgencyLevel.MEDIUM, UrgencyLevel.HIGH, UrgencyLevel.EMERGENCY]


TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.DECLINED,
        BookingStatus.EXPIRED,
    }
)

# Only the deadline manager may trigger these.
SYSTEM_ACTIONS = frozenset({Action.EXPIRE})

TRANSITIONS: dict[tuple[BookingStatus, Action], tuple[BookingStatus, SideEffect]] = {
    (BookingStatus.PENDING, Action.ACCEPT): (BookingStatus.CONFIRMED, SideEffect.CAPTURE_DEPOSIT),
    (BookingStatus.PENDING, Action.DECLINE): (BookingStatus.DECLINED, SideEffect.REFUND),
    (BookingStatus.PENDING, Action.EXPIRE): (BookingStatus.EXPIRED, SideEffect.REFUND),
    (BookingStatus.PENDING, Action.CANCEL): (BookingStatus.CANCELLED, SideEffect.REFUND),
    (BookingStatus.CONFIRMED, Action.START): (BookingStatus.IN_PROGRESS, SideEffect.NONE),
    (BookingStatus.CONFIRMED, Action.CANCEL): (BookingStatus.CANCELLED, SideEffect.REFUND),
    (BookingStatus.IN_PROGRESS, Action.COMPLETE): (BookingStatus.COMPLETED, SideEffect.CAPTURE_BALANCE),
    (BookingStatus.IN_PROGRESS, Action.CANCEL): (BookingStatus.CANCELLED, SideEffect.REFUND),
}


def next_edge(status: BookingStatus, action: Action) -> tuple[BookingStatus, SideEffect] | None:
    return TRANSITIONS.get((BookingStatus(status), Action(action)))


def allowed_actions(status: BookingStatus) -> list[Action]:
    status = BookingStatus(status)
    return [a for (s, a) in TRANSITIONS if s == status]


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def validate_table(table=None) -> None:
    """
    Checked once at import:
      - terminal statuses have no outgoing edges
      - every non-terminal status has at least one edge and can reach a terminal status
      - every action is used somewhere
    """
    table = TRANSITIONS if table is None else table

    for (status, _action), (target, _effect) in table.items():
        if status in TERMINAL_STATUSES:
            raise ValueError(f"terminal status {status.value} has an outgoing edge")
        if not isinstance(target, BookingStatus):
            raise ValueError(f"unknown target status {target!r}")

    used_actions = {a for (_s, a) in table}
    missing = set(Action) - used_actions
    if missing:
        raise ValueError(f"actions without edges: {sorted(a.value for a in missing)}")

    for status in BookingStatus:
        if status in TERMINAL_STATUSES:
            continue
        if not any(s == status for (s, _a) in table):
            raise ValueError(f"non-terminal status {status.value} has no outgoing edge")

        seen = {status}
        frontier = [status]
        reaches_terminal = False
        while frontier:
            current = frontier.pop()
            for (s, _a), (target, _e) in table.items():
                if s != current or target in seen:
                    continue
                if target in TERMINAL_STATUSES:
                    reaches_terminal = True
                seen.add(target)
                frontier.append(target)
        if not reaches_terminal:
            raise ValueError(f"status {status.value} cannot reach a terminal status")


validate_table()
