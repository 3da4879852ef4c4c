"""Tests for the booking transition table."""

import pytest

from app.transitions import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    Action,
    BookingStatus,
    SideEffect,
    allowed_actions,
    is_terminal,
    next_edge,
    validate_table,
)


def test_table_is_valid():
    validate_table()


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_statuses_have_no_edges(status):
    assert allowed_actions(status) == []
    assert is_terminal(status)
    for action in Action:
        assert next_edge(status, action) is None


@pytest.mark.parametrize(
    "status,action,expected",
    [
        ("pending", "accept", (BookingStatus.CONFIRMED, SideEffect.CAPTURE_DEPOSIT)),
        ("pending", "decline", (BookingStatus.DECLINED, SideEffect.REFUND)),
        ("pending", "expire", (BookingStatus.EXPIRED, SideEffect.REFUND)),
        ("pending", "cancel", (BookingStatus.CANCELLED, SideEffect.REFUND)),
        ("confirmed", "start", (BookingStatus.IN_PROGRESS, SideEffect.NONE)),
        ("confirmed", "cancel", (BookingStatus.CANCELLED, SideEffect.REFUND)),
        ("in_progress", "complete", (BookingStatus.COMPLETED, SideEffect.CAPTURE_BALANCE)),
        ("in_progress", "cancel", (BookingStatus.CANCELLED, SideEffect.REFUND)),
    ],
)
def test_edges(status, action, expected):
    assert next_edge(status, action) == expected


@pytest.mark.parametrize(
    "status,action",
    [
        ("pending", "start"),
        ("pending", "complete"),
        ("confirmed", "accept"),
        ("confirmed", "expire"),
        ("in_progress", "start"),
        ("in_progress", "decline"),
    ],
)
def test_missing_edges(status, action):
    assert next_edge(status, action) is None


def test_expire_only_leaves_pending():
    sources = [s for (s, a) in TRANSITIONS if a == Action.EXPIRE]
    assert sources == [BookingStatus.PENDING]


def test_every_transition_moves_somewhere_else():
    for (status, _action), (target, _effect) in TRANSITIONS.items():
        assert target != status


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        next_edge("on_hold", "accept")


def test_rejects_edge_out_of_terminal_status():
    table = dict(TRANSITIONS)
    table[(BookingStatus.COMPLETED, Action.CANCEL)] = (BookingStatus.CANCELLED, SideEffect.REFUND)

    with pytest.raises(ValueError, match="terminal"):
        validate_table(table)


def test_rejects_status_that_cannot_terminate():
    table = {
        key: edge
        for key, edge in TRANSITIONS.items()
        if key[0] != BookingStatus.IN_PROGRESS
    }
    table[(BookingStatus.IN_PROGRESS, Action.START)] = (BookingStatus.CONFIRMED, SideEffect.NONE)
    # confirmed can still reach cancelled, so break that too
    table.pop((BookingStatus.CONFIRMED, Action.CANCEL))
    table[(BookingStatus.IN_PROGRESS, Action.COMPLETE)] = (BookingStatus.CONFIRMED, SideEffect.NONE)

    with pytest.raises(ValueError, match="cannot reach"):
        validate_table(table)


def test_rejects_unused_action():
    table = {key: edge for key, edge in TRANSITIONS.items() if key[1] != Action.START}
    table[(BookingStatus.CONFIRMED, Action.COMPLETE)] = (BookingStatus.IN_PROGRESS, SideEffect.NONE)

    with pytest.raises(ValueError, match="start"):
        validate_table(table)
