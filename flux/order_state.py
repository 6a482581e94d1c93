"""
Order lifecycle state machine. The transition table below is the only place
that decides which status may follow which, and who may trigger it.
"""
from enum import Enum
from typing import NamedTuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DRIVER_COMPLETED = "driver_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(str, Enum):
    ADMIN = "admin"
    COMPANY = "company"
    DRIVER = "driver"


class Transition(NamedTuple):
    actor: Role
    timestamp_field: str


# (current status, next status) -> who may do it and which timestamp it stamps
TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Transition] = {
    (OrderStatus.PENDING, OrderStatus.ACCEPTED): Transition(Role.DRIVER, "accepted_at"),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): Transition(Role.COMPANY, "cancelled_at"),
    (OrderStatus.ACCEPTED, OrderStatus.DRIVER_COMPLETED): Transition(Role.DRIVER, "driver_completed_at"),
    (OrderStatus.DRIVER_COMPLETED, OrderStatus.COMPLETED): Transition(Role.COMPANY, "completed_at"),
}

INITIAL_STATUS = OrderStatus.PENDING
INITIAL_ACTOR = Role.COMPANY

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Statuses in which the order carries a driver
ASSIGNED_STATUSES = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.DRIVER_COMPLETED,
    OrderStatus.COMPLETED,
})

# The status that occupies a driver's single active-order slot
ACTIVE_STATUS = OrderStatus.ACCEPTED


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if target is allowed after current."""
    return (current, target) in TRANSITIONS


def allowed_targets(current: OrderStatus) -> list[OrderStatus]:
    return [to for (frm, to) in TRANSITIONS if frm == current]


def get_transition(current: OrderStatus, target: OrderStatus) -> Transition | None:
    return TRANSITIONS.get((current, target))


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def requires_driver(status: OrderStatus) -> bool:
    return status in ASSIGNED_STATUSES


def is_active(status: OrderStatus) -> bool:
    return status == ACTIVE_STATUS


def codes_expected(status: OrderStatus) -> bool:
    """Deliveries carry a generated code from acceptance onwards."""
    return status in ASSIGNED_STATUSES
