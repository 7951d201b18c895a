"""Invoice lifecycle state machine.

``can_transition`` is the single table of legal status edges. Chain events
and operator transitions both go through it; ``EVENT_SOURCES`` narrows it to
the states from which each on-chain event may fire.
"""

from __future__ import annotations

from enum import Enum

from invoice_sync.exceptions import InvalidTransitionError
from invoice_sync.webhooks.models import EventName


class LifecycleStatus(str, Enum):
    DRAFT = "DRAFT"
    LISTED = "LISTED"
    PARTIALLY_FUNDED = "PARTIALLY_FUNDED"
    FULLY_FUNDED = "FULLY_FUNDED"
    DISBURSED = "DISBURSED"
    PENDING_REPAYMENT = "PENDING_REPAYMENT"
    PARTIALLY_REPAID = "PARTIALLY_REPAID"
    FULLY_REPAID = "FULLY_REPAID"
    SETTLED = "SETTLED"
    OVERDUE = "OVERDUE"
    UNDER_COLLECTION = "UNDER_COLLECTION"
    DEFAULTED = "DEFAULTED"


TERMINAL: frozenset[LifecycleStatus] = frozenset(
    {LifecycleStatus.SETTLED, LifecycleStatus.DEFAULTED}
)

NON_TERMINAL: frozenset[LifecycleStatus] = frozenset(set(LifecycleStatus) - TERMINAL)

_ALLOWED: dict[LifecycleStatus, set[LifecycleStatus]] = {
    LifecycleStatus.DRAFT: {LifecycleStatus.LISTED},
    LifecycleStatus.LISTED: {LifecycleStatus.PARTIALLY_FUNDED, LifecycleStatus.FULLY_FUNDED},
    LifecycleStatus.PARTIALLY_FUNDED: {LifecycleStatus.FULLY_FUNDED, LifecycleStatus.DEFAULTED},
    LifecycleStatus.FULLY_FUNDED: {
        LifecycleStatus.DISBURSED,
        LifecycleStatus.PARTIALLY_REPAID,
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.DISBURSED: {
        LifecycleStatus.PENDING_REPAYMENT,
        LifecycleStatus.PARTIALLY_REPAID,
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.PENDING_REPAYMENT: {
        LifecycleStatus.PARTIALLY_REPAID,
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.OVERDUE,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.PARTIALLY_REPAID: {
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.OVERDUE,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.FULLY_REPAID: {LifecycleStatus.SETTLED},
    LifecycleStatus.OVERDUE: {
        LifecycleStatus.UNDER_COLLECTION,
        LifecycleStatus.PARTIALLY_REPAID,
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.UNDER_COLLECTION: {
        LifecycleStatus.PARTIALLY_REPAID,
        LifecycleStatus.FULLY_REPAID,
        LifecycleStatus.DEFAULTED,
    },
    LifecycleStatus.SETTLED: set(),
    LifecycleStatus.DEFAULTED: set(),
}

# Source states from which each chain event is accepted.
EVENT_SOURCES: dict[EventName, frozenset[LifecycleStatus]] = {
    EventName.MINTED: frozenset({LifecycleStatus.DRAFT}),
    EventName.FUNDED: frozenset({LifecycleStatus.LISTED, LifecycleStatus.PARTIALLY_FUNDED}),
    EventName.REPAYMENT_DEPOSITED: frozenset(
        {
            LifecycleStatus.FULLY_FUNDED,
            LifecycleStatus.DISBURSED,
            LifecycleStatus.PENDING_REPAYMENT,
            LifecycleStatus.PARTIALLY_REPAID,
            LifecycleStatus.OVERDUE,
            LifecycleStatus.UNDER_COLLECTION,
        }
    ),
    EventName.SETTLED: frozenset({LifecycleStatus.FULLY_REPAID}),
    EventName.DEFAULTED: frozenset(
        {
            LifecycleStatus.PARTIALLY_FUNDED,
            LifecycleStatus.FULLY_FUNDED,
            LifecycleStatus.DISBURSED,
            LifecycleStatus.PENDING_REPAYMENT,
            LifecycleStatus.PARTIALLY_REPAID,
            LifecycleStatus.OVERDUE,
            LifecycleStatus.UNDER_COLLECTION,
        }
    ),
    EventName.TRANSFERRED: NON_TERMINAL,
}

# Edges driven by operators or schedulers rather than by a chain event.
OFF_CHAIN_EDGES: frozenset[tuple[LifecycleStatus, LifecycleStatus]] = frozenset(
    {
        (LifecycleStatus.FULLY_FUNDED, LifecycleStatus.DISBURSED),
        (LifecycleStatus.DISBURSED, LifecycleStatus.PENDING_REPAYMENT),
        (LifecycleStatus.PENDING_REPAYMENT, LifecycleStatus.OVERDUE),
        (LifecycleStatus.PARTIALLY_REPAID, LifecycleStatus.OVERDUE),
        (LifecycleStatus.OVERDUE, LifecycleStatus.UNDER_COLLECTION),
    }
)


def is_terminal(status: LifecycleStatus) -> bool:
    return status in TERMINAL


def can_transition(current: LifecycleStatus, new: LifecycleStatus) -> bool:
    return new in _ALLOWED.get(current, set())


def assert_transition(current: LifecycleStatus, new: LifecycleStatus) -> None:
    if current == new:
        return
    if not can_transition(current, new):
        raise InvalidTransitionError(current.value, new.value)


def accepts_event(status: LifecycleStatus, event_name: EventName) -> bool:
    """True when *event_name* may fire while a record is in *status*."""
    return status in EVENT_SOURCES.get(event_name, frozenset())
