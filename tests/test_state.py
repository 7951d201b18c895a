"""Tests for the lifecycle state machine."""

from __future__ import annotations

import pytest

from invoice_sync.exceptions import InvalidTransitionError
from invoice_sync.lifecycle.state import (
    EVENT_SOURCES,
    NON_TERMINAL,
    OFF_CHAIN_EDGES,
    TERMINAL,
    LifecycleStatus,
    accepts_event,
    assert_transition,
    can_transition,
    is_terminal,
)
from invoice_sync.webhooks.models import EventName

S = LifecycleStatus


class TestTransitions:
    @pytest.mark.parametrize(
        "current, new",
        [
            (S.DRAFT, S.LISTED),
            (S.LISTED, S.PARTIALLY_FUNDED),
            (S.LISTED, S.FULLY_FUNDED),
            (S.PARTIALLY_FUNDED, S.FULLY_FUNDED),
            (S.FULLY_FUNDED, S.DISBURSED),
            (S.DISBURSED, S.PENDING_REPAYMENT),
            (S.PENDING_REPAYMENT, S.PARTIALLY_REPAID),
            (S.PARTIALLY_REPAID, S.FULLY_REPAID),
            (S.FULLY_REPAID, S.SETTLED),
            (S.PENDING_REPAYMENT, S.OVERDUE),
            (S.OVERDUE, S.UNDER_COLLECTION),
            (S.UNDER_COLLECTION, S.DEFAULTED),
        ],
    )
    def test_happy_path_edges(self, current, new):
        assert can_transition(current, new)
        assert_transition(current, new)

    @pytest.mark.parametrize(
        "current, new",
        [
            (S.DRAFT, S.FULLY_FUNDED),
            (S.LISTED, S.DEFAULTED),
            (S.FULLY_REPAID, S.DEFAULTED),
            (S.PARTIALLY_FUNDED, S.LISTED),
            (S.SETTLED, S.DEFAULTED),
            (S.DEFAULTED, S.SETTLED),
        ],
    )
    def test_illegal_edges(self, current, new):
        assert not can_transition(current, new)
        with pytest.raises(InvalidTransitionError) as exc_info:
            assert_transition(current, new)
        assert exc_info.value.current == current.value
        assert exc_info.value.new == new.value

    def test_same_state_is_noop(self):
        assert_transition(S.PARTIALLY_FUNDED, S.PARTIALLY_FUNDED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL))
    def test_terminal_states_have_no_exits(self, terminal):
        assert is_terminal(terminal)
        assert not any(can_transition(terminal, s) for s in S)

    def test_terminal_partition(self):
        assert TERMINAL == {S.SETTLED, S.DEFAULTED}
        assert TERMINAL | NON_TERMINAL == set(S)
        assert not TERMINAL & NON_TERMINAL


class TestEventSources:
    def test_every_routable_event_has_sources(self):
        routable = {e for e in EventName if e is not EventName.UNKNOWN}
        assert set(EVENT_SOURCES) == routable

    def test_event_sources_never_include_terminal(self):
        for sources in EVENT_SOURCES.values():
            assert not sources & TERMINAL

    def test_minted_only_from_draft(self):
        assert accepts_event(S.DRAFT, EventName.MINTED)
        assert not accepts_event(S.LISTED, EventName.MINTED)

    def test_settled_only_from_fully_repaid(self):
        assert [s for s in S if accepts_event(s, EventName.SETTLED)] == [S.FULLY_REPAID]

    def test_defaulted_not_from_listed(self):
        assert not accepts_event(S.LISTED, EventName.DEFAULTED)
        assert accepts_event(S.OVERDUE, EventName.DEFAULTED)

    def test_transfer_from_any_non_terminal(self):
        assert all(accepts_event(s, EventName.TRANSFERRED) for s in NON_TERMINAL)
        assert not accepts_event(S.SETTLED, EventName.TRANSFERRED)

    def test_unknown_event_never_accepted(self):
        assert not any(accepts_event(s, EventName.UNKNOWN) for s in S)

    def test_off_chain_edges_are_legal(self):
        for current, new in OFF_CHAIN_EDGES:
            assert can_transition(current, new)
