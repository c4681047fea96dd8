"""
============================================================================
Unit Tests - Order Lifecycle State Machine
============================================================================

Reliability Level: L6 Critical

Tests the order state machine:
- PLACED is the only status with outbound transitions
- Terminal statuses refuse every transition with ORD-201
- transition_order() issues one conditional update and reports the loser
============================================================================
"""

import os
import sys
from datetime import date
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.canteen_models import Order, OrderStatus
from services.order_errors import AlreadyFinalized, OrderErrorCode, ValidationError
from services.order_state_machine import (
    TERMINAL_STATES,
    VALID_STATES,
    VALID_TRANSITIONS,
    get_valid_transitions,
    is_terminal_state,
    is_valid_state,
    transition_order,
    validate_transition,
)


def make_order(status: str = "PLACED", version: int = 0) -> Order:
    return Order(
        id="order-1",
        person_id="emp-1",
        shift_id="breakfast",
        order_date=date(2025, 3, 10),
        status=status,
        version=version,
    )


class TestTransitionTable:
    """The transition table itself."""

    def test_states_match_order_status_enum(self) -> None:
        assert set(VALID_STATES) == {status.value for status in OrderStatus}

    def test_placed_reaches_every_terminal_state(self) -> None:
        assert set(VALID_TRANSITIONS["PLACED"]) == set(TERMINAL_STATES)

    @pytest.mark.parametrize("state", ["COLLECTED", "NOT_COLLECTED", "CANCELLED"])
    def test_terminal_states_have_no_exits(self, state) -> None:
        assert get_valid_transitions(state) == []
        assert is_terminal_state(state) is True

    def test_placed_is_not_terminal(self) -> None:
        assert is_terminal_state("PLACED") is False
        assert is_valid_state("PLACED") is True
        assert is_valid_state("REFUNDED") is False


class TestValidateTransition:

    @pytest.mark.parametrize("target", ["COLLECTED", "NOT_COLLECTED", "CANCELLED"])
    def test_placed_transitions_allowed(self, target) -> None:
        assert validate_transition("PLACED", target) == (True, None)

    @pytest.mark.parametrize("current", ["COLLECTED", "NOT_COLLECTED", "CANCELLED"])
    @pytest.mark.parametrize("target", ["PLACED", "COLLECTED", "NOT_COLLECTED", "CANCELLED"])
    def test_terminal_refuses_everything(self, current, target) -> None:
        assert validate_transition(current, target) == (False, OrderErrorCode.ALREADY_FINALIZED)

    def test_unknown_state_is_validation_error(self) -> None:
        assert validate_transition("PLACED", "EATEN") == (False, OrderErrorCode.VALIDATION)


class TestTransitionOrder:
    """transition_order() against a mocked store."""

    def test_winning_update_returns_new_order(self) -> None:
        store = Mock()
        store.conditional_update_order.return_value = True

        updated = transition_order(
            store,
            make_order(version=2),
            "CANCELLED",
            correlation_id="corr-1",
            fields={"cancel_reason": "sick"},
        )

        store.conditional_update_order.assert_called_once_with(
            order_id="order-1",
            expected_status="PLACED",
            expected_version=2,
            new_status="CANCELLED",
            fields={"cancel_reason": "sick"},
        )
        assert updated.status == "CANCELLED"
        assert updated.version == 3
        assert updated.cancel_reason == "sick"

    def test_losing_update_returns_none(self) -> None:
        store = Mock()
        store.conditional_update_order.return_value = False

        assert transition_order(store, make_order(), "COLLECTED", correlation_id="corr-2") is None

    def test_terminal_order_never_reaches_store(self) -> None:
        store = Mock()

        with pytest.raises(AlreadyFinalized) as exc_info:
            transition_order(store, make_order(status="NOT_COLLECTED"), "COLLECTED", correlation_id="corr-3")

        assert exc_info.value.error_code == OrderErrorCode.ALREADY_FINALIZED
        assert exc_info.value.reason == "NOT_COLLECTED"
        store.conditional_update_order.assert_not_called()

    def test_unknown_target_is_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            transition_order(Mock(), make_order(), "EATEN", correlation_id="corr-4")
