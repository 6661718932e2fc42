"""Tests for the order lifecycle state machine."""

import pytest

from django_orders.exceptions import InvalidTransitionError
from django_orders.lifecycle import (
    TRANSITIONS,
    can_transition,
    is_cancellable,
    is_terminal,
    transition_reason,
    validate_transition,
)
from django_orders.models import OrderStatus


ALL_STATUSES = [choice.value for choice in OrderStatus]


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize('from_status,to_status', [
        ('pending', 'processing'),
        ('pending', 'pending'),
        ('pending', 'cancelled'),
        ('processing', 'cancelled'),
        ('processing', 'completed'),
        ('processing', 'refunded'),
    ])
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)
        validate_transition(from_status, to_status)

    @pytest.mark.parametrize('from_status', ['completed', 'cancelled', 'refunded'])
    def test_terminal_statuses_have_no_exits(self, from_status):
        assert is_terminal(from_status)
        for to_status in ALL_STATUSES:
            assert not can_transition(from_status, to_status)

    def test_pending_cannot_be_refunded(self):
        """Nothing was captured, so there is nothing to refund."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition('pending', 'refunded')

        assert exc_info.value.code == 'INVALID_TRANSITION'

    def test_pending_cannot_skip_to_completed(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition('pending', 'completed')

    def test_processing_cannot_go_back_to_pending(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition('processing', 'pending')

    @pytest.mark.parametrize('from_status', ['completed', 'cancelled', 'refunded'])
    @pytest.mark.parametrize('to_status', ['cancelled', 'refunded'])
    def test_cancelling_terminal_order_reports_cannot_be_cancelled(self, from_status, to_status):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(from_status, to_status)

        assert exc_info.value.code == 'ORDER_CANNOT_BE_CANCELLED'
        assert exc_info.value.http_status == 400

    def test_cancellable_statuses(self):
        assert is_cancellable('pending')
        assert is_cancellable('processing')
        assert not is_cancellable('completed')
        assert not is_cancellable('refunded')

    def test_every_transition_has_a_reason(self):
        for (from_status, to_status), reason in TRANSITIONS.items():
            assert transition_reason(from_status, to_status) == reason
            assert reason
