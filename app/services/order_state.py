"""
Order status state machine.

Status only moves forward. "confirmed" is reached through payment
confirmation, never through a manual status change.
"""
from typing import List

from ..models.order import OrderStatus
from ..utils.exceptions import InvalidStatusTransitionError


class OrderStateMachine:
    """Allowed order status transitions."""

    TRANSITIONS = {
        OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
        OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
        OrderStatus.PREPARING: [OrderStatus.READY],
        OrderStatus.READY: [OrderStatus.COMPLETED],
        OrderStatus.COMPLETED: [],
        OrderStatus.CANCELLED: [],
    }

    # Reachable only from settlement, not from a staff status update
    PAYMENT_ONLY = {OrderStatus.CONFIRMED}

    CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """Check if transition is valid."""
        return OrderStatus(to_status) in cls.TRANSITIONS.get(OrderStatus(from_status), [])

    @classmethod
    def get_available_transitions(cls, current_status) -> List[OrderStatus]:
        return list(cls.TRANSITIONS.get(OrderStatus(current_status), []))

    @classmethod
    def is_terminal(cls, status) -> bool:
        return not cls.TRANSITIONS.get(OrderStatus(status))

    @classmethod
    def is_cancellable(cls, status) -> bool:
        return OrderStatus(status) in cls.CANCELLABLE

    @classmethod
    def assert_transition(cls, from_status, to_status, manual: bool = False) -> None:
        """
        Raise unless from_status -> to_status is allowed.

        Args:
            from_status: Current status
            to_status: Requested status
            manual: True for staff driven changes, which may not confirm an order
        """
        try:
            target = OrderStatus(to_status)
        except ValueError:
            raise InvalidStatusTransitionError('order', str(from_status), str(to_status))
        if manual and target in cls.PAYMENT_ONLY:
            raise InvalidStatusTransitionError('order', str(from_status), target.value)
        if not cls.can_transition(from_status, target):
            raise InvalidStatusTransitionError('order', OrderStatus(from_status).value, target.value)
