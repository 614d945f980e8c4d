"""
Order State Machine

This module is the SINGLE SOURCE OF TRUTH for order status transitions.

Happy path: pending -> confirmed -> processing -> shipped -> delivered
cancelled and refunded are terminal and restore inventory.
"""

from datetime import datetime
from typing import Any, Dict, List

from stockroom.exceptions import InvalidTransitionError
from stockroom.models.order import FulfillmentStatus, OrderStatus, PaymentStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING.value: [
        OrderStatus.CONFIRMED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.CONFIRMED.value: [
        OrderStatus.PROCESSING.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.REFUNDED.value,
    ],
    OrderStatus.PROCESSING.value: [
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.REFUNDED.value,
    ],
    OrderStatus.SHIPPED.value: [
        OrderStatus.DELIVERED.value,
        OrderStatus.REFUNDED.value,
    ],
    OrderStatus.DELIVERED.value: [
        OrderStatus.REFUNDED.value,
    ],
    OrderStatus.CANCELLED.value: [],    # Terminal state
    OrderStatus.REFUNDED.value: [],     # Terminal state
}

# Entering these statuses puts every item's quantity back into stock
RESTOCKING_STATUSES = {OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return list(ORDER_TRANSITIONS.get(current_status, []))


def is_terminal(status: str) -> bool:
    return not ORDER_TRANSITIONS.get(status)


def restores_inventory(status: str) -> bool:
    return status in RESTOCKING_STATUSES


def validate_transition(current_status: str, new_status: str) -> None:
    """Raises InvalidTransitionError unless ``new_status`` is reachable in one step."""
    if not can_transition(current_status, new_status):
        raise InvalidTransitionError(current_status, new_status, get_allowed_transitions(current_status))


# =============================================================================
# TRANSITION VALUES
# =============================================================================

def transition_values(new_status: str, now: datetime) -> Dict[str, Any]:
    """
    Column values written when an order enters ``new_status``.

    Stock restoration is not done here; the order service performs it
    through the stock ledger once the transition is claimed.
    """
    values: Dict[str, Any] = {"status": new_status}

    if new_status == OrderStatus.CONFIRMED.value:
        values["confirmed_at"] = now

    elif new_status == OrderStatus.PROCESSING.value:
        values["processed_at"] = now

    elif new_status == OrderStatus.SHIPPED.value:
        values["shipped_at"] = now

    elif new_status == OrderStatus.DELIVERED.value:
        values["delivered_at"] = now
        values["fulfillment_status"] = FulfillmentStatus.FULFILLED.value

    elif new_status == OrderStatus.CANCELLED.value:
        values["cancelled_at"] = now
        values["fulfillment_status"] = FulfillmentStatus.UNFULFILLED.value

    elif new_status == OrderStatus.REFUNDED.value:
        values["fulfillment_status"] = FulfillmentStatus.UNFULFILLED.value
        values["payment_status"] = PaymentStatus.REFUNDED.value

    return values
