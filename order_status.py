"""
Order and payment status transitions.

Status fields only move along the edges below. Setting a status to its
current value is accepted as a no-op.
"""

from typing import Dict, FrozenSet, Optional, Tuple

ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"shipped", "cancelled"}),
    "shipped": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"paid", "failed"}),
    "failed": frozenset({"pending", "paid"}),
    "paid": frozenset({"refunded"}),
    "refunded": frozenset(),
}

# (title, message) templates for the notification sent to the order owner
ORDER_STATUS_NOTICES: Dict[str, Tuple[str, str]] = {
    "confirmed": ("Order confirmed", "Your order {number} has been confirmed."),
    "processing": ("Order processing", "Your order {number} is being prepared."),
    "shipped": ("Order shipped", "Your order {number} is on its way."),
    "delivered": ("Order delivered", "Your order {number} has been delivered."),
    "cancelled": ("Order cancelled", "Your order {number} has been cancelled."),
}

PAYMENT_STATUS_NOTICES: Dict[str, Tuple[str, str]] = {
    "paid": ("Payment received", "We received your payment for order {number}."),
    "failed": ("Payment failed", "The payment for order {number} failed."),
    "refunded": ("Payment refunded", "The payment for order {number} has been refunded."),
    "pending": ("Payment pending", "The payment for order {number} is pending."),
}


class InvalidTransition(ValueError):
    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot change {kind} status from '{current}' to '{target}'")


def _check(table: Dict[str, FrozenSet[str]], kind: str, current: str, target: Optional[str], force: bool = False) -> bool:
    """Return True when target is a real change, raise on an illegal one.

    With force, any known status is accepted so an admin can correct a mistake.
    """
    if target is None or target == current:
        return False
    if target not in table:
        raise InvalidTransition(kind, current, target)
    if not force and target not in table.get(current, frozenset()):
        raise InvalidTransition(kind, current, target)
    return True


def check_order_transition(current: str, target: Optional[str], force: bool = False) -> bool:
    return _check(ORDER_TRANSITIONS, "order", current, target, force)


def check_payment_transition(current: str, target: Optional[str], force: bool = False) -> bool:
    return _check(PAYMENT_TRANSITIONS, "payment", current, target, force)


def status_notice(table: Dict[str, Tuple[str, str]], status: str, order_number: str) -> Optional[Tuple[str, str]]:
    template = table.get(status)
    if not template:
        return None
    title, message = template
    return title, message.format(number=order_number)
