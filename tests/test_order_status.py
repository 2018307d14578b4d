import pytest

from order_status import (
    ORDER_STATUS_NOTICES,
    InvalidTransition,
    check_order_transition,
    check_payment_transition,
    status_notice,
)


@pytest.mark.parametrize("current,target", [
    ("pending", "confirmed"),
    ("confirmed", "processing"),
    ("processing", "shipped"),
    ("shipped", "delivered"),
    ("processing", "cancelled"),
])
def test_allowed_order_moves(current, target):
    assert check_order_transition(current, target) is True


@pytest.mark.parametrize("current,target", [
    ("delivered", "pending"),
    ("cancelled", "confirmed"),
    ("shipped", "cancelled"),
    ("pending", "shipped"),
    ("pending", "lost"),
])
def test_illegal_order_moves(current, target):
    with pytest.raises(InvalidTransition):
        check_order_transition(current, target)


def test_same_status_and_none_are_noops():
    assert check_order_transition("delivered", "delivered") is False
    assert check_order_transition("pending", None) is False
    assert check_payment_transition("refunded", "refunded") is False


def test_payment_moves():
    assert check_payment_transition("failed", "pending") is True
    assert check_payment_transition("paid", "refunded") is True
    with pytest.raises(InvalidTransition) as exc:
        check_payment_transition("refunded", "paid")
    assert str(exc.value) == "Cannot change payment status from 'refunded' to 'paid'"


def test_status_notice():
    assert status_notice(ORDER_STATUS_NOTICES, "shipped", "ORD-000007") == (
        "Order shipped", "Your order ORD-000007 is on its way.",
    )
    assert status_notice(ORDER_STATUS_NOTICES, "pending", "ORD-000007") is None


def test_force_allows_any_known_status():
    assert check_order_transition("cancelled", "pending", force=True) is True
    assert check_payment_transition("refunded", "paid", force=True) is True
    assert check_order_transition("cancelled", "cancelled", force=True) is False
    with pytest.raises(InvalidTransition):
        check_order_transition("pending", "lost", force=True)
