"""
Shopper-driven order status updates
"""

from decimal import Decimal

import pytest

from conftest import make_order, make_shopper
from errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from models import Refund
from order_status import update_order_status


def test_plain_status_update(session):
    shopper = make_shopper(session)
    order = make_order(session, status="accepted", shopper_id=shopper.id)

    update = update_order_status(session, shopper.id, order.id, "in_progress")

    assert update.previous_status == "accepted"
    assert update.wallet is None
    assert order.status == "in_progress"
    assert update.to_dict()["order"] == {"id": order.id, "status": "in_progress"}


def test_shopping_reserves_goods_money(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, status="accepted", shopper_id=shopper.id, total="30.00")

    update = update_order_status(session, shopper.id, order.id, "shopping")

    assert update.wallet.reserved_balance == Decimal("30.00")
    assert order.status == "shopping"


def test_cancel_opens_refund_and_closes_the_order(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, status="shopping", shopper_id=shopper.id, total="30.00")

    update_order_status(session, shopper.id, order.id, "cancelled")

    assert order.status == "cancelled"
    assert session.query(Refund).filter(Refund.order_id == order.id).count() == 1
    with pytest.raises(ConflictError):
        update_order_status(session, shopper.id, order.id, "delivered")
    assert session.query(Refund).filter(Refund.order_id == order.id).count() == 1


def test_same_status_twice_is_a_conflict(session):
    shopper = make_shopper(session)
    order = make_order(session, status="picked_up", shopper_id=shopper.id)

    with pytest.raises(ConflictError) as exc:
        update_order_status(session, shopper.id, order.id, "picked_up")
    assert exc.value.code == "INVALID_STATUS"


@pytest.mark.parametrize("order_id,status,message", [
    (None, "shopping", "Missing required fields: orderId and status"),
    ("some-order", "", "Missing required fields: orderId and status"),
    ("some-order", "on_the_moon", "Invalid status value"),
    ("some-order", "PENDING", "Invalid status value"),
])
def test_request_validation(session, order_id, status, message):
    with pytest.raises(ValidationError) as exc:
        update_order_status(session, "someone", order_id, status)
    assert exc.value.message == message


def test_unknown_order(session):
    with pytest.raises(NotFoundError):
        update_order_status(session, "someone", "missing", "shopping")


def test_only_the_assigned_shopper_may_update(session):
    owner = make_shopper(session, name="Owner")
    other = make_shopper(session, name="Other")
    order = make_order(session, status="accepted", shopper_id=owner.id)

    with pytest.raises(PermissionDenied) as exc:
        update_order_status(session, other.id, order.id, "in_progress")
    assert exc.value.message == "You are not assigned to this order"
    assert order.status == "accepted"
