"""
Wallet operations and revenue calculations
"""

from decimal import Decimal

import pytest

from conftest import make_order, make_shop, make_shopper
from errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from models import OrderItem, Refund, Wallet, WalletTransaction
from revenue import RevenueCalculator, RevenueItem
from wallet import batch_goods_total, money, process_wallet_operation


def wallet_of(session, shopper):
    return session.query(Wallet).filter(Wallet.shopper_id == shopper.id).one()


def tx_types(session, wallet):
    rows = session.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet.id).all()
    return sorted((t.type, str(money(t.amount))) for t in rows)


def test_money_rounds_half_up():
    assert money("1.005") == Decimal("1.01")
    assert money(None) == Decimal("0.00")


# --------------------- Wallet ---------------------


def test_shopping_reserves_order_total(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, shopper_id=shopper.id, total="100.00")

    result = process_wallet_operation(session, shopper.id, order.id, "shopping")

    assert result.reserved_balance == Decimal("100.00")
    assert result.reserved_change == Decimal("100.00")
    assert tx_types(session, wallet_of(session, shopper)) == [("reserve", "100.00")]


def test_shopping_reel_order_reserves_without_transaction_rows(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, order_type="reel", shopper_id=shopper.id, total="25.00")

    result = process_wallet_operation(session, shopper.id, order.id, "shopping")

    assert result.reserved_balance == Decimal("25.00")
    assert result.transactions == []
    assert tx_types(session, wallet_of(session, shopper)) == []


def test_delivered_pays_net_earnings_and_consumes_reservation(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, shopper_id=shopper.id, total="100.00", service_fee="5.00", delivery_fee="10.00")
    process_wallet_operation(session, shopper.id, order.id, "shopping")

    result = process_wallet_operation(session, shopper.id, order.id, "delivered", commission_percentage=20)

    assert result.platform_fee == Decimal("3.00")
    assert result.earnings_added == Decimal("12.00")
    assert result.available_balance == Decimal("12.00")
    assert result.reserved_balance == Decimal("0.00")
    assert result.refund_amount == Decimal("0.00")
    assert tx_types(session, wallet_of(session, shopper)) == [
        ("earnings", "12.00"),
        ("expense", "100.00"),
        ("reserve", "100.00"),
    ]


def test_delivered_with_short_reservation_records_refund(session):
    shopper = make_shopper(session, wallet=True)
    wallet = wallet_of(session, shopper)
    wallet.reserved_balance = Decimal("60.00")
    session.commit()
    order = make_order(session, shopper_id=shopper.id, total="100.00")

    result = process_wallet_operation(session, shopper.id, order.id, "delivered")

    assert result.reserved_balance == Decimal("0.00")
    assert result.refund_amount == Decimal("40.00")
    assert ("refund", "40.00") in tx_types(session, wallet)
    assert ("expense", "60.00") in tx_types(session, wallet)


def test_restaurant_delivery_earns_delivery_fee_only(session):
    shopper = make_shopper(session, wallet=True)
    wallet = wallet_of(session, shopper)
    wallet.reserved_balance = Decimal("7.00")
    session.commit()
    order = make_order(session, order_type="restaurant", shopper_id=shopper.id, service_fee="5.00", delivery_fee="10.00")

    result = process_wallet_operation(session, shopper.id, order.id, "delivered")

    assert result.earnings_added == Decimal("8.00")
    assert result.reserved_balance == Decimal("7.00")  # untouched
    assert tx_types(session, wallet) == [("earnings", "8.00")]


def test_reel_delivery_has_no_transactions(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, order_type="reel", shopper_id=shopper.id, service_fee="5.00", delivery_fee="5.00")

    result = process_wallet_operation(session, shopper.id, order.id, "delivered")

    assert result.available_balance == Decimal("8.00")
    assert tx_types(session, wallet_of(session, shopper)) == []


def test_cancelled_releases_reservation_and_opens_refund(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, shopper_id=shopper.id, total="100.00")
    process_wallet_operation(session, shopper.id, order.id, "shopping")

    result = process_wallet_operation(session, shopper.id, order.id, "cancelled")

    assert result.reserved_balance == Decimal("0.00")
    refund = session.query(Refund).filter(Refund.order_id == order.id).one()
    assert refund.status == "pending"
    assert refund.reason == "Order cancelled by shopper"
    assert refund.generated_by == "System"
    assert refund.paid is False
    assert money(refund.amount) == Decimal("100.00")


def test_combined_same_shop_batch_uses_item_totals(session):
    shopper = make_shopper(session, wallet=True)
    shop = make_shop(session)
    first = make_order(session, shop=shop, shopper_id=shopper.id, total="999.00", combined_order_id="batch-1")
    second = make_order(session, shop=shop, shopper_id=shopper.id, total="999.00", combined_order_id="batch-1")
    unassigned = make_order(session, shop=shop, total="999.00", combined_order_id="batch-1")
    session.add_all([
        OrderItem(order_id=first.id, product_name="Milk", price=Decimal("2.50"), quantity=4),
        OrderItem(order_id=second.id, product_name="Bread", price=Decimal("3.00"), quantity=2),
        OrderItem(order_id=unassigned.id, product_name="Eggs", price=Decimal("50.00"), quantity=1),
    ])
    session.commit()

    assert batch_goods_total(session, first) == Decimal("16.00")
    result = process_wallet_operation(session, shopper.id, first.id, "shopping")
    assert result.reserved_balance == Decimal("16.00")


def test_operation_on_another_shoppers_order_is_refused(session):
    owner = make_shopper(session, name="Owner", wallet=True)
    intruder = make_shopper(session, name="Intruder", wallet=True)
    order = make_order(session, status="accepted", shopper_id=owner.id)

    with pytest.raises(PermissionDenied) as exc:
        process_wallet_operation(session, intruder.id, order.id, "delivered")
    assert exc.value.message == "You are not assigned to this order"
    assert money(wallet_of(session, intruder).available_balance) == Decimal("0.00")


def test_operations_move_the_order_and_finish_once(session):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, status="accepted", shopper_id=shopper.id)

    process_wallet_operation(session, shopper.id, order.id, "shopping")
    assert order.status == "shopping"
    with pytest.raises(ConflictError):
        process_wallet_operation(session, shopper.id, order.id, "shopping")

    process_wallet_operation(session, shopper.id, order.id, "delivered")
    assert order.status == "delivered"
    for operation in ("delivered", "cancelled", "shopping"):
        with pytest.raises(ConflictError):
            process_wallet_operation(session, shopper.id, order.id, operation)

    assert money(wallet_of(session, shopper).available_balance) == Decimal("12.00")
    assert session.query(Refund).filter(Refund.order_id == order.id).count() == 0


@pytest.mark.parametrize("operation", ["refund", ""])
def test_invalid_operation(session, operation):
    shopper = make_shopper(session, wallet=True)
    order = make_order(session, shopper_id=shopper.id)
    with pytest.raises(ValidationError):
        process_wallet_operation(session, shopper.id, order.id, operation)


def test_missing_order_or_wallet(session):
    with_wallet = make_shopper(session, name="Has", wallet=True)
    without = make_shopper(session, name="Hasnt")
    order = make_order(session)

    with pytest.raises(NotFoundError) as exc:
        process_wallet_operation(session, with_wallet.id, "nope", "shopping")
    assert exc.value.message == "Order not found"

    with pytest.raises(NotFoundError) as exc:
        process_wallet_operation(session, without.id, order.id, "shopping")
    assert exc.value.message == "Shopper wallet not found"


# --------------------- Revenue ---------------------


ITEMS = [
    RevenueItem(price=Decimal("10.00"), final_price=Decimal("12.00"), quantity=2, name="Rice"),
    RevenueItem(price=Decimal("5.00"), final_price=Decimal("5.50"), quantity=3),
]


def test_calculate_revenue():
    assert RevenueCalculator.calculate_revenue(ITEMS) == {
        "actualTotal": "35.00",
        "customerTotal": "40.50",
        "revenue": "5.50",
    }


def test_calculate_order_revenue():
    assert RevenueCalculator.calculate_order_revenue("40.50", ITEMS) == {
        "orderTotal": "40.50",
        "itemsTotal": "35.00",
        "revenue": "5.50",
    }


def test_calculate_product_profits():
    rows = RevenueCalculator.calculate_product_profits(ITEMS)
    assert rows[0] == {"product": "Rice", "quantity": 2, "price": 10.0, "final_price": 12.0, "profit": 4.0}
    assert rows[1]["product"] == "Unknown Product"
    assert rows[1]["profit"] == 1.5


def test_calculate_plasa_fee():
    assert RevenueCalculator.calculate_plasa_fee(5, 10, 20) == Decimal("3.00")


def test_revenue_item_from_cart_shape():
    item = RevenueItem.from_dict({"quantity": 2, "Product": {"price": "1233", "final_price": "4555", "name": "Oil"}})
    assert item.price == Decimal("1233.00")
    assert item.final_price == Decimal("4555.00")
    assert item.quantity == 2
    assert item.name == "Oil"
