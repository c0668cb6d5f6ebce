"""
Shopper wallet operations

Three lifecycle events move money in a shopper's wallet:
- shopping:  goods money is reserved (reserved_balance += order total)
- delivered: earnings minus platform commission become available, the
             reservation is consumed (any shortfall recorded as a refund)
- cancelled: the reservation is released and a customer refund is opened

Each operation also moves the order to the matching status, so a finished
order (delivered or cancelled) cannot be paid out or refunded twice. Only
the shopper assigned to the order may run them.

Reel orders have no goods to buy and restaurant orders are paid by the
restaurant. Their balances still move, but no reserve, expense or refund
transaction rows are written for them.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from models import (
    ORDER_CANCELLED, ORDER_DELIVERED, ORDER_TYPE_REGULAR, ORDER_TYPE_RESTAURANT, Order, OrderItem, Refund,
    Wallet, WalletTransaction, utcnow,
)

logger = logging.getLogger(__name__)

OPERATIONS = ("shopping", "delivered", "cancelled")  # also the order status each one sets
FINAL_STATUSES = (ORDER_DELIVERED, ORDER_CANCELLED)
CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Decimal rounded to cents; None counts as zero"""
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class WalletOperationResult:
    """Balances after an operation plus what changed"""
    operation: str
    order_id: str
    message: str
    available_balance: Decimal
    reserved_balance: Decimal
    reserved_change: Decimal = Decimal("0.00")
    earnings_added: Decimal = Decimal("0.00")
    platform_fee: Decimal = Decimal("0.00")
    refund_amount: Decimal = Decimal("0.00")
    transactions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "operation": self.operation,
            "orderId": self.order_id,
            "message": self.message,
            "availableBalance": str(self.available_balance),
            "reservedBalance": str(self.reserved_balance),
            "reservedChange": str(self.reserved_change),
            "earningsAdded": str(self.earnings_added),
            "platformFee": str(self.platform_fee),
            "refundAmount": str(self.refund_amount),
            "transactions": self.transactions,
        }


def check_order_transition(order: Order, shopper_id: str, status: str) -> None:
    """
    Only the assigned shopper may move an order, never out of a final status
    and never into the status it already has.

    Raises:
        PermissionDenied: Caller is not the order's shopper
        ConflictError: Order already delivered/cancelled, or already in `status`
    """
    if order.shopper_id != shopper_id:
        logger.warning(f"✗ Shopper {shopper_id} is not assigned to order {order.id}")
        raise PermissionDenied("You are not assigned to this order", code="NOT_ASSIGNED")
    if order.status in FINAL_STATUSES or order.status == status:
        raise ConflictError(f"Order is already {order.status}", code="INVALID_STATUS")


def batch_goods_total(session: Session, order: Order) -> Decimal:
    """
    Goods total for the order's batch.

    Orders combined at the same shop are paid for in one trip, so the
    total is the base price of every item across all assigned orders of the
    batch. Falls back to the order total when there is nothing to sum.
    """
    if order.order_type != ORDER_TYPE_REGULAR or not order.combined_order_id:
        return money(order.total)

    batch_total = (
        session.query(func.sum(OrderItem.price * OrderItem.quantity))
        .join(Order, Order.id == OrderItem.order_id)
        .filter(
            Order.combined_order_id == order.combined_order_id,
            Order.shop_id == order.shop_id,
            Order.shopper_id.isnot(None),
        )
        .scalar()
    )
    if batch_total is None:
        return money(order.total)

    logger.info(f"Same-shop batch total from items for {order.combined_order_id}: {batch_total}")
    return money(batch_total)


class WalletService:
    """Applies wallet operations inside the caller's session"""

    def __init__(self, session: Session, commission_percentage: float = 20):
        self.session = session
        self.commission_percentage = Decimal(str(commission_percentage))

    def _record(self, wallet: Wallet, order: Order, amount: Decimal, kind: str, description: str) -> str:
        tx = WalletTransaction(
            wallet_id=wallet.id,
            amount=amount,
            type=kind,
            status="completed",
            related_order_id=order.id,
            description=description,
        )
        self.session.add(tx)
        return kind

    def shopping(self, wallet: Wallet, order: Order, total: Decimal) -> WalletOperationResult:
        wallet.reserved_balance = money(wallet.reserved_balance) + total

        transactions = []
        if order.order_type == ORDER_TYPE_REGULAR:
            transactions.append(self._record(wallet, order, total, "reserve", "Reserved balance for order goods"))

        return WalletOperationResult(
            operation="shopping",
            order_id=order.id,
            message="Reserved balance updated for shopping",
            available_balance=money(wallet.available_balance),
            reserved_balance=money(wallet.reserved_balance),
            reserved_change=total,
            transactions=transactions,
        )

    def delivered(self, wallet: Wallet, order: Order) -> WalletOperationResult:
        delivery_fee = money(order.delivery_fee)
        if order.order_type == ORDER_TYPE_RESTAURANT:
            earnings = delivery_fee
        else:
            earnings = money(order.service_fee) + delivery_fee

        platform_fee = money(earnings * self.commission_percentage / 100)
        net = earnings - platform_fee

        total = money(order.total)
        reserved = money(wallet.reserved_balance)
        new_reserved = reserved
        refund = Decimal("0.00")

        if order.order_type == ORDER_TYPE_REGULAR:
            if reserved >= total:
                new_reserved = reserved - total
            else:
                new_reserved = Decimal("0.00")
                refund = total - reserved

        wallet.available_balance = money(wallet.available_balance) + net
        wallet.reserved_balance = new_reserved

        transactions = []
        if order.order_type == ORDER_TYPE_REGULAR:
            transactions.append(self._record(wallet, order, net, "earnings", "Earnings after platform fee deduction"))
            transactions.append(self._record(
                wallet, order, reserved - new_reserved, "expense", "Reserved balance used for order goods"
            ))
            if refund > 0:
                transactions.append(self._record(wallet, order, refund, "refund", "Refund for excess reserved balance"))
        elif order.order_type == ORDER_TYPE_RESTAURANT:
            transactions.append(self._record(
                wallet, order, net, "earnings", "Delivery fee earnings after platform fee deduction"
            ))

        return WalletOperationResult(
            operation="delivered",
            order_id=order.id,
            message="Wallet updated for delivered order",
            available_balance=money(wallet.available_balance),
            reserved_balance=money(wallet.reserved_balance),
            reserved_change=new_reserved - reserved,
            earnings_added=net,
            platform_fee=platform_fee,
            refund_amount=refund,
            transactions=transactions,
        )

    def cancelled(self, wallet: Wallet, order: Order, total: Decimal) -> WalletOperationResult:
        wallet.reserved_balance = money(wallet.reserved_balance) - total

        self.session.add(Refund(
            order_id=order.id,
            user_id=order.user_id,
            amount=total,
            status="pending",
            reason="Order cancelled by shopper",
            generated_by="System",
            paid=False,
        ))

        transactions = []
        if order.order_type == ORDER_TYPE_REGULAR:
            transactions.append(self._record(wallet, order, total, "refund", "Refund for cancelled order"))

        return WalletOperationResult(
            operation="cancelled",
            order_id=order.id,
            message="Refund processed for cancelled order",
            available_balance=money(wallet.available_balance),
            reserved_balance=money(wallet.reserved_balance),
            reserved_change=-total,
            refund_amount=total,
            transactions=transactions,
        )

    def process(self, shopper_id: str, order_id: str, operation: str) -> WalletOperationResult:
        """
        Apply one wallet operation and commit.

        Raises:
            ValidationError: Unknown operation
            NotFoundError: Order or wallet missing
            PermissionDenied: Order belongs to another shopper
            ConflictError: Order already finished or already in this state
        """
        if operation not in OPERATIONS:
            raise ValidationError("Invalid operation")

        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        wallet = self.session.query(Wallet).filter(Wallet.shopper_id == shopper_id).first()
        if wallet is None:
            raise NotFoundError("Shopper wallet not found")

        check_order_transition(order, shopper_id, operation)

        # Claim the transition first; a concurrent request for the same order gets 0 rows
        now = utcnow()
        claimed = self.session.query(Order).filter(
            Order.id == order.id,
            Order.status == order.status,
        ).update({Order.status: operation, Order.updated_at: now}, synchronize_session=False)
        if claimed != 1:
            self.session.rollback()
            raise ConflictError("Order status changed while processing", code="INVALID_STATUS")

        try:
            if operation == "shopping":
                result = self.shopping(wallet, order, batch_goods_total(self.session, order))
            elif operation == "delivered":
                result = self.delivered(wallet, order)
            else:
                result = self.cancelled(wallet, order, batch_goods_total(self.session, order))
            order.status = operation
            order.updated_at = now
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"✓ Wallet {operation} for order {order_id}: "
            f"available={result.available_balance} reserved={result.reserved_balance}"
        )
        return result


def process_wallet_operation(
    session: Session,
    shopper_id: str,
    order_id: str,
    operation: str,
    commission_percentage: Optional[float] = 20,
) -> WalletOperationResult:
    return WalletService(session, commission_percentage).process(shopper_id, order_id, operation)
