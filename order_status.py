"""
Order status updates made by the assigned shopper

accepted -> shopping -> in_progress -> picked_up -> delivered, or cancelled.
shopping, delivered and cancelled also move money, so they go through the
wallet operation of the same name; the other statuses are a plain update.
Delivered and cancelled orders no longer count against the shopper's
active-order limit.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import (
    ORDER_ACCEPTED, ORDER_CANCELLED, ORDER_DELIVERED, ORDER_IN_PROGRESS, ORDER_PICKED_UP, ORDER_SHOPPING,
    Order, utcnow,
)
from wallet import OPERATIONS, WalletOperationResult, check_order_transition, process_wallet_operation

logger = logging.getLogger(__name__)

SHOPPER_STATUSES = (
    ORDER_ACCEPTED,
    ORDER_SHOPPING,
    ORDER_IN_PROGRESS,
    ORDER_PICKED_UP,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
)


@dataclass
class OrderStatusUpdate:
    order_id: str
    previous_status: str
    status: str
    wallet: Optional[WalletOperationResult] = None

    def to_dict(self) -> Dict:
        return {
            "order": {"id": self.order_id, "status": self.status},
            "previousStatus": self.previous_status,
            "wallet": self.wallet.to_dict() if self.wallet else None,
        }


def update_order_status(
    session: Session,
    shopper_id: str,
    order_id: Optional[str],
    status: Optional[str],
    commission_percentage: float = 20,
) -> OrderStatusUpdate:
    """
    Move an order to a new status on behalf of its shopper.

    Raises:
        ValidationError: Missing fields or unknown status
        NotFoundError: Order (or, for wallet statuses, the wallet) missing
        PermissionDenied: Caller is not assigned to the order
        ConflictError: Order already finished or already in `status`
    """
    if not order_id or not status:
        raise ValidationError("Missing required fields: orderId and status")
    if status not in SHOPPER_STATUSES:
        raise ValidationError("Invalid status value")

    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")

    previous = order.status
    check_order_transition(order, shopper_id, status)

    if status in OPERATIONS:
        result = process_wallet_operation(session, shopper_id, order_id, status, commission_percentage)
        logger.info(f"✓ Order {order_id}: {previous} -> {status} (wallet updated)")
        return OrderStatusUpdate(order_id=order_id, previous_status=previous, status=status, wallet=result)

    order.status = status
    order.updated_at = utcnow()
    session.commit()
    logger.info(f"✓ Order {order_id}: {previous} -> {status}")
    return OrderStatusUpdate(order_id=order_id, previous_status=previous, status=status)
