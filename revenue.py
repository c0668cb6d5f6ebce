"""
Revenue calculations

Cart items carry two prices: `price` (what the shop is paid) and
`final_price` (what the customer pays). Plas revenue is the difference,
plus the commission taken from shopper fees.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from wallet import money


@dataclass
class RevenueItem:
    price: Decimal
    final_price: Decimal
    quantity: int
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "RevenueItem":
        """Accepts flat items or the nested {"quantity", "Product": {...}} cart shape"""
        product = data.get("Product", data)
        return cls(
            price=money(product.get("price")),
            final_price=money(product.get("final_price", product.get("price"))),
            quantity=int(data.get("quantity", 1)),
            name=product.get("name"),
        )


class RevenueCalculator:
    """Static revenue helpers"""

    @staticmethod
    def _total(items: Iterable[RevenueItem], attr: str) -> Decimal:
        return sum((getattr(item, attr) * item.quantity for item in items), Decimal("0.00"))

    @staticmethod
    def calculate_revenue(items: List[RevenueItem]) -> Dict[str, str]:
        """
        Returns:
            actualTotal (paid to shop), customerTotal (paid by customer) and
            revenue (the difference), each as a 2dp string
        """
        customer_total = RevenueCalculator._total(items, "final_price")
        actual_total = RevenueCalculator._total(items, "price")
        return {
            "actualTotal": str(money(actual_total)),
            "customerTotal": str(money(customer_total)),
            "revenue": str(money(customer_total - actual_total)),
        }

    @staticmethod
    def calculate_order_revenue(order_total, items: List[RevenueItem]) -> Dict[str, str]:
        total = money(order_total)
        items_total = RevenueCalculator._total(items, "price")
        return {
            "orderTotal": str(total),
            "itemsTotal": str(money(items_total)),
            "revenue": str(money(total - items_total)),
        }

    @staticmethod
    def calculate_product_profits(items: List[RevenueItem]) -> List[Dict]:
        return [
            {
                "product": item.name or "Unknown Product",
                "quantity": item.quantity,
                "price": float(item.price),
                "final_price": float(item.final_price),
                "profit": float(money((item.final_price - item.price) * item.quantity)),
            }
            for item in items
        ]

    @staticmethod
    def calculate_plasa_fee(service_fee, delivery_fee, commission_percentage) -> Decimal:
        """Platform commission on shopper fees"""
        fees = money(service_fee) + money(delivery_fee)
        return money(fees * Decimal(str(commission_percentage)) / 100)
