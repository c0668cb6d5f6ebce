"""
Shopper Dispatch - exclusive, rotating batch offers

Orders are never pushed onto a shopper. Instead each PENDING order is
offered to exactly one shopper at a time for a short window:

1. distribute_orders(): new orders get a round-1 offer for the best online shopper
2. The shopper accepts (accept_offer) or declines (decline_offer)
3. rotate_expired_offers(): expired/declined offers move to the next best
   eligible shopper (round + 1) until someone accepts or nobody is left

Eligibility for an offer:
- never offered this order before
- fewer than MAX_ACTIVE_ORDERS orders in progress
- no other open offer (one offer at a time)

Priority score (lower is better) mixes distance, rating, experience, order
age and a small random factor for fairness.
"""

import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Settings
from errors import ConflictError, NotFoundError, PermissionDenied
from geo import GeoPoint, travel_time_minutes, validate_coordinates
from location_store import LocationStore, OfferSkipLog
from models import (
    ACTIVE_ORDER_STATUSES, OFFER_ACCEPTED, OFFER_DECLINED, OFFER_EXPIRED, OFFER_OFFERED,
    ORDER_ACCEPTED, ORDER_PENDING, ORDER_TYPE_REEL, ORDER_TYPE_REGULAR, ORDER_TYPE_RESTAURANT,
    FCMToken, Order, OrderOffer, Rating, Shopper, User, utcnow,
)

logger = logging.getLogger(__name__)

AVAILABLE_ORDERS_LIMIT = 20  # per order type
CLUSTER_CELL_DEGREES = 0.01

# Skip reasons recorded in the offer audit log
SKIP_ALREADY_OFFERED = "already_offered"
SKIP_MAX_ACTIVE_ORDERS = "max_active_orders"
SKIP_PENDING_OFFER = "pending_offer"
SKIP_DECLINED = "declined"


# --------------------- Scoring ---------------------


@dataclass
class ShopperPerformance:
    order_count: int = 0
    avg_rating: float = 0.0

    @property
    def completion_rate(self) -> float:
        if self.order_count <= 0:
            return 0.0
        return min(100.0, self.order_count / 10 * 100)


def age_factor(age_minutes: float) -> float:
    """Older orders get a bonus so they are not left behind"""
    if age_minutes >= 30:
        return -5
    if age_minutes >= 15:
        return -2
    if age_minutes >= 5:
        return 0
    return 2


def rotation_priority(distance_km: float, performance: ShopperPerformance, age_minutes: float, jitter: float) -> float:
    """Score used when choosing who gets an offer (lower is better)"""
    return (
        distance_km * 0.3
        + (5 - performance.avg_rating) * 1.5
        + (100 - performance.completion_rate) * 0.01
        + age_factor(age_minutes)
        + jitter * 0.3
    )


def smart_assign_priority(distance_km: float, performance: ShopperPerformance, jitter: float) -> float:
    """Score used when a shopper asks for the best order near them"""
    return (
        distance_km * 0.4
        + (5 - performance.avg_rating) * 2
        + (100 - performance.completion_rate) * 0.01
        + jitter * 0.5
    )


def estimated_earnings(order: Order) -> float:
    """Restaurant orders pay the delivery fee only; others service + delivery"""
    delivery = float(order.delivery_fee or 0)
    if order.order_type == ORDER_TYPE_RESTAURANT:
        return delivery
    return float(order.service_fee or 0) + delivery


def delivery_point(order: Order) -> GeoPoint:
    return GeoPoint(float(order.address.latitude), float(order.address.longitude))


def pickup_point(order: Order) -> GeoPoint:
    """Shop location when known, otherwise the delivery address"""
    if order.shop is not None:
        point = GeoPoint.from_columns(order.shop.latitude, order.shop.longitude)
        if point is not None:
            return point
    return delivery_point(order)


# --------------------- Results ---------------------


@dataclass
class Candidate:
    shopper: Shopper
    location: GeoPoint
    priority: float = 0.0


@dataclass
class OfferSummary:
    """What a shopper sees about an order before accepting it"""
    id: str
    shop_name: str
    distance_km: float
    travel_time_minutes: int
    created_at: Optional[datetime]
    customer_address: str
    items_count: int
    estimated_earnings: float
    order_type: str
    priority: float
    total: Optional[float] = None
    reel_title: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {
            "id": self.id,
            "shopName": self.shop_name,
            "distance": round(self.distance_km, 2),
            "travelTimeMinutes": self.travel_time_minutes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "customerAddress": self.customer_address,
            "itemsCount": self.items_count,
            "estimatedEarnings": round(self.estimated_earnings, 2),
            "orderType": self.order_type,
            "priority": round(self.priority, 3),
        }
        if self.order_type == ORDER_TYPE_RESTAURANT:
            data["total"] = self.total
        if self.order_type == ORDER_TYPE_REEL:
            data["reel"] = {"title": self.reel_title}
        return data


@dataclass
class RotationResult:
    rotated_count: int = 0
    results: List[Dict] = field(default_factory=list)


@dataclass
class DistributionResult:
    offers_created: int = 0
    results: List[Dict] = field(default_factory=list)


@dataclass
class AcceptResult:
    order_id: str
    shopper_id: str
    offer_id: str
    round_number: int
    order_type: str


# --------------------- Service ---------------------


class DispatchService:
    """Offer lifecycle on top of a DB session and the live location store"""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        location_store: Optional[LocationStore] = None,
        notifier=None,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            session: SQLAlchemy session
            settings: Dispatch tunables (offer duration, order window, caps)
            location_store: Live locations; stored positions are used without it
            notifier: notifications.NotificationService, optional
            rng: Source of the fairness jitter in [0, 1)
            clock: Naive-UTC clock
        """
        self.session = session
        self.settings = settings
        self.location_store = location_store
        self.notifier = notifier
        self.rng = rng
        self.clock = clock

    @property
    def offer_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.offer_duration_seconds)

    # ------------------------------------------------------------------
    # Queries

    def available_orders(self) -> List[Order]:
        """PENDING, unassigned orders from the recent window, oldest first"""
        cutoff = self.clock() - timedelta(minutes=self.settings.order_window_minutes)
        orders: List[Order] = []
        for order_type in (ORDER_TYPE_REGULAR, ORDER_TYPE_REEL, ORDER_TYPE_RESTAURANT):
            orders.extend(
                self.session.query(Order)
                .filter(
                    Order.order_type == order_type,
                    Order.status == ORDER_PENDING,
                    Order.shopper_id.is_(None),
                    Order.created_at > cutoff,
                )
                .order_by(Order.created_at.asc())
                .limit(AVAILABLE_ORDERS_LIMIT)
                .all()
            )
        return orders

    def shopper_performance(self, shopper_id: str) -> ShopperPerformance:
        order_count = self.session.query(func.count(Order.id)).filter(
            Order.shopper_id == shopper_id
        ).scalar() or 0
        avg_rating = self.session.query(func.avg(Rating.rating)).filter(
            Rating.shopper_id == shopper_id
        ).scalar()
        return ShopperPerformance(order_count=order_count, avg_rating=float(avg_rating or 0))

    def _active_order_count(self, shopper_id: str) -> int:
        return self.session.query(func.count(Order.id)).filter(
            Order.shopper_id == shopper_id,
            Order.status.in_(ACTIVE_ORDER_STATUSES),
        ).scalar() or 0

    def _has_open_offer(self, shopper_id: str) -> bool:
        return self.session.query(OrderOffer.id).filter(
            OrderOffer.shopper_id == shopper_id,
            OrderOffer.status == OFFER_OFFERED,
            OrderOffer.expires_at > self.clock(),
        ).first() is not None

    def _open_offer_for(self, order_id: str, shopper_id: str) -> Optional[OrderOffer]:
        return self.session.query(OrderOffer).filter(
            OrderOffer.order_id == order_id,
            OrderOffer.shopper_id == shopper_id,
            OrderOffer.status == OFFER_OFFERED,
            OrderOffer.expires_at > self.clock(),
        ).first()

    def candidate_shoppers(self, online_only: bool = False) -> List[Candidate]:
        """
        Approved, active shoppers with a usable position.

        Live Redis positions win over stored ones. With online_only, only
        shoppers with a fresh live position are returned.
        """
        live = self.location_store.online_locations() if self.location_store else {}
        if online_only and not live:
            return []

        query = self.session.query(Shopper).filter(
            Shopper.status == "approved",
            Shopper.active.is_(True),
        )
        if online_only:
            query = query.filter(Shopper.id.in_(list(live)))

        candidates = []
        for shopper in query.all():
            if shopper.id in live:
                loc = live[shopper.id]
                point = GeoPoint(loc.lat, loc.lng)
            elif online_only:
                continue
            else:
                point = GeoPoint.from_columns(shopper.latitude, shopper.longitude)
            if point is None:
                continue
            candidates.append(Candidate(shopper=shopper, location=point))
        return candidates

    # ------------------------------------------------------------------
    # Selection

    def _log_skip(self, order: Order, shopper_id: str, reason: str, round_number: int, **metadata) -> None:
        if self.location_store is None:
            logger.info(f"⏭️ Skipping shopper {shopper_id} for order {order.id}: {reason}")
            return
        self.location_store.log_offer_skip(OfferSkipLog(
            order_id=order.id,
            shopper_id=shopper_id,
            reason=reason,
            round=round_number,
            metadata=metadata,
        ))

    def eligible_candidates(self, order: Order, candidates: List[Candidate], round_number: int) -> List[Candidate]:
        offered_ids = {
            row.shopper_id
            for row in self.session.query(OrderOffer.shopper_id).filter(OrderOffer.order_id == order.id)
        }

        eligible = []
        for candidate in candidates:
            shopper_id = candidate.shopper.id
            if shopper_id in offered_ids:
                self._log_skip(order, shopper_id, SKIP_ALREADY_OFFERED, round_number)
                continue

            active_orders = self._active_order_count(shopper_id)
            if active_orders >= self.settings.max_active_orders:
                self._log_skip(order, shopper_id, SKIP_MAX_ACTIVE_ORDERS, round_number, active_orders=active_orders)
                continue

            if self._has_open_offer(shopper_id):
                self._log_skip(order, shopper_id, SKIP_PENDING_OFFER, round_number)
                continue

            eligible.append(candidate)
        return eligible

    def _pick_best(self, order: Order, candidates: List[Candidate]) -> Optional[Candidate]:
        if not candidates:
            return None

        destination = delivery_point(order)
        age_minutes = (self.clock() - order.created_at).total_seconds() / 60

        for candidate in candidates:
            candidate.priority = rotation_priority(
                candidate.location.distance_to(destination),
                self.shopper_performance(candidate.shopper.id),
                age_minutes,
                self.rng(),
            )
        return min(candidates, key=lambda c: c.priority)

    def build_summary(self, order: Order, origin: GeoPoint, priority: float) -> OfferSummary:
        distance = origin.distance_to(delivery_point(order))
        if order.shop is not None:
            shop_name = order.shop.name
        else:
            shop_name = order.source_name or "Unknown Shop"

        return OfferSummary(
            id=order.id,
            shop_name=shop_name,
            distance_km=distance,
            travel_time_minutes=travel_time_minutes(distance, self.settings.average_speed_kmh),
            created_at=order.created_at,
            customer_address=f"{order.address.street}, {order.address.city}",
            items_count=order.quantity or 1,
            estimated_earnings=estimated_earnings(order),
            order_type=order.order_type,
            priority=priority,
            total=float(order.total) if order.order_type == ORDER_TYPE_RESTAURANT else None,
            reel_title=order.source_name if order.order_type == ORDER_TYPE_REEL else None,
        )

    def _create_offer(self, order: Order, candidate: Candidate, round_number: int) -> OrderOffer:
        now = self.clock()
        offer = OrderOffer(
            order_id=order.id,
            shopper_id=candidate.shopper.id,
            order_type=order.order_type,
            status=OFFER_OFFERED,
            offered_at=now,
            expires_at=now + self.offer_duration,
            round_number=round_number,
        )
        self.session.add(offer)
        self.session.commit()
        return offer

    def _notify_new_offer(self, order: Order, candidate: Candidate) -> None:
        if self.notifier is None:
            return
        try:
            summary = self.build_summary(order, candidate.location, candidate.priority)
            self.notifier.send_new_order_notification(
                candidate.shopper.id,
                summary,
                expires_in_ms=self.settings.offer_duration_seconds * 1000,
            )
        except Exception as e:
            logger.error(f"✗ Failed to send offer notification for order {order.id}: {e}")

    def _notify_expired(self, shopper_id: str, order_id: str, reason: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_order_expired_notification(shopper_id, order_id, reason)
        except Exception as e:
            logger.error(f"✗ Failed to send expiry notification for order {order_id}: {e}")

    # ------------------------------------------------------------------
    # Operations

    def smart_assign(self, shopper_id: str, lat: float, lng: float) -> Optional[OfferSummary]:
        """
        Best available order for a shopper at (lat, lng). Nothing is assigned.

        Returns:
            OfferSummary of the best order, or None when there are no orders

        Raises:
            ValidationError: If the coordinates are invalid
        """
        validate_coordinates(lat, lng)
        origin = GeoPoint(lat, lng)

        orders = self.available_orders()
        if not orders:
            logger.info("No available orders found")
            return None

        performance = self.shopper_performance(shopper_id)
        ranked = []
        for order in orders:
            priority = smart_assign_priority(origin.distance_to(delivery_point(order)), performance, self.rng())
            ranked.append((priority, order))
        ranked.sort(key=lambda pair: pair[0])

        priority, best = ranked[0]
        logger.info(f"Best order for shopper {shopper_id}: {best.id} ({best.order_type}, priority {priority:.2f})")
        return self.build_summary(best, origin, priority)

    def distribute_orders(self) -> DistributionResult:
        """Create round-1 offers for new orders, targeting online shoppers."""
        result = DistributionResult()

        candidates = self.candidate_shoppers(online_only=True)
        if not candidates:
            logger.info("ℹ️ No active shoppers online")
            return result

        orders = self.available_orders()
        if not orders:
            logger.info("ℹ️ No available orders for distribution")
            return result

        logger.info(f"📦 Distributing {len(orders)} orders to {len(candidates)} online shoppers")

        for order in orders:
            has_offers = self.session.query(OrderOffer.id).filter(OrderOffer.order_id == order.id).first()
            if has_offers is not None:
                continue  # rotation owns orders that were already offered

            best = self._pick_best(order, self.eligible_candidates(order, candidates, 1))
            if best is None:
                logger.info(f"⚠️ No suitable shopper found for order {order.id}")
                continue

            offer = self._create_offer(order, best, 1)
            self._notify_new_offer(order, best)

            result.offers_created += 1
            result.results.append({
                "orderId": order.id,
                "orderType": order.order_type,
                "shopperId": best.shopper.id,
                "offerId": offer.id,
                "priority": round(best.priority, 3),
            })
            logger.info(f"✓ Order {order.id} offered to shopper {best.shopper.id} (priority {best.priority:.2f})")

        return result

    def _offers_needing_rotation(self) -> List[OrderOffer]:
        now = self.clock()
        expired = self.session.query(OrderOffer).filter(
            OrderOffer.status == OFFER_OFFERED,
            OrderOffer.expires_at <= now,
        ).all()

        latest_round = (
            self.session.query(OrderOffer.order_id, func.max(OrderOffer.round_number).label("max_round"))
            .group_by(OrderOffer.order_id)
            .subquery()
        )
        declined = (
            self.session.query(OrderOffer)
            .join(latest_round, (OrderOffer.order_id == latest_round.c.order_id)
                  & (OrderOffer.round_number == latest_round.c.max_round))
            .join(Order, Order.id == OrderOffer.order_id)
            .filter(
                OrderOffer.status == OFFER_DECLINED,
                Order.status == ORDER_PENDING,
                Order.shopper_id.is_(None),
            )
            .all()
        )
        return expired + declined

    def rotate_expired_offers(self) -> RotationResult:
        """
        Expire timed-out offers and pass each still-open order to the next
        eligible shopper. Declined offers whose order is still open are
        rotated the same way.
        """
        result = RotationResult()
        offers = self._offers_needing_rotation()

        if not offers:
            logger.info("No expired offers found")
            return result

        logger.info(f"Found {len(offers)} offers to rotate")
        candidates = None
        handled_orders = set()

        for offer in offers:
            try:
                previous_status = offer.status
                if offer.status == OFFER_OFFERED:
                    offer.status = OFFER_EXPIRED
                    offer.updated_at = self.clock()
                    self.session.commit()
                    logger.info(f"✓ Marked offer {offer.id} as EXPIRED")
                    self._notify_expired(offer.shopper_id, offer.order_id, "timeout")

                if offer.order_id in handled_orders:
                    continue
                handled_orders.add(offer.order_id)

                order = self.session.get(Order, offer.order_id)
                if order is None or order.status != ORDER_PENDING or order.shopper_id is not None:
                    logger.info(f"Order {offer.order_id} is no longer available (might have been accepted)")
                    continue

                if self.session.query(OrderOffer.id).filter(
                    OrderOffer.order_id == order.id,
                    OrderOffer.status == OFFER_OFFERED,
                    OrderOffer.expires_at > self.clock(),
                ).first() is not None:
                    continue  # someone already holds a live offer

                next_round = (self.session.query(func.max(OrderOffer.round_number)).filter(
                    OrderOffer.order_id == order.id
                ).scalar() or offer.round_number) + 1

                if candidates is None:
                    candidates = self.candidate_shoppers()

                best = self._pick_best(order, self.eligible_candidates(order, candidates, next_round))
                if best is None:
                    logger.info(f"⚠️ No more shoppers to rotate for order {order.id}")
                    continue

                self._create_offer(order, best, next_round)
                logger.info(f"✓ Created offer for shopper {best.shopper.full_name} (round {next_round})")
                self._notify_new_offer(order, best)

                result.results.append({
                    "orderId": order.id,
                    "orderType": order.order_type,
                    "previousShopper": offer.shopper_id,
                    "previousStatus": previous_status,
                    "nextShopper": best.shopper.id,
                    "round": next_round,
                })
            except Exception as e:
                self.session.rollback()
                logger.error(f"✗ Error rotating offer {offer.id}: {e}")

        result.rotated_count = len(result.results)
        logger.info(f"✓ Rotated {result.rotated_count} offers")
        return result

    def accept_offer(self, order_id: str, shopper_id: str) -> AcceptResult:
        """
        Accept an open offer and assign the order, atomically.

        Raises:
            PermissionDenied: NO_VALID_OFFER - no open offer for this shopper
            NotFoundError: Order does not exist
            ConflictError: ALREADY_ASSIGNED / INVALID_STATUS
        """
        offer = self._open_offer_for(order_id, shopper_id)
        if offer is None:
            logger.warning(f"✗ Offer verification failed for order {order_id}, shopper {shopper_id}")
            raise PermissionDenied(
                "You don't have an active offer for this order, or the offer has expired",
                code="NO_VALID_OFFER",
            )

        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        if order.shopper_id:
            raise ConflictError(
                "This batch has already been assigned to another shopper",
                code="ALREADY_ASSIGNED",
            )

        if order.status != ORDER_PENDING:
            raise ConflictError(
                "This batch is no longer available for assignment",
                code="INVALID_STATUS",
            )

        now = self.clock()
        updated = self.session.query(Order).filter(
            Order.id == order_id,
            Order.status == ORDER_PENDING,
            Order.shopper_id.is_(None),
        ).update(
            {
                Order.shopper_id: shopper_id,
                Order.status: ORDER_ACCEPTED,
                Order.assigned_at: now,
                Order.updated_at: now,
            },
            synchronize_session=False,
        )
        if updated != 1:
            self.session.rollback()
            raise ConflictError(
                "This batch has already been assigned to another shopper",
                code="ALREADY_ASSIGNED",
            )

        offer.status = OFFER_ACCEPTED
        offer.updated_at = now
        self.session.commit()
        self.session.refresh(order)

        logger.info(f"✓ Batch {order_id} accepted by shopper {shopper_id} (offer {offer.id}, round {offer.round_number})")
        return AcceptResult(
            order_id=order_id,
            shopper_id=shopper_id,
            offer_id=offer.id,
            round_number=offer.round_number,
            order_type=order.order_type,
        )

    def decline_offer(self, order_id: str, shopper_id: str) -> Tuple[str, Optional[RotationResult]]:
        """
        Decline an open offer and immediately rotate the order onward.

        Returns:
            (declined offer id, rotation result or None if rotation failed)

        Raises:
            NotFoundError: NO_ACTIVE_OFFER
        """
        offer = self._open_offer_for(order_id, shopper_id)
        if offer is None:
            raise NotFoundError("No active offer found for this order", code="NO_ACTIVE_OFFER")

        offer.status = OFFER_DECLINED
        offer.updated_at = self.clock()
        self.session.commit()
        logger.info(f"✓ Offer {offer.id} declined by shopper {shopper_id}")

        order = self.session.get(Order, order_id)
        self._log_skip(order, shopper_id, SKIP_DECLINED, offer.round_number)

        try:
            rotation = self.rotate_expired_offers()
        except Exception:
            self.session.rollback()
            logger.exception("Failed to rotate after decline; next scheduled rotation will pick it up")
            rotation = None

        return offer.id, rotation

    def nearby_available_shoppers(
        self,
        order_id: str,
        max_distance_km: float = 10,
        exclude_shopper_id: Optional[str] = None,
    ) -> List[Dict]:
        """
        Active shoppers with push tokens within max_distance_km of the
        order's pickup point, nearest first.
        """
        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        target = pickup_point(order)

        users = (
            self.session.query(User)
            .join(FCMToken, FCMToken.user_id == User.id)
            .filter(
                User.role == "shopper",
                User.is_active.is_(True),
                FCMToken.is_active.is_(True),
            )
            .distinct()
            .all()
        )
        user_ids = [u.id for u in users if u.id != exclude_shopper_id]
        live = self.location_store.get_locations(user_ids) if self.location_store else {}
        stored = {
            s.id: s for s in self.session.query(Shopper).filter(Shopper.id.in_(user_ids)).all()
        } if user_ids else {}

        nearby = []
        for user in users:
            if user.id == exclude_shopper_id:
                continue
            if user.id in live:
                point = GeoPoint(live[user.id].lat, live[user.id].lng)
            elif user.id in stored:
                point = GeoPoint.from_columns(stored[user.id].latitude, stored[user.id].longitude)
            else:
                point = None
            if point is None:
                continue

            distance = point.distance_to(target)
            if distance > max_distance_km:
                continue

            nearby.append({
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "distance": round(distance, 2),
                "liveLocation": user.id in live,
                "tokens": [
                    {"token": t.token, "platform": t.platform}
                    for t in user.fcm_tokens if t.is_active
                ],
            })

        nearby.sort(key=lambda entry: entry["distance"])
        logger.info(f"Found {len(nearby)} shoppers within {max_distance_km} km of order {order_id}")
        return nearby

    def status(self) -> Dict:
        """Online shoppers, their grid clusters, and location store health"""
        live = self.location_store.online_locations() if self.location_store else {}
        clusters = Counter(
            GeoPoint(loc.lat, loc.lng).grid_cell(CLUSTER_CELL_DEGREES) for loc in live.values()
        )
        return {
            "activeConnections": len(live),
            "onlineShoppers": sorted(live),
            "locationClusters": dict(clusters),
            "redis": self.location_store.health() if self.location_store else {"connected": False},
        }
