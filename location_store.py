"""
Redis-backed shopper location store

Volatile, high-frequency data only:
- Shopper GPS positions (TTL 45s: no heartbeat means offline)
- Offer skip audit log (TTL 24h, for debugging and fairness audits)

The relational database stays the source of truth for orders, offers and
assignments. When Redis is unreachable every call degrades to a no-op
(writes return False, reads return nothing) and dispatch falls back to the
shoppers' stored positions.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

LOCATION_KEY_PREFIX = "shopper:location:"
SKIP_LOG_PREFIX = "offer:skip:"
DEFAULT_LOCATION_TTL = 45  # seconds
DEFAULT_ONLINE_FRESHNESS = 30  # seconds
SKIP_LOG_TTL = 24 * 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ShopperLocation:
    """Last reported position; updated_at is epoch milliseconds"""
    lat: float
    lng: float
    accuracy: Optional[float] = None
    updated_at: int = 0

    def to_json(self) -> str:
        return json.dumps({
            "lat": self.lat,
            "lng": self.lng,
            "accuracy": self.accuracy,
            "updatedAt": self.updated_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ShopperLocation":
        data = json.loads(raw)
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            accuracy=data.get("accuracy"),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass
class OfferSkipLog:
    """Why a shopper was passed over for an order"""
    order_id: str
    shopper_id: str
    reason: str
    distance: Optional[float] = None
    round: Optional[int] = None
    timestamp: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class LocationStore:
    """Shopper location and skip-log storage on Redis"""

    def __init__(
        self,
        client: Optional[Any] = None,
        url: Optional[str] = None,
        ttl_seconds: int = DEFAULT_LOCATION_TTL,
        freshness_seconds: int = DEFAULT_ONLINE_FRESHNESS,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        """
        Args:
            client: Ready Redis client (tests inject one); built from url otherwise
            url: Redis connection URL, e.g. redis://localhost:6379
            ttl_seconds: Location key TTL
            freshness_seconds: Max location age for a shopper to count as online
            clock_ms: Epoch-milliseconds clock
        """
        self.ttl_seconds = ttl_seconds
        self.freshness_seconds = freshness_seconds
        self.clock_ms = clock_ms
        self._degraded_logged = False

        if client is None and url:
            try:
                client = redis.Redis.from_url(
                    url,
                    decode_responses=True,
                    socket_timeout=2,
                    socket_connect_timeout=2,
                )
            except (RedisError, ValueError) as e:
                logger.error(f"✗ Failed to initialize Redis: {e}")
                client = None

        self.client = client

    # ------------------------------------------------------------------
    # Degraded-mode bookkeeping

    def _mark_failure(self, error: Exception) -> None:
        if not self._degraded_logged:
            logger.warning(f"⚠️ Redis unavailable: {error}")
            logger.warning("   Running in degraded mode (no live location tracking)")
            self._degraded_logged = True

    def _mark_success(self) -> None:
        if self._degraded_logged:
            logger.info("✓ Redis connection restored")
            self._degraded_logged = False

    @property
    def available(self) -> bool:
        return self.client is not None

    # ------------------------------------------------------------------
    # Locations

    def _location_key(self, shopper_id: str) -> str:
        return f"{LOCATION_KEY_PREFIX}{shopper_id}"

    def set_location(self, shopper_id: str, lat: float, lng: float, accuracy: Optional[float] = None) -> bool:
        """
        Store a shopper's position with the location TTL.

        Returns:
            True if stored, False if Redis is unavailable
        """
        if self.client is None:
            return False

        location = ShopperLocation(lat=lat, lng=lng, accuracy=accuracy, updated_at=self.clock_ms())
        try:
            self.client.setex(self._location_key(shopper_id), self.ttl_seconds, location.to_json())
        except RedisError as e:
            self._mark_failure(e)
            return False

        self._mark_success()
        return True

    def get_location(self, shopper_id: str) -> Optional[ShopperLocation]:
        """Position of one shopper, or None if expired/never set/unavailable"""
        if self.client is None:
            return None

        try:
            raw = self.client.get(self._location_key(shopper_id))
        except RedisError as e:
            self._mark_failure(e)
            return None

        self._mark_success()
        if not raw:
            return None
        try:
            return ShopperLocation.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.error(f"Error parsing location for shopper {shopper_id}")
            return None

    def get_locations(self, shopper_ids: List[str]) -> Dict[str, ShopperLocation]:
        """Bulk lookup with a single MGET; missing or unparsable entries are skipped"""
        locations: Dict[str, ShopperLocation] = {}
        if self.client is None or not shopper_ids:
            return locations

        try:
            values = self.client.mget([self._location_key(sid) for sid in shopper_ids])
        except RedisError as e:
            self._mark_failure(e)
            return locations

        self._mark_success()
        for shopper_id, raw in zip(shopper_ids, values):
            if not raw:
                continue
            try:
                locations[shopper_id] = ShopperLocation.from_json(raw)
            except (ValueError, KeyError, TypeError):
                logger.error(f"Error parsing location for shopper {shopper_id}")
        return locations

    def _is_fresh(self, location: ShopperLocation) -> bool:
        age_seconds = (self.clock_ms() - location.updated_at) / 1000
        return age_seconds < self.freshness_seconds

    def is_online(self, shopper_id: str) -> bool:
        location = self.get_location(shopper_id)
        return location is not None and self._is_fresh(location)

    def online_locations(self) -> Dict[str, ShopperLocation]:
        """Fresh locations of every shopper that still has a location key"""
        if self.client is None:
            return {}

        try:
            keys = list(self.client.scan_iter(match=f"{LOCATION_KEY_PREFIX}*"))
        except RedisError as e:
            self._mark_failure(e)
            return {}

        shopper_ids = [key[len(LOCATION_KEY_PREFIX):] for key in keys]
        locations = self.get_locations(shopper_ids)
        return {sid: loc for sid, loc in locations.items() if self._is_fresh(loc)}

    def online_shopper_ids(self) -> List[str]:
        return sorted(self.online_locations())

    def remove_location(self, shopper_id: str) -> bool:
        if self.client is None:
            return False
        try:
            self.client.delete(self._location_key(shopper_id))
        except RedisError as e:
            self._mark_failure(e)
            return False
        return True

    # ------------------------------------------------------------------
    # Offer skip audit log

    def log_offer_skip(self, entry: OfferSkipLog) -> None:
        """Record a skipped shopper; falls back to the application log"""
        entry.timestamp = self.clock_ms()
        payload = json.dumps(asdict(entry))

        if self.client is None:
            logger.info(f"OFFER_SKIP: {payload}")
            return

        key = f"{SKIP_LOG_PREFIX}{entry.order_id}:{entry.shopper_id}:{entry.timestamp}:{entry.reason}"
        try:
            self.client.setex(key, SKIP_LOG_TTL, payload)
        except RedisError as e:
            self._mark_failure(e)
            logger.info(f"OFFER_SKIP (fallback): {payload}")

    def order_skip_logs(self, order_id: str) -> List[OfferSkipLog]:
        """All skip entries for an order, oldest first"""
        if self.client is None:
            return []

        try:
            keys = list(self.client.scan_iter(match=f"{SKIP_LOG_PREFIX}{order_id}:*"))
            if not keys:
                return []
            values = self.client.mget(keys)
        except RedisError as e:
            self._mark_failure(e)
            return []

        logs = []
        for raw in values:
            if not raw:
                continue
            try:
                logs.append(OfferSkipLog(**json.loads(raw)))
            except (ValueError, TypeError):
                logger.error("Error parsing skip log")
        return sorted(logs, key=lambda log: log.timestamp)

    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        if self.client is None:
            return {"connected": False, "error": "Client not initialized"}

        start = time.perf_counter()
        try:
            self.client.ping()
        except RedisError as e:
            return {"connected": False, "error": str(e)}
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        return {"connected": True, "latency": latency_ms}
