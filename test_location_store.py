"""
Redis location store against an in-process fake client
"""

import json
import logging

from conftest import BrokenRedis, FakeRedis
from location_store import LocationStore, OfferSkipLog, ShopperLocation


class MsClock:
    def __init__(self, now_ms=1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms


def test_set_location_writes_json_with_ttl():
    redis_client = FakeRedis()
    clock = MsClock()
    store = LocationStore(client=redis_client, clock_ms=clock)

    assert store.set_location("s1", -1.95, 30.06, accuracy=12.5) is True

    raw = redis_client.data["shopper:location:s1"]
    assert json.loads(raw) == {"lat": -1.95, "lng": 30.06, "accuracy": 12.5, "updatedAt": clock.now_ms}
    assert redis_client.ttls["shopper:location:s1"] == 45


def test_get_location_roundtrip_and_missing():
    store = LocationStore(client=FakeRedis(), clock_ms=MsClock())
    store.set_location("s1", 1.0, 2.0)

    location = store.get_location("s1")
    assert isinstance(location, ShopperLocation)
    assert (location.lat, location.lng) == (1.0, 2.0)
    assert store.get_location("nobody") is None


def test_get_locations_skips_garbage():
    redis_client = FakeRedis()
    store = LocationStore(client=redis_client, clock_ms=MsClock())
    store.set_location("s1", 1.0, 2.0)
    redis_client.data["shopper:location:s2"] = "not json"

    locations = store.get_locations(["s1", "s2", "s3"])
    assert list(locations) == ["s1"]


def test_online_requires_fresh_location():
    clock = MsClock()
    store = LocationStore(client=FakeRedis(), clock_ms=clock)
    store.set_location("s1", 1.0, 2.0)

    clock.now_ms += 10_000
    store.set_location("s2", 1.0, 2.0)

    clock.now_ms += 25_000  # s1 is 35s old, s2 25s old
    assert store.is_online("s2")
    assert not store.is_online("s1")
    assert store.online_shopper_ids() == ["s2"]


def test_remove_location():
    store = LocationStore(client=FakeRedis(), clock_ms=MsClock())
    store.set_location("s1", 1.0, 2.0)
    assert store.remove_location("s1")
    assert store.get_location("s1") is None


def test_skip_logs_are_stored_and_sorted():
    redis_client = FakeRedis()
    clock = MsClock()
    store = LocationStore(client=redis_client, clock_ms=clock)

    store.log_offer_skip(OfferSkipLog(order_id="o1", shopper_id="s2", reason="pending_offer", round=1))
    clock.now_ms -= 5
    store.log_offer_skip(OfferSkipLog(order_id="o1", shopper_id="s1", reason="max_active_orders", round=1))
    store.log_offer_skip(OfferSkipLog(order_id="o2", shopper_id="s1", reason="declined", round=2))

    logs = store.order_skip_logs("o1")
    assert [log.shopper_id for log in logs] == ["s1", "s2"]
    assert all(key.startswith("offer:skip:") for key in redis_client.data)
    assert set(redis_client.ttls.values()) == {24 * 3600}


def test_no_client_degrades_quietly(caplog):
    store = LocationStore(client=None)

    with caplog.at_level(logging.INFO):
        store.log_offer_skip(OfferSkipLog(order_id="o1", shopper_id="s1", reason="declined"))

    assert store.set_location("s1", 1.0, 2.0) is False
    assert store.get_location("s1") is None
    assert store.online_shopper_ids() == []
    assert store.health() == {"connected": False, "error": "Client not initialized"}
    assert "OFFER_SKIP" in caplog.text


def test_broken_redis_warns_once_and_recovers(caplog):
    store = LocationStore(client=BrokenRedis(), clock_ms=MsClock())

    with caplog.at_level(logging.WARNING):
        assert store.set_location("s1", 1.0, 2.0) is False
        assert store.get_location("s1") is None
        assert store.online_locations() == {}

    warnings = [r for r in caplog.records if "Redis unavailable" in r.getMessage()]
    assert len(warnings) == 1
    assert store.health()["connected"] is False

    store.client = FakeRedis()
    with caplog.at_level(logging.INFO):
        assert store.set_location("s1", 1.0, 2.0) is True
    assert "Redis connection restored" in caplog.text


def test_health_reports_latency():
    health = LocationStore(client=FakeRedis()).health()
    assert health["connected"] is True
    assert health["latency"] >= 0
