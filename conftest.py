"""
Shared pytest fixtures: in-memory database, fake Redis, fake FCM sender,
and small seeding helpers.
"""

import fnmatch
from datetime import timedelta
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from config import Settings
from database import DatabaseManager
from location_store import LocationStore
from models import Address, Order, Shop, Shopper, User, Wallet, new_id, utcnow
from notifications import StaleTokenError


class FakeRedis:
    """Just enough of redis.Redis for the location store (TTLs are recorded, not enforced)"""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def get(self, key):
        return self.data.get(key)

    def mget(self, keys):
        return [self.data.get(key) for key in keys]

    def scan_iter(self, match="*"):
        return iter([key for key in list(self.data) if fnmatch.fnmatchcase(key, match)])

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def ping(self):
        return True


class BrokenRedis:
    """Every call fails like an unreachable server"""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("Connection refused")
        return fail


class FakeSender:
    """Records sends; tokens in `stale` raise StaleTokenError, in `failing` a generic error"""

    enabled = True

    def __init__(self):
        self.sent = []
        self.stale = set()
        self.failing = set()

    def send(self, token, payload):
        if token in self.stale:
            raise StaleTokenError("Requested entity was not found.")
        if token in self.failing:
            raise RuntimeError("FCM unavailable")
        self.sent.append((token, payload))
        return f"msg-{len(self.sent)}"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        secret_key="test-secret",
        app_env="development",
        persist_system_logs=False,
    )


@pytest.fixture
def db_manager():
    manager = DatabaseManager("sqlite:///:memory:")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def session(db_manager):
    session = db_manager.get_session()
    yield session
    session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def location_store(fake_redis):
    return LocationStore(client=fake_redis)


@pytest.fixture
def sender():
    return FakeSender()


# ----------------------------------------------------------------------
# Seeding helpers


def make_user(session, name="Alice", email=None, role="user", is_guest=False, phone=None):
    user = User(
        name=name,
        email=email or f"{name.lower().replace(' ', '.')}.{new_id()[:8]}@example.com",
        role=role,
        is_guest=is_guest,
        phone=phone,
    )
    session.add(user)
    session.commit()
    return user


def make_shopper(session, name="Sam", lat=-1.95, lng=30.06, status="approved", active=True, wallet=False):
    user = make_user(session, name=name, role="shopper")
    shopper = Shopper(
        id=user.id,
        full_name=name,
        status=status,
        active=active,
        latitude=lat,
        longitude=lng,
    )
    session.add(shopper)
    if wallet:
        session.add(Wallet(shopper_id=user.id, available_balance=Decimal("0.00"), reserved_balance=Decimal("0.00")))
    session.commit()
    return shopper


def make_order(
    session,
    lat=-1.95,
    lng=30.06,
    order_type="regular",
    age_minutes=1,
    shop=None,
    status="PENDING",
    shopper_id=None,
    total="100.00",
    service_fee="5.00",
    delivery_fee="10.00",
    **extra,
):
    customer = make_user(session, name="Customer")
    address = Address(user_id=customer.id, street="KN 5 Rd", city="Kigali", latitude=lat, longitude=lng)
    session.add(address)
    session.flush()

    order = Order(
        order_type=order_type,
        user_id=customer.id,
        address_id=address.id,
        shop_id=shop.id if shop else None,
        status=status,
        shopper_id=shopper_id,
        total=Decimal(total),
        service_fee=Decimal(service_fee),
        delivery_fee=Decimal(delivery_fee),
        created_at=utcnow() - timedelta(minutes=age_minutes),
        **extra,
    )
    session.add(order)
    session.commit()
    return order


def make_shop(session, name="Simba Supermarket", lat=-1.944, lng=30.061):
    shop = Shop(name=name, latitude=lat, longitude=lng)
    session.add(shop)
    session.commit()
    return shop
