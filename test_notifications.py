"""
FCM token registry and notification fan-out (fake sender, no Firebase)
"""

from config import Settings
from conftest import make_user
from dispatch import OfferSummary
from models import FCMToken
from notifications import (
    FCMSender, NotificationPayload, NotificationService, get_tokens, remove_token, save_token,
)


def test_save_token_upserts(session):
    user = make_user(session)
    other = make_user(session, name="Bob")

    save_token(session, user.id, "tok-1", "android")
    record = save_token(session, other.id, "tok-1", "carrier-pigeon")

    assert session.query(FCMToken).count() == 1
    assert record.user_id == other.id
    assert record.platform == "web"  # unknown platforms fall back to web
    assert get_tokens(session, user.id) == []
    assert [t.token for t in get_tokens(session, other.id)] == ["tok-1"]


def test_remove_token(session):
    user = make_user(session)
    save_token(session, user.id, "tok-1")
    remove_token(session, "tok-1")
    assert get_tokens(session, user.id) == []


def test_sender_without_credentials_is_disabled():
    sender = FCMSender(Settings())
    assert sender.enabled is False


def test_send_to_user_prunes_stale_tokens(session, sender):
    user = make_user(session)
    for token in ("good", "stale", "flaky"):
        save_token(session, user.id, token)
    sender.stale.add("stale")
    sender.failing.add("flaky")

    report = NotificationService(session, sender).send_to_user(
        user.id, NotificationPayload(title="Hi", body="There", data={"count": 3, "none": None})
    )

    assert report.success_count == 1
    assert report.failure_count == 2
    assert report.removed_tokens == ["stale"]
    assert sorted(t.token for t in get_tokens(session, user.id)) == ["flaky", "good"]

    _, payload = sender.sent[0]
    assert payload.data == {"count": "3", "none": ""}


def test_disabled_service_skips(session):
    user = make_user(session)
    save_token(session, user.id, "tok-1")

    report = NotificationService(session, None).send_to_user(user.id, NotificationPayload("a", "b"))
    assert report.skipped is True
    assert report.success_count == 0


def test_send_to_users_combines_reports(session, sender):
    alice = make_user(session)
    bob = make_user(session, name="Bob")
    save_token(session, alice.id, "a1")
    save_token(session, alice.id, "a2")
    save_token(session, bob.id, "b1")

    report = NotificationService(session, sender).send_to_users([alice.id, bob.id], NotificationPayload("t", "b"))
    assert report.success_count == 3
    assert report.skipped is False


def test_chat_notification_truncates_body(session, sender):
    user = make_user(session)
    save_token(session, user.id, "tok-1")

    NotificationService(session, sender).send_chat_notification(
        user.id, "Sam", "x" * 150, order_id="o1", conversation_id="c1"
    )

    _, payload = sender.sent[0]
    assert payload.title == "New message from Sam"
    assert payload.body == "x" * 100 + "..."
    assert payload.data == {
        "type": "chat_message",
        "orderId": "o1",
        "conversationId": "c1",
        "senderName": "Sam",
    }


def test_new_order_notification_payload(session, sender):
    shopper = make_user(session, role="shopper")
    save_token(session, shopper.id, "tok-1")
    summary = OfferSummary(
        id="order-1",
        shop_name="Simba",
        distance_km=2.5,
        travel_time_minutes=7,
        created_at=None,
        customer_address="KN 5 Rd, Kigali",
        items_count=4,
        estimated_earnings=15.0,
        order_type="regular",
        priority=1.2,
    )

    NotificationService(session, sender).send_new_order_notification(shopper.id, summary, expires_in_ms=60000)

    _, payload = sender.sent[0]
    assert payload.title == "New batch available"
    assert payload.data["type"] == "new_order"
    assert payload.data["orderId"] == "order-1"
    assert payload.data["distance"] == "2.5"
    assert payload.data["expiresInMs"] == "60000"
    assert all(isinstance(v, str) for v in payload.data.values())


def test_expired_notification(session, sender):
    shopper = make_user(session, role="shopper")
    save_token(session, shopper.id, "tok-1")

    NotificationService(session, sender).send_order_expired_notification(shopper.id, "order-1")

    _, payload = sender.sent[0]
    assert payload.data == {"type": "order_expired", "orderId": "order-1", "reason": "timeout"}
