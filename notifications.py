"""
Push notifications via Firebase Cloud Messaging

- Device token registry (fcm_tokens table)
- FCMSender: thin wrapper over firebase_admin.messaging, disabled when
  Firebase credentials are not configured
- NotificationService: per-user fan-out, invalid token pruning, and the
  dispatch/chat notification payloads
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError, InvalidArgumentError
from sqlalchemy.orm import Session

from config import Settings
from models import FCMToken, utcnow

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "plas"
PLATFORMS = ("web", "android", "ios")
CHAT_PREVIEW_LENGTH = 100


class StaleTokenError(Exception):
    """The device token is no longer registered and should be dropped"""
    pass


@dataclass
class NotificationPayload:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    image_url: Optional[str] = None


@dataclass
class DeliveryReport:
    """Outcome of one fan-out"""
    success_count: int = 0
    failure_count: int = 0
    removed_tokens: List[str] = field(default_factory=list)
    skipped: bool = False

    def merge(self, other: "DeliveryReport") -> None:
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.removed_tokens.extend(other.removed_tokens)
        self.skipped = self.skipped and other.skipped


class FCMSender:
    """Sends single-device messages through the Firebase Admin SDK"""

    def __init__(self, settings: Settings):
        self.app = None

        if not settings.has_firebase_credentials:
            logger.warning("⚠️ Firebase credentials not found. FCM features will be disabled.")
            return

        try:
            try:
                self.app = firebase_admin.get_app(FIREBASE_APP_NAME)
            except ValueError:
                cred = credentials.Certificate({
                    "type": "service_account",
                    "project_id": settings.firebase_project_id,
                    "client_email": settings.firebase_client_email,
                    "private_key": settings.firebase_private_key.replace("\\n", "\n"),
                    "token_uri": "https://oauth2.googleapis.com/token",
                })
                self.app = firebase_admin.initialize_app(
                    cred,
                    {"projectId": settings.firebase_project_id},
                    name=FIREBASE_APP_NAME,
                )
            logger.info("✓ Firebase Admin SDK initialized")
        except (ValueError, FirebaseError) as e:
            logger.warning(f"⚠️ Failed to initialize Firebase Admin SDK: {e}")
            self.app = None

    @property
    def enabled(self) -> bool:
        return self.app is not None

    def send(self, token: str, payload: NotificationPayload) -> str:
        """
        Send to one device.

        Returns:
            FCM message id

        Raises:
            StaleTokenError: If FCM reports the token invalid or unregistered
            FirebaseError: For any other delivery failure
        """
        data = dict(payload.data)
        message = messaging.Message(
            notification=messaging.Notification(
                title=payload.title,
                body=payload.body,
                image=payload.image_url,
            ),
            data=data,
            webpush=messaging.WebpushConfig(
                fcm_options=messaging.WebpushFCMOptions(link=data["click_action"])
            ) if data.get("click_action") else None,
            token=token,
        )
        try:
            return messaging.send(message, app=self.app)
        except messaging.UnregisteredError as e:
            raise StaleTokenError(str(e)) from e
        except InvalidArgumentError as e:
            if "registration token" in str(e).lower():
                raise StaleTokenError(str(e)) from e
            raise


# ----------------------------------------------------------------------
# Token registry


def save_token(session: Session, user_id: str, token: str, platform: str = "web") -> FCMToken:
    """Register (or re-activate) a device token for a user."""
    if platform not in PLATFORMS:
        platform = "web"

    record = session.get(FCMToken, token)
    now = utcnow()
    if record is None:
        record = FCMToken(token=token, user_id=user_id, platform=platform, created_at=now, last_used=now)
        session.add(record)
    else:
        record.user_id = user_id
        record.platform = platform
        record.is_active = True
        record.last_used = now
    session.commit()
    return record


def get_tokens(session: Session, user_id: str) -> List[FCMToken]:
    return session.query(FCMToken).filter(
        FCMToken.user_id == user_id,
        FCMToken.is_active.is_(True),
    ).all()


def remove_token(session: Session, token: str) -> None:
    session.query(FCMToken).filter(FCMToken.token == token).delete(synchronize_session=False)
    session.commit()


def _stringify(data: Dict[str, Any]) -> Dict[str, str]:
    """FCM data payloads only accept string values"""
    return {key: "" if value is None else str(value) for key, value in data.items()}


class NotificationService:
    """User-level notifications on top of an FCMSender"""

    def __init__(self, session: Session, sender: Optional[Any]):
        """
        Args:
            session: SQLAlchemy session for the token registry
            sender: FCMSender (or compatible); None or disabled skips sends
        """
        self.session = session
        self.sender = sender

    @property
    def enabled(self) -> bool:
        return self.sender is not None and getattr(self.sender, "enabled", True)

    def send_to_user(self, user_id: str, payload: NotificationPayload) -> DeliveryReport:
        """
        Send to every active device of one user, pruning dead tokens.

        Returns:
            DeliveryReport with per-token success/failure counts
        """
        if not self.enabled:
            logger.warning("⚠️ FCM not initialized. Skipping notification.")
            return DeliveryReport(skipped=True)

        report = DeliveryReport()
        payload.data = _stringify(payload.data)

        for record in get_tokens(self.session, user_id):
            try:
                self.sender.send(record.token, payload)
                report.success_count += 1
            except StaleTokenError:
                report.failure_count += 1
                report.removed_tokens.append(record.token)
            except Exception as e:
                report.failure_count += 1
                logger.error(f"✗ FCM send failed for user {user_id}: {e}")

        for token in report.removed_tokens:
            remove_token(self.session, token)

        if report.removed_tokens:
            logger.info(f"Removed {len(report.removed_tokens)} invalid FCM tokens for user {user_id}")

        return report

    def send_to_users(self, user_ids: List[str], payload: NotificationPayload) -> DeliveryReport:
        if not self.enabled:
            logger.warning("⚠️ FCM not initialized. Skipping notification.")
            return DeliveryReport(skipped=True)

        combined = DeliveryReport()
        for user_id in user_ids:
            combined.merge(self.send_to_user(user_id, payload))

        logger.info(
            f"✓ Notification sent: success={combined.success_count} failure={combined.failure_count}"
        )
        return combined

    def send_chat_notification(
        self,
        recipient_id: str,
        sender_name: str,
        message: str,
        order_id: str,
        conversation_id: str,
    ) -> DeliveryReport:
        body = message
        if len(message) > CHAT_PREVIEW_LENGTH:
            body = message[:CHAT_PREVIEW_LENGTH] + "..."

        return self.send_to_user(recipient_id, NotificationPayload(
            title=f"New message from {sender_name}",
            body=body,
            data={
                "type": "chat_message",
                "orderId": order_id,
                "conversationId": conversation_id,
                "senderName": sender_name,
            },
        ))

    def send_new_order_notification(self, shopper_id: str, summary, expires_in_ms: int) -> DeliveryReport:
        """
        Tell a shopper they hold an exclusive offer.

        Args:
            shopper_id: Recipient
            summary: dispatch.OfferSummary for the offered order
            expires_in_ms: How long the offer stays open
        """
        return self.send_to_user(shopper_id, NotificationPayload(
            title="New batch available",
            body=(
                f"{summary.shop_name} - {summary.distance_km:.1f} km, "
                f"est. earnings {summary.estimated_earnings:.2f}"
            ),
            data={
                "type": "new_order",
                "orderId": summary.id,
                "shopName": summary.shop_name,
                "customerAddress": summary.customer_address,
                "distance": round(summary.distance_km, 2),
                "travelTimeMinutes": summary.travel_time_minutes,
                "estimatedEarnings": round(summary.estimated_earnings, 2),
                "orderType": summary.order_type,
                "itemsCount": summary.items_count,
                "expiresInMs": expires_in_ms,
            },
        ))

    def send_order_expired_notification(self, shopper_id: str, order_id: str, reason: str = "timeout") -> DeliveryReport:
        return self.send_to_user(shopper_id, NotificationPayload(
            title="Batch offer expired",
            body="The batch was offered to another shopper.",
            data={"type": "order_expired", "orderId": order_id, "reason": reason},
        ))
