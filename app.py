"""
Flask API for the Plas dispatch backend

- Auth: guest checkout, login, guest-to-member upgrade (bearer tokens)
- Shopper: location heartbeat, batch accept/decline, smart assignment,
  order status updates, wallet operations
- Dispatch: offer distribution, rotation (cron), status, nearby shoppers
- Ops: FCM token registration, system log cleanup (cron), health

Run locally:
    flask --app app run
    flask --app app rotate-offers
"""

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Optional

import click
from flask import Blueprint, Flask, current_app, g, jsonify, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from accounts import (
    authenticate, issue_token, load_token, register_guest, send_upgrade_otp,
    upgrade_guest, verify_upgrade_otp,
)
from config import Settings, get_settings
from database import DatabaseManager
from dispatch import DispatchService
from errors import AuthenticationError, NotFoundError, PermissionDenied, PlasError, ValidationError
from geo import validate_coordinates
from location_store import LocationStore
from models import Order, User
from notifications import FCMSender, NotificationService, save_token
from order_status import update_order_status
from otp_store import OTPStore
from otp_store import otp_store as global_otp_store
from revenue import RevenueCalculator, RevenueItem
from schemas import (
    GuestRegisterRequest, LocationHeartbeatRequest, LoginRequest, NearbyShoppersRequest,
    OfferActionRequest, OrderRevenueRequest, RegisterTokenRequest, SendUpgradeOTPRequest,
    SmartAssignRequest, UpdateOrderStatusRequest, UpgradeGuestRequest, VerifyUpgradeOTPRequest,
    WalletOperationRequest,
)
from system_logs import SystemLogHandler, cleanup_old_system_logs
from wallet import process_wallet_operation

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


@dataclass
class Services:
    """Long-lived collaborators shared by every request"""
    settings: Settings
    db_manager: DatabaseManager
    location_store: LocationStore
    fcm_sender: Optional[FCMSender]
    otp_store: OTPStore


# ============================================================================
# REQUEST HELPERS
# ============================================================================


def services() -> Services:
    return current_app.extensions["plas"]


def db_session():
    """Request-scoped SQLAlchemy session, closed on teardown"""
    if "db" not in g:
        g.db = services().db_manager.get_session()
    return g.db


def dispatch_service() -> DispatchService:
    svc = services()
    session = db_session()
    return DispatchService(
        session,
        svc.settings,
        location_store=svc.location_store,
        notifier=NotificationService(session, svc.fcm_sender),
    )


def parse_body(model: type) -> BaseModel:
    return model.model_validate(request.get_json(silent=True) or {})


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return None


def require_auth(fn):
    """Resolve the bearer token to an active user in g.user, or 401"""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise AuthenticationError("Unauthorized")

        settings = services().settings
        user_id = load_token(token, settings.secret_key, settings.auth_token_max_age_seconds)
        user = db_session().get(User, user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Unauthorized")

        g.user = user
        return fn(*args, **kwargs)
    return wrapper


def _require_self(user_id: Optional[str]) -> None:
    if user_id != g.user.id:
        raise PermissionDenied("You can only act on your own account", code="USER_MISMATCH")


def _require_order_and_user(body: OfferActionRequest) -> None:
    if not body.order_id or not body.user_id:
        raise ValidationError("Order ID and User ID are required")
    _require_self(body.user_id)


# ============================================================================
# AUTH
# ============================================================================


@api.route("/auth/guest-register", methods=["POST"])
def guest_register():
    body = parse_body(GuestRegisterRequest)
    session = db_session()
    creds = register_guest(session, body.name, body.phone, body.email)
    user = session.get(User, creds.guest_id)

    return jsonify({
        "success": True,
        "message": creds.message,
        "guestId": creds.guest_id,
        "guestEmail": creds.guest_email,
        "guestPassword": creds.guest_password,
        "token": issue_token(user, services().settings.secret_key),
    })


@api.route("/auth/login", methods=["POST"])
def login():
    body = parse_body(LoginRequest)
    user = authenticate(db_session(), body.email, body.password)
    return jsonify({
        "success": True,
        "token": issue_token(user, services().settings.secret_key),
        "user": user.to_dict(),
    })


@api.route("/auth/send-upgrade-otp", methods=["POST"])
@require_auth
def send_otp():
    body = parse_body(SendUpgradeOTPRequest)
    svc = services()
    response = send_upgrade_otp(
        db_session(),
        g.user,
        body.full_name,
        body.email,
        svc.otp_store,
        gender=body.gender,
        include_dev_otp=svc.settings.is_development,
    )
    return jsonify(response)


@api.route("/auth/verify-upgrade-otp", methods=["POST"])
@require_auth
def verify_otp():
    body = parse_body(VerifyUpgradeOTPRequest)
    user = verify_upgrade_otp(db_session(), g.user, body.otp, body.password, services().otp_store)
    return jsonify({
        "success": True,
        "message": "Account upgraded successfully",
        "user": user.to_dict(),
    })


@api.route("/auth/upgrade-guest", methods=["POST"])
@require_auth
def upgrade():
    body = parse_body(UpgradeGuestRequest)
    user = upgrade_guest(db_session(), g.user, body.full_name, body.email, body.password, body.gender)
    return jsonify({
        "success": True,
        "message": "Account upgraded successfully",
        "user": user.to_dict(),
    })


# ============================================================================
# SHOPPER
# ============================================================================


@api.route("/shopper/location-heartbeat", methods=["POST"])
@require_auth
def location_heartbeat():
    body = parse_body(LocationHeartbeatRequest)
    if not body.user_id:
        raise ValidationError("User ID is required")
    _require_self(body.user_id)
    validate_coordinates(body.lat, body.lng)

    svc = services()
    stored = svc.location_store.set_location(body.user_id, float(body.lat), float(body.lng), body.accuracy)

    response = {
        "success": True,
        "storedInRedis": stored,
        "ttl": svc.settings.location_ttl_seconds,
    }
    if not stored:
        response["message"] = "Location tracking degraded: Redis unavailable"
    return jsonify(response)


@api.route("/shopper/accept-batch", methods=["POST"])
@require_auth
def accept_batch():
    body = parse_body(OfferActionRequest)
    _require_order_and_user(body)

    result = dispatch_service().accept_offer(body.order_id, body.user_id)
    return jsonify({
        "success": True,
        "message": "Batch accepted successfully",
        "orderId": result.order_id,
        "offerId": result.offer_id,
        "round": result.round_number,
        "orderType": result.order_type,
    })


@api.route("/shopper/decline-offer", methods=["POST"])
@require_auth
def decline_offer():
    body = parse_body(OfferActionRequest)
    _require_order_and_user(body)

    offer_id, rotation = dispatch_service().decline_offer(body.order_id, body.user_id)
    return jsonify({
        "success": True,
        "message": "Offer declined",
        "offerId": offer_id,
        "rotatedCount": rotation.rotated_count if rotation else 0,
    })


@api.route("/shopper/rotate-expired-offers", methods=["POST"])
def rotate_expired_offers():
    result = dispatch_service().rotate_expired_offers()
    return jsonify({
        "success": True,
        "rotatedCount": result.rotated_count,
        "results": result.results,
    })


@api.route("/shopper/smart-assign-order", methods=["POST"])
def smart_assign_order():
    body = parse_body(SmartAssignRequest)
    summary = dispatch_service().smart_assign(
        body.user_id, body.current_location.lat, body.current_location.lng
    )
    if summary is None:
        return jsonify({"success": False, "message": "No available orders at the moment"})
    return jsonify({"success": True, "order": summary.to_dict()})


@api.route("/shopper/wallet-operation", methods=["POST"])
@require_auth
def wallet_operation():
    body = parse_body(WalletOperationRequest)
    result = process_wallet_operation(
        db_session(),
        g.user.id,
        body.order_id,
        body.operation,
        services().settings.delivery_commission_percentage,
    )
    return jsonify({"success": True, **result.to_dict()})


@api.route("/shopper/update-order-status", methods=["POST"])
@require_auth
def order_status_update():
    body = parse_body(UpdateOrderStatusRequest)
    update = update_order_status(
        db_session(),
        g.user.id,
        body.order_id,
        body.status,
        services().settings.delivery_commission_percentage,
    )
    return jsonify({"success": True, **update.to_dict()})


@api.route("/shopper/calculate-revenue", methods=["POST"])
@require_auth
def calculate_revenue():
    body = parse_body(OrderRevenueRequest)
    order = db_session().get(Order, body.order_id)
    if order is None:
        raise NotFoundError("Order not found")
    items = [
        RevenueItem(
            price=item.price,
            final_price=item.final_price if item.final_price is not None else item.price,
            quantity=item.quantity,
            name=item.product_name,
        )
        for item in order.items
    ]
    return jsonify({
        "success": True,
        "orderRevenue": RevenueCalculator.calculate_order_revenue(order.total, items),
        "itemRevenue": RevenueCalculator.calculate_revenue(items),
        "productProfits": RevenueCalculator.calculate_product_profits(items),
        "plasaFee": str(RevenueCalculator.calculate_plasa_fee(
            order.service_fee, order.delivery_fee, services().settings.delivery_commission_percentage
        )),
    })


# ============================================================================
# DISPATCH
# ============================================================================


@api.route("/dispatch/distribute", methods=["POST"])
def distribute():
    result = dispatch_service().distribute_orders()
    return jsonify({
        "success": True,
        "offersCreated": result.offers_created,
        "results": result.results,
    })


@api.route("/dispatch/status", methods=["GET"])
def dispatch_status():
    return jsonify({"success": True, **dispatch_service().status()})


@api.route("/queries/get-nearby-available-shoppers", methods=["POST"])
def nearby_shoppers():
    body = parse_body(NearbyShoppersRequest)
    if not body.order_id:
        raise ValidationError("Order ID is required")

    shoppers = dispatch_service().nearby_available_shoppers(
        body.order_id, body.max_distance, body.exclude_shopper_id
    )
    return jsonify({"success": True, "shoppers": shoppers, "count": len(shoppers)})


# ============================================================================
# OPS
# ============================================================================


@api.route("/fcm/register-token", methods=["POST"])
@require_auth
def register_token():
    body = parse_body(RegisterTokenRequest)
    record = save_token(db_session(), g.user.id, body.token, body.platform)
    return jsonify({"success": True, "message": "Token registered", "platform": record.platform})


@api.route("/cleanup/system-logs-cleanup", methods=["POST"])
def system_logs_cleanup():
    settings = services().settings
    if settings.cleanup_api_token and _bearer_token() != settings.cleanup_api_token:
        raise AuthenticationError("Unauthorized")

    result = cleanup_old_system_logs(db_session(), settings.log_retention_hours)
    body = {
        "success": result.success,
        "deletedCount": result.deleted_count,
        "message": result.message,
    }
    if not result.success:
        body["error"] = result.error
        return jsonify(body), 500
    return jsonify(body)


@api.route("/health", methods=["GET"])
def health():
    svc = services()
    db_health = svc.db_manager.health()
    db_ok = db_health["connected"]
    return jsonify({
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "databaseDetails": db_health,
        "redis": svc.location_store.health(),
        "fcm": bool(svc.fcm_sender and svc.fcm_sender.enabled),
    }), 200 if db_ok else 503


# ============================================================================
# ERROR HANDLING
# ============================================================================


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PlasError)
    def handle_plas_error(error: PlasError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(PydanticValidationError)
    def handle_validation_error(error: PydanticValidationError):
        first = error.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{field}: {first['msg']}" if field else first["msg"]
        return jsonify({"error": message, "code": "VALIDATION_ERROR"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        code = (error.name or "error").upper().replace(" ", "_")
        return jsonify({"error": error.description, "code": code}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        db = g.pop("db", None)
        if db is not None:
            db.rollback()
            db.close()
        logger.exception(f"✗ Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "Internal server error", "details": str(error)}), 500


# ============================================================================
# CLI
# ============================================================================


def register_commands(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create database tables."""
        app.extensions["plas"].db_manager.init_db()
        click.echo("✓ Database initialized")

    @app.cli.command("rotate-offers")
    def rotate_offers_command():
        """Expire timed-out offers and rotate them to the next shopper."""
        result = dispatch_service().rotate_expired_offers()
        click.echo(f"✓ Rotated {result.rotated_count} offers")

    @app.cli.command("distribute-orders")
    def distribute_orders_command():
        """Offer new orders to online shoppers."""
        result = dispatch_service().distribute_orders()
        click.echo(f"✓ Created {result.offers_created} offers")

    @app.cli.command("cleanup-logs")
    @click.option("--hours", type=int, default=None, help="Retention window in hours")
    def cleanup_logs_command(hours):
        """Delete old system logs."""
        svc = app.extensions["plas"]
        with svc.db_manager.session_scope() as session:
            result = cleanup_old_system_logs(session, hours or svc.settings.log_retention_hours)
        if not result.success:
            raise click.ClickException(result.error or "cleanup failed")
        click.echo(f"✓ {result.message}")


# ============================================================================
# APP FACTORY
# ============================================================================


def install_system_log_handler(db_manager: DatabaseManager) -> SystemLogHandler:
    """Persist WARNING+ records to system_logs (replaces any earlier handler)"""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, SystemLogHandler):
            root.removeHandler(handler)

    handler = SystemLogHandler(db_manager.get_session)
    root.addHandler(handler)
    return handler


def create_app(
    settings: Optional[Settings] = None,
    db_manager: Optional[DatabaseManager] = None,
    location_store: Optional[LocationStore] = None,
    fcm_sender: Optional[FCMSender] = None,
    otp_store: Optional[OTPStore] = None,
) -> Flask:
    """
    Build the Flask app.

    Every collaborator can be injected (tests pass in-memory SQLite, a
    fake Redis client and a fake FCM sender); missing ones are built from
    settings.
    """
    settings = settings or get_settings()

    if db_manager is None:
        db_manager = DatabaseManager(settings.database_url)
    db_manager.init_db()

    if location_store is None:
        location_store = LocationStore(
            url=settings.redis_url,
            ttl_seconds=settings.location_ttl_seconds,
            freshness_seconds=settings.online_freshness_seconds,
        )

    if fcm_sender is None:
        fcm_sender = FCMSender(settings)

    if otp_store is None:
        otp_store = global_otp_store
        otp_store.start_sweeper()

    if settings.persist_system_logs:
        install_system_log_handler(db_manager)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.extensions["plas"] = Services(
        settings=settings,
        db_manager=db_manager,
        location_store=location_store,
        fcm_sender=fcm_sender,
        otp_store=otp_store,
    )

    app.register_blueprint(api)
    register_error_handlers(app)
    register_commands(app)

    @app.teardown_appcontext
    def close_session(exc):
        db = g.pop("db", None)
        if db is not None:
            if exc is not None:
                db.rollback()
            db.close()

    logger.info(f"✓ Plas API ready (env={settings.app_env})")
    return app


if __name__ == "__main__":
    create_app().run(debug=get_settings().is_development)
