"""
Accounts: guest checkout and guest-to-member upgrade

- register_guest(): phone-keyed guest accounts with a generated password
- send_upgrade_otp() / verify_upgrade_otp(): email OTP upgrade flow
- upgrade_guest(): direct upgrade without OTP
- authenticate() / issue_token() / load_token(): bearer-token sessions
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from errors import AuthenticationError, ValidationError
from models import User
from otp_store import OTPStore

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15
MIN_PASSWORD_LENGTH = 8
TOKEN_SALT = "plas-auth"


@dataclass
class GuestCredentials:
    guest_id: str
    guest_email: str
    guest_password: str
    message: str


def normalize_phone(phone: str) -> str:
    """Digits only"""
    return re.sub(r"\D", "", phone or "")


def _now_ms() -> int:
    return int(time.time() * 1000)


def register_guest(session: Session, name: str, phone: str, email: Optional[str] = None) -> GuestCredentials:
    """
    Create or refresh a guest account keyed by phone number.

    A returning guest gets a fresh temporary password so the client can sign
    in again without remembering anything.

    Raises:
        ValidationError: Missing fields, bad phone, or a member already owns the phone
    """
    if not name or not phone:
        raise ValidationError("Name and phone are required")

    digits = normalize_phone(phone)
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise ValidationError("Invalid phone number format")

    temp_password = f"guest_{digits}_{_now_ms()}"
    existing = session.query(User).filter(User.phone == digits).first()

    if existing is not None:
        if not existing.is_guest:
            raise ValidationError(
                "A registered account with this phone number already exists. Please sign in instead."
            )
        existing.name = name
        existing.password_hash = generate_password_hash(temp_password)
        session.commit()
        logger.info(f"✓ Guest account {existing.id} refreshed")
        return GuestCredentials(
            guest_id=existing.id,
            guest_email=existing.email,
            guest_password=temp_password,
            message="Guest account updated",
        )

    guest_email = (email or f"guest_{digits}@guest.local").strip().lower()
    if session.query(User.id).filter(User.email == guest_email).first() is not None:
        raise ValidationError("Email already in use by another account")

    guest = User(
        name=name,
        email=guest_email,
        phone=digits,
        gender="prefer_not_to_say",
        role="user",
        password_hash=generate_password_hash(temp_password),
        is_guest=True,
        is_active=True,
    )
    session.add(guest)
    session.commit()
    logger.info(f"✓ Guest account {guest.id} created")

    return GuestCredentials(
        guest_id=guest.id,
        guest_email=guest.email,
        guest_password=temp_password,
        message="Guest account created successfully",
    )


def _require_guest(user: User) -> None:
    if not user.is_guest:
        raise ValidationError("User is already a full member")


def _check_email(session: Session, user: User, email: str) -> str:
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")

    owner = session.query(User).filter(User.email == email).first()
    if owner is not None and owner.id != user.id:
        raise ValidationError("Email already in use by another account")
    return email


def _check_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def send_upgrade_otp(
    session: Session,
    user: User,
    full_name: str,
    email: str,
    store: OTPStore,
    gender: Optional[str] = None,
    include_dev_otp: bool = False,
) -> Dict:
    """
    Issue an upgrade code for a guest.

    Email delivery is out of band; the code is logged, and returned as
    devOTP when include_dev_otp is set (development only).
    """
    _require_guest(user)
    if not full_name or not email:
        raise ValidationError("Full name and email are required")

    email = _check_email(session, user, email)
    record = store.issue(user.id, email=email, full_name=full_name, gender=gender or "male")
    logger.info(f"📧 Upgrade OTP for {email}: {record.otp}")

    response = {"success": True, "message": "OTP sent to your email"}
    if include_dev_otp:
        response["devOTP"] = record.otp
    return response


def verify_upgrade_otp(session: Session, user: User, otp: str, password: str, store: OTPStore) -> User:
    """
    Complete an OTP upgrade: check the code, set the password, promote the user.

    Raises:
        ValidationError: Not a guest, missing fields, or bad/expired code
    """
    _require_guest(user)
    if not otp or not password:
        raise ValidationError("OTP and password are required")
    _check_password(password)

    record = store.get(user.id)
    if record is None:
        raise ValidationError("OTP not found or expired. Please request a new one.")

    if store.is_expired(record):
        store.delete(user.id)
        raise ValidationError("OTP has expired. Please request a new one.")

    if record.otp != str(otp).strip():
        raise ValidationError("Invalid OTP. Please try again.")

    # Email may have been claimed since the code was issued
    email = _check_email(session, user, record.email)

    user.name = record.full_name
    user.email = email
    user.gender = record.gender
    user.password_hash = generate_password_hash(password)
    user.is_guest = False
    session.commit()
    store.delete(user.id)

    logger.info(f"✓ Guest {user.id} upgraded to full member")
    return user


def upgrade_guest(
    session: Session,
    user: User,
    full_name: str,
    email: str,
    password: str,
    gender: Optional[str] = None,
) -> User:
    """Upgrade a guest in one step, without an OTP."""
    _require_guest(user)
    if not full_name or not email or not password:
        raise ValidationError("Full name, email and password are required")
    _check_password(password)
    email = _check_email(session, user, email)

    user.name = full_name
    user.email = email
    user.gender = gender or "male"
    user.password_hash = generate_password_hash(password)
    user.is_guest = False
    session.commit()

    logger.info(f"✓ Guest {user.id} upgraded to full member")
    return user


def authenticate(session: Session, email: str, password: str) -> User:
    user = session.query(User).filter(User.email == (email or "").strip().lower()).first()
    if (
        user is None
        or not user.is_active
        or not user.password_hash
        or not check_password_hash(user.password_hash, password or "")
    ):
        raise AuthenticationError("Invalid email or password")
    return user


def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)


def issue_token(user: User, secret_key: str) -> str:
    return _serializer(secret_key).dumps({"uid": user.id})


def load_token(token: str, secret_key: str, max_age: int) -> str:
    """
    Returns:
        The user id carried by the token

    Raises:
        AuthenticationError: Token is malformed, tampered with, or too old
    """
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        raise AuthenticationError("Session expired", code="TOKEN_EXPIRED")
    except BadSignature:
        raise AuthenticationError("Invalid session token", code="INVALID_TOKEN")
    return data["uid"]
