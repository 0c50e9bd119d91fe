import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from database import Storage
from errors import (
    DeliveryFailed,
    Forbidden,
    InvalidCredential,
    InvalidOrExpiredOtp,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from schemas import OTP_RE, PHONE_RE, User
from settings import Settings

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    id: str
    phone: str
    is_admin: bool = False


# ----------------------- OTP delivery -----------------------
class OtpNotifier(Protocol):
    def send(self, phone: str, code: str) -> None: ...


class ConsoleOtpNotifier:
    """Writes the code to the log instead of sending an SMS."""

    def send(self, phone: str, code: str) -> None:
        logger.info("otp_delivered", channel="console", phone=phone, code=code)


# ----------------------- Tokens -----------------------
def create_token(user: User, settings: Settings) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=settings.token_ttl_days)
    payload = {"id": user.id, "phone": user.phone, "isAdmin": user.is_admin, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algo)


def decode_token(token: str, settings: Settings) -> Identity:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algo])
    except jwt.ExpiredSignatureError:
        raise InvalidCredential("Token expired")
    except jwt.InvalidTokenError:
        raise InvalidCredential("Invalid token")
    if not payload.get("id") or not payload.get("phone"):
        raise InvalidCredential("Invalid token payload")
    return Identity(id=payload["id"], phone=payload["phone"], is_admin=bool(payload.get("isAdmin")))


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_notifier(request: Request) -> OtpNotifier:
    return request.app.state.notifier


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> Identity:
    if credentials is None:
        raise Unauthenticated()
    return decode_token(credentials.credentials, settings)


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden()
    return identity


# ----------------------- Login flow -----------------------
def generate_otp() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def request_otp(storage: Storage, notifier: OtpNotifier, settings: Settings, phone: str) -> dict:
    if not PHONE_RE.match(phone):
        raise ValidationError("phone: Phone must be +91 followed by 10 digits")

    code = generate_otp()
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.otp_ttl_minutes)
    user = storage.issue_otp(phone, code, expires_at, now=now, max_requests=settings.otp_max_requests)
    logger.info("otp_issued", user_id=user.id, phone=phone, attempts=user.otp_attempts)

    try:
        notifier.send(phone, code)
    except Exception as e:
        logger.error("otp_delivery_failed", phone=phone, error=str(e))
        raise DeliveryFailed() from e

    return {"message": "OTP sent successfully", "phone": phone}


def verify_otp(storage: Storage, settings: Settings, phone: str, otp_code: str) -> Tuple[User, str]:
    if not PHONE_RE.match(phone):
        raise ValidationError("phone: Phone must be +91 followed by 10 digits")
    if not OTP_RE.match(otp_code):
        raise ValidationError("otpCode: OTP must be 6 digits")

    user = storage.verify_and_clear_otp(phone, otp_code, datetime.now(timezone.utc),
                                        max_failures=settings.otp_max_failures)
    if user is None:
        logger.warning("otp_rejected", phone=phone)
        raise InvalidOrExpiredOtp()

    logger.info("otp_verified", user_id=user.id, registered=user.is_registered)
    return user, create_token(user, settings)


def complete_profile(storage: Storage, identity: Identity, name: str, email: Optional[str] = None) -> User:
    user = storage.update_user_profile(identity.id, name, email)
    if user is None:
        raise NotFound("User not found")
    return user
