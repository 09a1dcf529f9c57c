"""
DocLock Security Engine — MPIN authentication, device binding, bearer tokens.

Implements:
- hash_mpin / verify_mpin: bcrypt, cost from security.bcrypt_rounds
- AuthService: signup, login, mobile lookup, token validation, logout,
  MPIN, profile name and profile image changes
- Lockout: after security.max_login_attempts wrong MPINs the account is
  locked for security.lockout_seconds; an expired lockout clears itself
- Device binding: an account is bound to the device it signed up on;
  logging in from another device is refused with device_mismatch=True
- PinConfirmation: two-entry "create PIN" state machine

Tokens are random (secrets.token_urlsafe); only their sha256 is stored.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import bcrypt
from pydantic import BaseModel
from sqlalchemy import delete, select

from doclock.db.base import as_utc, utcnow
from doclock.db.models import AuthSession, User
from doclock.db.session import session_scope
from doclock.documents.images import check_image
from doclock.documents.storage import URL_SCHEME, BlobStore
from doclock.engine.config import SecurityConfig, get_platform_config
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockSessionError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_auth_event

logger = logging.getLogger("doclock.engine.security")

MPIN_PATTERN = re.compile(r"^\d{4,6}$")
MOBILE_PATTERN = re.compile(r"^\+?\d{7,15}$")


def hash_mpin(mpin: str, rounds: int = 12) -> str:
    """Hash an MPIN using bcrypt."""
    return bcrypt.hashpw(mpin.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_mpin(mpin: str, mpin_hash: str) -> bool:
    """Verify an MPIN against its bcrypt hash."""
    return bcrypt.checkpw(mpin.encode("utf-8"), mpin_hash.encode("utf-8"))


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_mpin(mpin: str) -> str:
    if not MPIN_PATTERN.match(mpin or ""):
        raise DocLockValidationError("MPIN must be 4 to 6 digits", field="mpin")
    return mpin


def validate_mobile(mobile: str) -> str:
    value = (mobile or "").strip()
    if not MOBILE_PATTERN.match(value):
        raise DocLockValidationError("Enter a valid mobile number", field="mobile")
    return value


class LoginResult(BaseModel):
    token: str
    uid: str
    name: str
    expires_at: datetime


class MobileStatus(BaseModel):
    exists: bool
    locked_until: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_until is not None


class AuthService:
    """
    MPIN login bound to a device.

    Flow:
    1. verify_mobile → does the account exist, is it locked
    2. login(mobile, mpin, device_id) → bearer token
    3. validate_token on each request → user id
    4. logout → token row deleted
    """

    def __init__(
        self,
        db_session_factory,
        security_config: Optional[SecurityConfig] = None,
        blob_store: Optional[BlobStore] = None,
    ):
        self._db_session_factory = db_session_factory
        self._security_config = security_config
        self._blobs = blob_store

    @property
    def config(self) -> SecurityConfig:
        return self._security_config or get_platform_config().security

    def signup(self, mobile: str, mpin: str, name: str, device_id: str) -> LoginResult:
        mobile = validate_mobile(mobile)
        validate_mpin(mpin)
        clean_name = (name or "").strip()
        if not clean_name:
            raise DocLockValidationError("Name is required", field="name")
        if not device_id:
            raise DocLockValidationError("Device id is required", field="device_id")

        with session_scope(self._db_session_factory) as session:
            if session.scalar(select(User.id).where(User.mobile == mobile)) is not None:
                log(log_auth_event("signup", mobile, None, False, device_id, "mobile_taken"))
                raise DocLockValidationError(
                    "An account with this mobile number already exists",
                    field="mobile",
                )
            user = User(
                mobile=mobile,
                name=clean_name,
                mpin_hash=hash_mpin(mpin, self.config.bcrypt_rounds),
                device_id=device_id,
            )
            session.add(user)
            session.flush()
            result = self._issue_token(session, user, device_id)

        logger.info(f"User {result.uid} signed up")
        log(log_auth_event("signup", mobile, result.uid, True, device_id))
        return result

    def login(self, mobile: str, mpin: str, device_id: str) -> LoginResult:
        """
        Raises:
            DocLockNotFoundError: no account for mobile.
            DocLockSessionError: wrong MPIN, locked account, or another device
                (device_mismatch=True).
        """
        failure: Optional[DocLockSessionError] = None
        with session_scope(self._db_session_factory) as session:
            user = session.scalar(select(User).where(User.mobile == mobile))
            if user is None:
                log(log_auth_event("login", mobile, None, False, device_id, "unknown_mobile"))
                raise DocLockNotFoundError("No account found for this mobile number", object_type="user")

            now = utcnow()
            locked_until = as_utc(user.lockout_until)
            if locked_until is not None and locked_until <= now:
                user.lockout_until = None
                user.failed_attempts = 0
                locked_until = None

            if locked_until is not None:
                remaining = int((locked_until - now).total_seconds())
                failure = DocLockSessionError(
                    f"Account locked. Try again in {remaining}s",
                    user_id=user.id,
                    locked_until=locked_until,
                )
                reason = "locked"
            elif not verify_mpin(mpin, user.mpin_hash):
                user.failed_attempts += 1
                left = self.config.max_login_attempts - user.failed_attempts
                if left <= 0:
                    user.lockout_until = now + timedelta(seconds=self.config.lockout_seconds)
                    user.failed_attempts = 0
                    failure = DocLockSessionError(
                        "Too many wrong attempts. Account locked",
                        user_id=user.id,
                        locked_until=as_utc(user.lockout_until),
                    )
                else:
                    failure = DocLockSessionError(
                        f"Incorrect MPIN. {left} attempt(s) left",
                        user_id=user.id,
                    )
                reason = "invalid_mpin"
            elif user.device_id and user.device_id != device_id:
                failure = DocLockSessionError(
                    "Device mismatch. This account is registered on another device",
                    user_id=user.id,
                    device_mismatch=True,
                )
                reason = "device_mismatch"
            else:
                user.failed_attempts = 0
                user.lockout_until = None
                result = self._issue_token(session, user, device_id)
                reason = None

        # Failure bookkeeping is committed before raising
        if failure is not None:
            logger.warning(f"Login failed for {mobile}: {reason}")
            log(log_auth_event("login", mobile, failure.user_id, False, device_id, reason))
            raise failure

        log(log_auth_event("login", mobile, result.uid, True, device_id))
        return result

    def verify_mobile(self, mobile: str) -> MobileStatus:
        """Whether an account exists for mobile and, if so, whether it is locked."""
        with session_scope(self._db_session_factory) as session:
            user = session.scalar(select(User).where(User.mobile == mobile))
            if user is None:
                return MobileStatus(exists=False)
            locked_until = as_utc(user.lockout_until)
            if locked_until is not None and locked_until <= utcnow():
                user.lockout_until = None
                user.failed_attempts = 0
                locked_until = None
            return MobileStatus(exists=True, locked_until=locked_until)

    def validate_token(self, token: str) -> Optional[str]:
        """Return the user id for a live token, else None."""
        if not token:
            return None
        with session_scope(self._db_session_factory) as session:
            row = session.get(AuthSession, _token_hash(token))
            if row is None:
                return None
            if as_utc(row.expires_at) <= utcnow():
                session.delete(row)
                return None
            return row.user_id

    def logout(self, token: str) -> bool:
        with session_scope(self._db_session_factory) as session:
            result = session.execute(delete(AuthSession).where(AuthSession.token_hash == _token_hash(token)))
            removed = result.rowcount > 0
        if removed:
            logger.info("Session token revoked")
        return removed

    def update_mpin(self, user_id: str, current_mpin: str, new_mpin: str) -> None:
        """Change the MPIN. All existing tokens are revoked."""
        validate_mpin(new_mpin)
        with session_scope(self._db_session_factory) as session:
            user = self._user(session, user_id)
            if not verify_mpin(current_mpin, user.mpin_hash):
                log(log_auth_event("mpin_change", user.mobile, user_id, False, failure_reason="invalid_mpin"))
                raise DocLockValidationError("Current MPIN is incorrect", user_id=user_id, field="current_mpin")
            user.mpin_hash = hash_mpin(new_mpin, self.config.bcrypt_rounds)
            session.execute(delete(AuthSession).where(AuthSession.user_id == user_id))
            mobile = user.mobile

        log(log_auth_event("mpin_change", mobile, user_id, True))

    def update_name(self, user_id: str, name: str) -> str:
        clean_name = (name or "").strip()
        if not clean_name:
            raise DocLockValidationError("Name is required", user_id=user_id, field="name")
        with session_scope(self._db_session_factory) as session:
            self._user(session, user_id).name = clean_name
        return clean_name

    def update_profile_image(self, user_id: str, image_bytes: bytes, file_name: str) -> str:
        """
        Store a new profile image and point the user at it.

        The previous image blob is removed once the new URL is committed.
        Returns the new blob URL.
        """
        if self._blobs is None:
            raise DocLockValidationError("Profile images are not configured", user_id=user_id)
        check_image(image_bytes, file_name, user_id=user_id)
        if not image_bytes:
            raise DocLockValidationError("Profile image is empty", user_id=user_id, field="image_bytes")

        stored = self._blobs.put(user_id, "profile", file_name, image_bytes)
        try:
            with session_scope(self._db_session_factory) as session:
                user = self._user(session, user_id)
                old_url = user.profile_image_url
                user.profile_image_url = stored.url
        except Exception:
            self._blobs.delete(stored.url)
            raise

        if old_url and old_url.startswith(URL_SCHEME):
            self._blobs.delete(old_url)
        logger.info(f"Updated profile image for {user_id}")
        return stored.url

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _issue_token(self, session, user: User, device_id: str) -> LoginResult:
        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(seconds=self.config.token_ttl_seconds)
        session.add(AuthSession(
            token_hash=_token_hash(token),
            user_id=user.id,
            device_id=device_id,
            expires_at=expires_at,
        ))
        return LoginResult(token=token, uid=user.id, name=user.name, expires_at=expires_at)

    @staticmethod
    def _user(session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise DocLockNotFoundError(f"User '{user_id}' not found", user_id=user_id, object_type="user")
        return user


# ---------------------------------------------------------------------------
# Create-PIN confirmation
# ---------------------------------------------------------------------------

class PinStep(str, Enum):
    AWAITING_FIRST_ENTRY = "awaiting_first_entry"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"


class PinConfirmation:
    """
    Enter a PIN, then enter it again.

    A mismatching confirmation is discarded and the machine keeps waiting
    for a matching one; reset() starts over.
    """

    def __init__(self):
        self._step = PinStep.AWAITING_FIRST_ENTRY
        self._first: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def step(self) -> PinStep:
        return self._step

    @property
    def pin(self) -> Optional[str]:
        return self._first if self._step == PinStep.CONFIRMED else None

    def enter(self, pin: str) -> PinStep:
        validate_mpin(pin)
        if self._step == PinStep.AWAITING_FIRST_ENTRY:
            self._first = pin
            self._step = PinStep.AWAITING_CONFIRMATION
            self.error = None
        elif self._step == PinStep.AWAITING_CONFIRMATION:
            if secrets.compare_digest(pin, self._first):
                self._step = PinStep.CONFIRMED
                self.error = None
            else:
                self.error = "PINs do not match"
        return self._step

    def reset(self) -> None:
        self._step = PinStep.AWAITING_FIRST_ENTRY
        self._first = None
        self.error = None
