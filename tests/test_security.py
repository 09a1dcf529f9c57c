"""Tests for doclock.engine.security — MPIN login, lockout, tokens, PIN entry."""

import io
from datetime import timedelta

import pytest
from PIL import Image
from sqlalchemy import update

from doclock.db.base import utcnow
from doclock.db.models import User
from doclock.db.session import session_scope
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockSessionError,
    DocLockValidationError,
)
from doclock.engine.security import (
    PinConfirmation,
    PinStep,
    hash_mpin,
    validate_mobile,
    validate_mpin,
    verify_mpin,
)

MOBILE = "9876543210"


def _png(color="white"):
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def account(auth):
    return auth.signup(MOBILE, "1234", "Alice", "device-1")


class TestHelpers:
    def test_hash_and_verify(self):
        hashed = hash_mpin("1234", rounds=4)
        assert hashed != "1234"
        assert verify_mpin("1234", hashed)
        assert not verify_mpin("4321", hashed)

    @pytest.mark.parametrize("mpin", ["", "123", "1234567", "12a4"])
    def test_invalid_mpin(self, mpin):
        with pytest.raises(DocLockValidationError):
            validate_mpin(mpin)

    def test_mobile(self):
        assert validate_mobile(" +919876543210 ") == "+919876543210"
        with pytest.raises(DocLockValidationError):
            validate_mobile("12-34")


class TestSignup:
    def test_signup_issues_token(self, auth, account):
        assert account.name == "Alice"
        assert auth.validate_token(account.token) == account.uid

    def test_duplicate_mobile(self, auth, account):
        with pytest.raises(DocLockValidationError):
            auth.signup(MOBILE, "5678", "Other", "device-2")

    def test_name_required(self, auth):
        with pytest.raises(DocLockValidationError):
            auth.signup(MOBILE, "1234", "  ", "device-1")


class TestLogin:
    def test_login(self, auth, account):
        result = auth.login(MOBILE, "1234", "device-1")
        assert result.uid == account.uid
        assert result.token != account.token

    def test_unknown_mobile(self, auth):
        with pytest.raises(DocLockNotFoundError):
            auth.login("9000000000", "1234", "device-1")

    def test_wrong_mpin_counts_down(self, auth, account, db_factory):
        with pytest.raises(DocLockSessionError, match="2 attempt"):
            auth.login(MOBILE, "0000", "device-1")
        with session_scope(db_factory) as session:
            assert session.get(User, account.uid).failed_attempts == 1

    def test_lockout(self, auth, account):
        for _ in range(2):
            with pytest.raises(DocLockSessionError):
                auth.login(MOBILE, "0000", "device-1")
        with pytest.raises(DocLockSessionError, match="Too many") as exc_info:
            auth.login(MOBILE, "0000", "device-1")
        assert exc_info.value.locked_until is not None

        with pytest.raises(DocLockSessionError, match="locked"):
            auth.login(MOBILE, "1234", "device-1")
        assert auth.verify_mobile(MOBILE).is_locked

    def test_expired_lockout_clears(self, auth, account, db_factory):
        with session_scope(db_factory) as session:
            session.execute(
                update(User).where(User.id == account.uid)
                .values(lockout_until=utcnow() - timedelta(seconds=1), failed_attempts=2)
            )
        assert not auth.verify_mobile(MOBILE).is_locked
        assert auth.login(MOBILE, "1234", "device-1").uid == account.uid

    def test_success_resets_attempts(self, auth, account, db_factory):
        with pytest.raises(DocLockSessionError):
            auth.login(MOBILE, "0000", "device-1")
        auth.login(MOBILE, "1234", "device-1")
        with session_scope(db_factory) as session:
            assert session.get(User, account.uid).failed_attempts == 0

    def test_device_mismatch(self, auth, account):
        with pytest.raises(DocLockSessionError) as exc_info:
            auth.login(MOBILE, "1234", "device-2")
        assert exc_info.value.device_mismatch
        assert exc_info.value.to_dict()["device_mismatch"] is True

    def test_verify_mobile_unknown(self, auth):
        status = auth.verify_mobile("9000000000")
        assert not status.exists
        assert not status.is_locked


class TestTokens:
    def test_logout(self, auth, account):
        assert auth.logout(account.token)
        assert auth.validate_token(account.token) is None
        assert not auth.logout(account.token)

    def test_garbage_token(self, auth):
        assert auth.validate_token("") is None
        assert auth.validate_token("nope") is None

    def test_expired_token(self, auth, account, db_factory):
        from doclock.db.models import AuthSession

        with session_scope(db_factory) as session:
            session.execute(update(AuthSession).values(expires_at=utcnow() - timedelta(seconds=1)))
        assert auth.validate_token(account.token) is None


class TestProfile:
    def test_update_mpin_revokes_tokens(self, auth, account):
        auth.update_mpin(account.uid, "1234", "5678")
        assert auth.validate_token(account.token) is None
        assert auth.login(MOBILE, "5678", "device-1").uid == account.uid

    def test_update_mpin_wrong_current(self, auth, account):
        with pytest.raises(DocLockValidationError):
            auth.update_mpin(account.uid, "0000", "5678")

    def test_update_name(self, auth, account):
        assert auth.update_name(account.uid, "  Alicia ") == "Alicia"
        assert auth.login(MOBILE, "1234", "device-1").name == "Alicia"

    def test_update_profile_image(self, auth, account, blob_store, db_factory):
        first = auth.update_profile_image(account.uid, _png(), "me.png")
        assert blob_store.exists(first)

        second = auth.update_profile_image(account.uid, _png("black"), "me2.png")
        assert second != first
        assert blob_store.exists(second)
        assert not blob_store.exists(first)
        with session_scope(db_factory) as session:
            assert session.get(User, account.uid).profile_image_url == second

    def test_profile_image_bytes_checked(self, auth, account, blob_store, db_factory):
        with pytest.raises(DocLockValidationError):
            auth.update_profile_image(account.uid, b"%PDF-1.4\n%%EOF\n", "me.png")
        with pytest.raises(DocLockValidationError):
            auth.update_profile_image(account.uid, _png(), "me.svg")
        assert [p for p in blob_store.root.rglob("*") if p.is_file()] == []
        with session_scope(db_factory) as session:
            assert session.get(User, account.uid).profile_image_url is None

    def test_profile_image_unknown_user(self, auth, blob_store):
        with pytest.raises(DocLockNotFoundError):
            auth.update_profile_image("missing", _png(), "me.png")
        assert [p for p in blob_store.root.rglob("*") if p.is_file()] == []

    def test_profile_image_visible_in_search(self, auth, account, friends):
        url = auth.update_profile_image(account.uid, _png(), "me.png")
        assert friends.search_user(MOBILE).profile_image_url == url


class TestPinConfirmation:
    def test_confirm(self):
        machine = PinConfirmation()
        assert machine.enter("1234") == PinStep.AWAITING_CONFIRMATION
        assert machine.pin is None
        assert machine.enter("1234") == PinStep.CONFIRMED
        assert machine.pin == "1234"

    def test_mismatch_keeps_waiting(self):
        machine = PinConfirmation()
        machine.enter("1234")
        assert machine.enter("9999") == PinStep.AWAITING_CONFIRMATION
        assert machine.error == "PINs do not match"
        assert machine.enter("1234") == PinStep.CONFIRMED
        assert machine.error is None

    def test_reset(self):
        machine = PinConfirmation()
        machine.enter("1234")
        machine.reset()
        assert machine.step == PinStep.AWAITING_FIRST_ENTRY
        machine.enter("5555")
        machine.enter("5555")
        assert machine.pin == "5555"
