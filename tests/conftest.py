"""
DocLock Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import logging

import pytest

from doclock.engine.config import AppConfig, QRConfig, SecurityConfig


# ---------------------------------------------------------------------------
# Environment setup — reset global singletons between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch):
    """Reset global singletons between tests."""
    import doclock.engine.config as cfg_mod
    import doclock.engine.logging as log_mod
    import doclock.engine.subscriptions as sub_mod

    cfg_mod._platform_config = None
    sub_mod._default_feed = None
    monkeypatch.delenv("DOCLOCK_CARD_KEY", raising=False)
    yield
    log_mod.shutdown_logging()
    logging.getLogger("doclock").setLevel(logging.NOTSET)


@pytest.fixture
def db_factory(tmp_path):
    """A sessionmaker bound to a fresh SQLite vault with all tables created."""
    from doclock.db.session import close_all_sessions, init_vault_db

    factory = init_vault_db(f"sqlite:///{tmp_path / 'vault.db'}", create_tables=True)
    yield factory
    close_all_sessions()


@pytest.fixture
def blob_store(tmp_path):
    from doclock.documents.storage import BlobStore

    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def feed():
    from doclock.engine.subscriptions import ChangeFeed

    return ChangeFeed()


@pytest.fixture
def app_config():
    return AppConfig(max_folder_depth=3, max_storage_limit_mb=1, max_credit_cards_limit=2)


@pytest.fixture
def make_user(db_factory):
    """Insert a user row directly and return its id."""
    from doclock.db.models import User
    from doclock.db.session import session_scope

    counter = {"n": 0}

    def _make(name: str = "Alice", mobile: str = None, device_id: str = "device-1") -> str:
        counter["n"] += 1
        with session_scope(db_factory) as session:
            user = User(
                mobile=mobile or f"98765{counter['n']:05d}",
                name=name,
                mpin_hash="x",
                device_id=device_id,
            )
            session.add(user)
            session.flush()
            return user.id

    return _make


@pytest.fixture
def notifications(db_factory, feed):
    from doclock.sharing.notifications import NotificationService

    return NotificationService(db_factory, feed)


@pytest.fixture
def shares(db_factory, notifications, feed):
    from doclock.sharing.service import ShareService

    return ShareService(db_factory, notifications=notifications, feed=feed)


@pytest.fixture
def folders(db_factory, blob_store, feed, app_config):
    from doclock.documents.folders import FolderStore

    return FolderStore(db_factory, blob_store, feed=feed, app_config=app_config)


@pytest.fixture
def documents(db_factory, blob_store, feed, app_config, shares):
    from doclock.documents.service import DocumentStore

    return DocumentStore(
        db_factory, blob_store, feed=feed, app_config=app_config,
        share_service=shares, max_upload_size_mb=1,
    )


@pytest.fixture
def secure_qrs(db_factory, blob_store, feed):
    from doclock.secure_qr.service import SecureQRService

    return SecureQRService(db_factory, blob_store, feed=feed, qr_config=QRConfig(box_size=4, border=4))


@pytest.fixture
def cipher():
    from doclock.engine.crypto import FieldCipher

    return FieldCipher.from_secret("test-card-key")


@pytest.fixture
def cards(db_factory, cipher, feed, app_config, shares):
    from doclock.cards.service import CardsService

    return CardsService(db_factory, cipher, feed=feed, app_config=app_config, share_service=shares)


@pytest.fixture
def friends(db_factory, notifications, feed):
    from doclock.sharing.friends import FriendsService

    return FriendsService(db_factory, notifications=notifications, feed=feed)


@pytest.fixture
def security_config():
    return SecurityConfig(bcrypt_rounds=4, max_login_attempts=3, lockout_seconds=60)


@pytest.fixture
def auth(db_factory, security_config, blob_store):
    from doclock.engine.security import AuthService

    return AuthService(db_factory, security_config=security_config, blob_store=blob_store)


@pytest.fixture
def recorder():
    """Listener that keeps every snapshot it receives."""

    class _Recorder:
        def __init__(self):
            self.snapshots = []

        def __call__(self, snapshot):
            self.snapshots.append(snapshot)

        @property
        def last(self):
            return self.snapshots[-1]

        def ids(self, index: int = -1):
            return [item.id for item in self.snapshots[index].items]

    return _Recorder()
