"""
DocLock Vault Runtime — process bootstrap for the vault services.

Ties together:
- doclock.yaml (PlatformConfig)
- the "vault" database engine and sessionmaker
- the blob store and the in-process change feed
- the audit queue (AsyncLogQueue) and the "doclock" logger level
- every store and service, wired to the same feed and config

Lifecycle:
    runtime = VaultRuntime(config)
    runtime.startup()   # logging, database, services
    ...
    runtime.shutdown()  # flush audit queue, dispose engines
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from doclock.cards.service import CardsService
from doclock.db.base import engine_registry
from doclock.db.session import VAULT_ENGINE, close_all_sessions, init_vault_db
from doclock.documents.folders import FolderStore
from doclock.documents.service import DocumentStore
from doclock.documents.storage import BlobStore
from doclock.engine.config import PlatformConfig, get_platform_config
from doclock.engine.crypto import FieldCipher
from doclock.engine.logging import (
    AsyncLogQueue,
    LogRetentionManager,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)
from doclock.engine.security import AuthService
from doclock.engine.subscriptions import ChangeFeed
from doclock.secure_qr.service import SecureQRService
from doclock.sharing.friends import FriendsService
from doclock.sharing.notifications import NotificationService
from doclock.sharing.service import ShareService

logger = logging.getLogger("doclock.engine.runtime")


def open_vault_db(config: PlatformConfig, create_tables: bool = False):
    """Register the vault engine from config.database and return its sessionmaker."""
    db = config.database
    if db.url.startswith("sqlite:///"):
        Path(db.url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    return init_vault_db(
        db.url,
        create_tables=create_tables,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=db.pool_pre_ping,
    )


class VaultRuntime:
    """
    Owns the process-wide subsystems of one vault.

    Services are None until startup() has run.
    """

    def __init__(self, config: Optional[PlatformConfig] = None, create_tables: bool = False):
        self._config = config
        self._create_tables = create_tables

        self.db_session_factory = None
        self.log_queue: Optional[AsyncLogQueue] = None
        self.blobs: Optional[BlobStore] = None
        self.feed: Optional[ChangeFeed] = None
        self.notifications: Optional[NotificationService] = None
        self.shares: Optional[ShareService] = None
        self.folders: Optional[FolderStore] = None
        self.documents: Optional[DocumentStore] = None
        self.cards: Optional[CardsService] = None
        self.secure_qrs: Optional[SecureQRService] = None
        self.friends: Optional[FriendsService] = None
        self.auth: Optional[AuthService] = None
        self.retention_manager: Optional[LogRetentionManager] = None

        self._started = False

    @property
    def config(self) -> PlatformConfig:
        return self._config or get_platform_config()

    @property
    def started(self) -> bool:
        return self._started

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def startup(self) -> None:
        """Initialize all subsystems."""
        if self._started:
            logger.warning("Runtime already started")
            return

        config = self.config
        logger.info(f"Starting {config.name} {config.version} (env={config.environment})...")

        # 1. Logging
        logging.getLogger("doclock").setLevel(config.logging.level)
        self.log_queue = init_logging(
            config.logging.directory,
            **config.logging.async_queue.model_dump(),
        )

        # 2. Database
        self.db_session_factory = open_vault_db(config, create_tables=self._create_tables)

        # 3. Storage and change feed
        self.blobs = BlobStore(config.storage.blob_root)
        self.feed = ChangeFeed()

        # 4. Sharing
        factory = self.db_session_factory
        self.notifications = NotificationService(factory, self.feed)
        self.shares = ShareService(factory, notifications=self.notifications, feed=self.feed)
        self.friends = FriendsService(factory, notifications=self.notifications, feed=self.feed)

        # 5. Folders, documents, cards, Secure QR
        self.folders = FolderStore(factory, self.blobs, feed=self.feed, app_config=config.limits)
        self.documents = DocumentStore(
            factory,
            self.blobs,
            feed=self.feed,
            app_config=config.limits,
            share_service=self.shares,
            max_upload_size_mb=config.storage.max_upload_size_mb,
        )
        self.cards = CardsService(
            factory,
            FieldCipher.from_config(config.security),
            feed=self.feed,
            app_config=config.limits,
            share_service=self.shares,
        )
        self.secure_qrs = SecureQRService(factory, self.blobs, feed=self.feed, qr_config=config.qr)

        # 6. Auth
        self.auth = AuthService(factory, security_config=config.security, blob_store=self.blobs)

        # 7. Log retention
        self.retention_manager = LogRetentionManager(
            log_dir=config.logging.directory,
            retention_days={
                "execution": config.logging.retention.execution_days,
                "security": config.logging.retention.security_days,
            },
            compress_after_days=config.logging.compress_after_days,
        )

        self._started = True
        log(log_system_event("vault_started", details={"subsystems": self.health()}))
        logger.info("Vault runtime started")

    def shutdown(self) -> None:
        """Flush the audit queue and close database connections."""
        if not self._started:
            return

        logger.info("Shutting down vault runtime...")
        log(log_system_event("vault_shutdown"))
        shutdown_logging()
        self.log_queue = None
        close_all_sessions()

        self._started = False
        logger.info("Vault runtime shut down")

    def health(self) -> Dict[str, Any]:
        """Status of each subsystem: True when usable."""
        database = False
        if self.db_session_factory is not None:
            database = engine_registry.health_check(VAULT_ENGINE)
        blob_root = self.blobs.root if self.blobs is not None else None
        return {
            "database": database,
            "blob_store": blob_root is not None and blob_root.is_dir() and os.access(blob_root, os.W_OK),
            "audit_log": self.log_queue is not None and self.log_queue.is_running,
        }

    @property
    def healthy(self) -> bool:
        return all(self.health().values())


# ---------------------------------------------------------------------------
# Global Runtime Singleton
# ---------------------------------------------------------------------------

_runtime: Optional[VaultRuntime] = None


def get_runtime() -> VaultRuntime:
    """
    Get the global VaultRuntime singleton.

    Raises RuntimeError if init_runtime() has not been called.
    """
    if _runtime is None:
        raise RuntimeError("DocLock runtime not initialized. Call init_runtime() first.")
    return _runtime


def init_runtime(**kwargs: Any) -> VaultRuntime:
    """
    Create the global VaultRuntime singleton.

    The instance is returned unstarted; call runtime.startup().
    """
    global _runtime
    _runtime = VaultRuntime(**kwargs)
    return _runtime
