"""
DocLock Configuration — Load and validate doclock.yaml at startup.

The ``limits`` section is the AppConfig the clients read once per session
(max folder depth, storage quota, card limit). It has exactly one set of
defaults, defined here, and every store reads it through ``get_app_config()``.

Usage:
    from doclock.engine.config import load_platform_config, get_app_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from doclock.engine.errors import DocLockConfigError

CONFIG_FILE_NAME = "doclock.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for doclock.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///.doclock/vault.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True


class StorageConfig(BaseModel):
    blob_root: str = ".doclock/blobs"
    max_upload_size_mb: int = 50


class SecurityConfig(BaseModel):
    max_login_attempts: int = 5
    lockout_seconds: int = 300
    token_ttl_seconds: int = 30 * 24 * 3600
    bcrypt_rounds: int = 12
    card_key: Optional[str] = None
    card_key_file: str = ".doclock/card.key"

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_rounds(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError(f"bcrypt_rounds must be between 4 and 31, got {v}")
        return v


class LogRetentionConfig(BaseModel):
    execution_days: int = 90
    security_days: int = 365


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".doclock/logs"
    compress_after_days: int = 7
    retention: LogRetentionConfig = LogRetentionConfig()
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"level must be DEBUG/INFO/WARNING/ERROR/CRITICAL, got '{v}'")
        return v


class QRConfig(BaseModel):
    payload_prefix: str = "doclock://secure-qr/"
    box_size: int = 10
    border: int = 4
    error_correction: str = "H"

    @field_validator("error_correction")
    @classmethod
    def validate_error_correction(cls, v: str) -> str:
        v = v.upper()
        if v not in ("L", "M", "Q", "H"):
            raise ValueError(f"error_correction must be L/M/Q/H, got '{v}'")
        return v


class AppConfig(BaseModel):
    """Process-wide limits read by every store."""
    max_folder_depth: int = Field(default=3, ge=0)
    max_storage_limit_mb: int = Field(default=200, ge=0)
    max_credit_cards_limit: int = Field(default=5, ge=0)

    @property
    def max_storage_limit_bytes(self) -> int:
        return self.max_storage_limit_mb * 1024 * 1024


class PlatformConfig(BaseModel):
    """Root model for doclock.yaml."""
    name: str = "DocLock"
    version: str = "1.0.0"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()
    qr: QRConfig = QRConfig()
    limits: AppConfig = AppConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_platform_config: Optional[PlatformConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for doclock.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILE_NAME).exists():
            return parent
    return current


def load_platform_config(config_path: Optional[str] = None) -> PlatformConfig:
    """
    Load and validate doclock.yaml.

    Args:
        config_path: Explicit path to doclock.yaml. If None, auto-discovers.

    Returns:
        Validated PlatformConfig instance. Defaults when the file is absent.

    Raises:
        DocLockConfigError if the file exists but does not validate.
    """
    global _platform_config

    if config_path is None:
        root = _find_project_root()
        config_path = str(root / CONFIG_FILE_NAME)

    path = Path(config_path)
    if not path.exists():
        _platform_config = PlatformConfig()
        return _platform_config

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    # Top-level "platform:" block holds name/version/environment
    platform_data = raw.get("platform", {})
    config_data: Dict[str, Any] = {
        "name": platform_data.get("name", raw.get("name", "DocLock")),
        "version": platform_data.get("version", raw.get("version", "1.0.0")),
        "environment": platform_data.get("environment", raw.get("environment", "dev")),
        "database": raw.get("database", {}),
        "storage": raw.get("storage", {}),
        "security": raw.get("security", {}),
        "logging": raw.get("logging", {}),
        "qr": raw.get("qr", {}),
        "limits": raw.get("limits", {}),
    }

    try:
        _platform_config = PlatformConfig(**config_data)
    except ValidationError as e:
        raise DocLockConfigError(
            f"Invalid {path.name}: {e.error_count()} error(s)",
            config_key=str(path),
            validation_errors=e.errors(),
        ) from e
    return _platform_config


def get_platform_config() -> PlatformConfig:
    """Get the currently loaded platform config, loading if necessary."""
    global _platform_config
    if _platform_config is None:
        _platform_config = load_platform_config()
    return _platform_config


def get_app_config() -> AppConfig:
    """Get the AppConfig limits section of the loaded config."""
    return get_platform_config().limits


def set_platform_config(config: PlatformConfig) -> None:
    """Install an already-built config (tests, embedding applications)."""
    global _platform_config
    _platform_config = config