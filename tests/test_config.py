"""Unit tests for doclock.engine.config — PlatformConfig, AppConfig, loading."""

import pytest

from doclock.engine.config import (
    AppConfig,
    LoggingConfig,
    PlatformConfig,
    QRConfig,
    SecurityConfig,
    get_app_config,
    get_platform_config,
    load_platform_config,
    set_platform_config,
)
from doclock.engine.errors import DocLockConfigError


class TestPlatformConfig:
    """Test PlatformConfig Pydantic model."""

    def test_defaults(self):
        cfg = PlatformConfig()
        assert cfg.name == "DocLock"
        assert cfg.environment == "dev"
        assert cfg.limits.max_folder_depth == 3
        assert cfg.limits.max_storage_limit_mb == 200
        assert cfg.limits.max_credit_cards_limit == 5
        assert cfg.qr.error_correction == "H"
        assert cfg.security.max_login_attempts == 5

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="dev/staging/prod"):
            PlatformConfig(environment="test")

    def test_storage_limit_bytes(self):
        assert AppConfig(max_storage_limit_mb=2).max_storage_limit_bytes == 2 * 1024 * 1024

    def test_negative_limits_rejected(self):
        with pytest.raises(ValueError):
            AppConfig(max_folder_depth=-1)

    def test_bcrypt_rounds_bounds(self):
        with pytest.raises(ValueError, match="between 4 and 31"):
            SecurityConfig(bcrypt_rounds=3)

    def test_error_correction_normalized(self):
        assert QRConfig(error_correction="m").error_correction == "M"
        with pytest.raises(ValueError):
            QRConfig(error_correction="X")

    def test_log_level_normalized(self):
        assert LoggingConfig(level="warning").level == "WARNING"
        with pytest.raises(ValueError, match="level must be"):
            LoggingConfig(level="loud")


class TestLoadPlatformConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_platform_config(str(tmp_path / "absent.yaml"))
        assert cfg == PlatformConfig()

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "doclock.yaml"
        path.write_text(
            "platform:\n"
            "  name: TestVault\n"
            "  version: '2.0.0'\n"
            "environment: staging\n"
            "limits:\n"
            "  max_folder_depth: 5\n"
            "  max_storage_limit_mb: 50\n"
            "qr:\n"
            "  error_correction: Q\n",
            encoding="utf-8",
        )
        cfg = load_platform_config(str(path))
        assert cfg.name == "TestVault"
        assert cfg.version == "2.0.0"
        assert cfg.environment == "staging"
        assert cfg.limits.max_folder_depth == 5
        assert cfg.limits.max_credit_cards_limit == 5
        assert cfg.qr.error_correction == "Q"
        assert get_platform_config() is cfg
        assert get_app_config().max_storage_limit_mb == 50

    def test_invalid_yaml_values(self, tmp_path):
        path = tmp_path / "doclock.yaml"
        path.write_text("limits:\n  max_folder_depth: -2\n", encoding="utf-8")
        with pytest.raises(DocLockConfigError) as exc_info:
            load_platform_config(str(path))
        assert exc_info.value.context["validation_errors"]

    def test_set_platform_config(self):
        cfg = PlatformConfig(limits=AppConfig(max_folder_depth=1))
        set_platform_config(cfg)
        assert get_app_config().max_folder_depth == 1
