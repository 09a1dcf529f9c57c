"""Tests for doclock.db — engine registry and vault session setup."""

from sqlalchemy import text

from doclock.db.base import EngineRegistry
from doclock.db.session import session_scope


class TestEngineRegistry:
    def test_health_check(self, tmp_path):
        registry = EngineRegistry()
        registry.register("vault", f"sqlite:///{tmp_path / 'h.db'}")
        assert registry.health_check("vault")
        registry.dispose()

    def test_unknown_engine_unhealthy(self):
        assert not EngineRegistry().health_check("missing")


class TestVaultSession:
    def test_casefold_function(self, db_factory):
        with session_scope(db_factory) as session:
            assert session.execute(text("SELECT casefold('ÜBER Straße')")).scalar() == "über strasse"
            assert session.execute(text("SELECT casefold(NULL)")).scalar() is None

    def test_foreign_keys_enforced(self, db_factory):
        with session_scope(db_factory) as session:
            assert session.execute(text("PRAGMA foreign_keys")).scalar() == 1
