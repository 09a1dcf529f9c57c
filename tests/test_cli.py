"""Tests for doclock.cli — command parsing and execution against a temp vault."""

import json

import pytest

from doclock import cli as cli_mod
from doclock.engine.config import QRConfig

PDF_BYTES = b"%PDF-1.4\n%%EOF\n"


@pytest.fixture
def config_file(tmp_path):
    """doclock.yaml pointing at the same vault and blob root as the store fixtures."""
    path = tmp_path / "doclock.yaml"
    path.write_text(
        "platform:\n"
        "  name: DocLock\n"
        "  environment: staging\n"
        "database:\n"
        f"  url: sqlite:///{tmp_path / 'vault.db'}\n"
        "storage:\n"
        f"  blob_root: {tmp_path / 'blobs'}\n"
        "security:\n"
        "  card_key: super-secret\n"
        "logging:\n"
        f"  directory: {tmp_path / 'logs'}\n"
        "qr:\n"
        "  box_size: 4\n"
        "  border: 4\n"
        "limits:\n"
        "  max_storage_limit_mb: 1\n",
        encoding="utf-8",
    )
    return str(path)


def run(config_file, *argv):
    return cli_mod.main(["--config", config_file, *argv])


class TestParsing:
    def test_no_command_prints_help(self, capsys):
        assert cli_mod.main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            cli_mod.main(["frobnicate"])


class TestInit:
    def test_init_creates_vault(self, config_file, tmp_path, capsys):
        assert run(config_file, "init") == 0

        out = capsys.readouterr().out
        assert "[OK] Database tables created" in out
        assert (tmp_path / "vault.db").exists()
        assert (tmp_path / "blobs").is_dir()
        system_logs = list((tmp_path / "logs" / "system" / "execution").glob("*.jsonl"))
        assert len(system_logs) == 1
        assert "vault_initialized" in system_logs[0].read_text()

    def test_init_is_repeatable(self, config_file):
        assert run(config_file, "init") == 0
        assert run(config_file, "init") == 0


class TestConfig:
    def test_prints_masked_config(self, config_file, capsys):
        assert run(config_file, "config") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["environment"] == "staging"
        assert data["security"]["card_key"] == "********"
        assert data["limits"]["max_storage_limit_mb"] == 1

    def test_invalid_config(self, tmp_path, capsys):
        bad = tmp_path / "bad.yaml"
        bad.write_text("platform:\n  environment: moon\n", encoding="utf-8")
        assert cli_mod.main(["--config", str(bad), "config"]) == 1
        assert capsys.readouterr().out.startswith("[ERROR] Invalid bad.yaml")


class TestUsage:
    def test_usage(self, config_file, db_factory, make_user, documents, capsys):
        uid = make_user()
        documents.upload_document(uid, None, PDF_BYTES, "a.pdf")

        assert run(config_file, "usage", uid) == 0

        out = capsys.readouterr().out
        assert out.startswith(f"[OK] {uid}: 0.00 MB of 1 MB")
        assert "1 document(s)" in out

    def test_unknown_user(self, config_file, db_factory, capsys):
        assert run(config_file, "usage", "ghost") == 1
        assert "[ERROR] User 'ghost' not found" in capsys.readouterr().out


class TestQR:
    def test_export(self, config_file, tmp_path, make_user, documents, secure_qrs, capsys):
        uid = make_user()
        doc = documents.upload_document(uid, None, PDF_BYTES, "a.pdf")
        qr = secure_qrs.create_secure_qr(uid, "Travel", [doc.id])
        out_path = tmp_path / "export" / "travel.png"

        assert run(config_file, "qr", qr.id, "--owner", uid, "--out", str(out_path)) == 0

        out = capsys.readouterr().out
        assert f"Payload: doclock://secure-qr/{qr.id}" in out
        assert "[WARN]" not in out
        assert out_path.read_bytes() == secure_qrs.render_qr_image(qr)

    def test_inactive_warns(self, config_file, tmp_path, make_user, documents, secure_qrs, capsys):
        uid = make_user()
        doc = documents.upload_document(uid, None, PDF_BYTES, "a.pdf")
        qr = secure_qrs.create_secure_qr(uid, "Travel", [doc.id])
        secure_qrs.set_active(uid, qr.id, False)

        assert run(config_file, "qr", qr.id, "--owner", uid, "--out", str(tmp_path / "q.png")) == 0
        assert "[WARN]" in capsys.readouterr().out

    def test_other_owner(self, config_file, tmp_path, make_user, documents, secure_qrs, capsys):
        uid = make_user()
        doc = documents.upload_document(uid, None, PDF_BYTES, "a.pdf")
        qr = secure_qrs.create_secure_qr(uid, "Travel", [doc.id])

        assert run(config_file, "qr", qr.id, "--owner", "someone-else", "--out", str(tmp_path / "q.png")) == 1
        assert not (tmp_path / "q.png").exists()


def test_logs_cleanup(config_file, capsys):
    assert run(config_file, "logs-cleanup") == 0
    assert capsys.readouterr().out.startswith("[OK] Deleted 0 file(s), compressed 0 file(s)")


class TestHealth:
    def test_healthy_vault(self, config_file, tmp_path, capsys):
        assert run(config_file, "health") == 0
        out = capsys.readouterr().out
        assert "[OK] database" in out
        assert "[OK] blob_store" in out
        assert "[OK] audit_log" in out
        system_logs = list((tmp_path / "logs" / "system" / "execution").glob("*.jsonl"))
        assert "vault_started" in system_logs[0].read_text()

    def test_database_down(self, config_file, capsys, monkeypatch):
        from doclock.db.base import engine_registry

        monkeypatch.setattr(engine_registry, "health_check", lambda name: False)
        assert run(config_file, "health") == 1
        assert "[ERROR] database" in capsys.readouterr().out


def test_open_vault_passes_pool_options(config_file, monkeypatch):
    import doclock.engine.runtime as runtime_mod
    from doclock.engine.config import load_platform_config

    seen = {}

    def fake_init(url, **kwargs):
        seen.update(kwargs, url=url)

    monkeypatch.setattr(runtime_mod, "init_vault_db", fake_init)
    config = load_platform_config(config_file)
    cli_mod._open_vault(config)

    assert seen["url"] == config.database.url
    assert seen["pool_timeout"] == config.database.pool_timeout
    assert seen["pool_recycle"] == config.database.pool_recycle
    assert seen["pool_pre_ping"] is True
