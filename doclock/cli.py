"""
DocLock CLI — vault bootstrap and maintenance commands.

Commands:
- doclock init          — Create the vault schema, blob and log directories
- doclock config        — Print the effective configuration (secrets masked)
- doclock usage <uid>   — Storage used / limit for a user
- doclock qr <qr_id>    — Write a Secure QR bundle's PNG to a file
- doclock logs-cleanup  — Compress and expire audit log files
- doclock health        — Check database, blob storage and audit log
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from doclock.engine.errors import DocLockError

logger = logging.getLogger("doclock.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="doclock",
        description="DocLock — personal document vault backend",
    )
    parser.add_argument(
        "--config", default=None, help="Path to doclock.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # doclock init
    subparsers.add_parser("init", help="Create the vault database schema")

    # doclock config
    subparsers.add_parser("config", help="Show effective configuration")

    # doclock usage
    usage_parser = subparsers.add_parser("usage", help="Show storage usage for a user")
    usage_parser.add_argument("user_id", help="User id")

    # doclock qr
    qr_parser = subparsers.add_parser("qr", help="Export a Secure QR image")
    qr_parser.add_argument("qr_id", help="Secure QR id")
    qr_parser.add_argument("--owner", required=True, help="Owner user id")
    qr_parser.add_argument("--out", required=True, help="Output PNG path")

    # doclock logs-cleanup
    subparsers.add_parser("logs-cleanup", help="Compress and expire audit logs")

    # doclock health
    subparsers.add_parser("health", help="Check vault subsystems")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    commands = {
        "init": cmd_init,
        "config": cmd_config,
        "usage": cmd_usage,
        "qr": cmd_qr,
        "logs-cleanup": cmd_logs_cleanup,
        "health": cmd_health,
    }
    try:
        return commands[args.command](args)
    except DocLockError as e:
        print(f"[ERROR] {e.message}")
        return 1


def _load_config(args: argparse.Namespace):
    from doclock.engine.config import load_platform_config

    return load_platform_config(args.config)


def _open_vault(config, create_tables: bool = False):
    from doclock.engine.runtime import open_vault_db

    return open_vault_db(config, create_tables=create_tables)


def cmd_init(args: argparse.Namespace) -> int:
    """Create tables and the storage directories."""
    print("=" * 60)
    print("  DocLock Vault Initialization")
    print("=" * 60)

    config = _load_config(args)
    print(f"[OK] Loaded config ({config.name} {config.version}, env={config.environment})")

    try:
        _open_vault(config, create_tables=True)
    except Exception as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1
    print(f"[OK] Database tables created ({config.database.url})")

    for directory in (config.storage.blob_root, config.logging.directory):
        Path(directory).mkdir(parents=True, exist_ok=True)
        print(f"[OK] Directory ready: {directory}")

    from doclock.engine.logging import FileLogger, log_system_event

    FileLogger(config.logging.directory).write(log_system_event("vault_initialized"))
    print()
    print("  Vault initialized.")
    print("=" * 60)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    config = _load_config(args)
    data = config.model_dump()
    if data["security"].get("card_key"):
        data["security"]["card_key"] = "********"
    print(json.dumps(data, indent=2, default=str))
    return 0


def cmd_usage(args: argparse.Namespace) -> int:
    from doclock.documents.service import DocumentStore
    from doclock.documents.storage import BlobStore

    config = _load_config(args)
    factory = _open_vault(config)
    store = DocumentStore(
        factory,
        BlobStore(config.storage.blob_root),
        app_config=config.limits,
        max_upload_size_mb=config.storage.max_upload_size_mb,
    )
    usage = store.storage_usage(args.user_id)
    print(
        f"[OK] {args.user_id}: {usage.used_mb:.2f} MB of {config.limits.max_storage_limit_mb} MB "
        f"({usage.percent_used:.1f}%), {usage.document_count} document(s)"
    )
    return 0


def cmd_qr(args: argparse.Namespace) -> int:
    from doclock.documents.storage import BlobStore
    from doclock.secure_qr.service import SecureQRService

    config = _load_config(args)
    factory = _open_vault(config)
    service = SecureQRService(factory, BlobStore(config.storage.blob_root), qr_config=config.qr)
    qr = service.get_secure_qr(args.owner, args.qr_id)

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(service.render_qr_image(qr))
    print(f"[OK] '{qr.label}' ({len(qr.document_ids)} document(s)) written to {out}")
    print(f"     Payload: {service.payload_for(qr)}")
    if not qr.is_active:
        print("[WARN] This Secure QR is inactive; scans will be refused")
    return 0


def cmd_logs_cleanup(args: argparse.Namespace) -> int:
    from doclock.engine.logging import LogRetentionManager

    config = _load_config(args)
    manager = LogRetentionManager(
        log_dir=config.logging.directory,
        retention_days={
            "execution": config.logging.retention.execution_days,
            "security": config.logging.retention.security_days,
        },
        compress_after_days=config.logging.compress_after_days,
    )
    result = manager.cleanup()
    print(f"[OK] Deleted {result['deleted']} file(s), compressed {result['compressed']} file(s)")
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Start the runtime, report each subsystem, shut down."""
    from doclock.engine.runtime import VaultRuntime

    runtime = VaultRuntime(_load_config(args))
    runtime.startup()
    try:
        status = runtime.health()
    finally:
        runtime.shutdown()

    for subsystem, ok in status.items():
        print(f"[{'OK' if ok else 'ERROR'}] {subsystem}")
    return 0 if all(status.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
