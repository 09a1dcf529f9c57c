"""
DocLock — Secure document vault service.

Folder/document hierarchy with depth-limited nesting, real-time
subscriptions, a shared-access overlay, payment cards, friends and
Secure QR bundles.

Typical wiring:

    from doclock.engine.config import load_platform_config
    from doclock.engine.runtime import VaultRuntime

    runtime = VaultRuntime(load_platform_config("doclock.yaml"), create_tables=True)
    runtime.startup()
    doc = runtime.documents.upload_document(uid, None, pdf_bytes, "passport.pdf")
    runtime.shutdown()

Or, without the runtime:

    from doclock.db.session import init_vault_db
    from doclock.documents.service import DocumentStore
    from doclock.documents.storage import BlobStore

    factory = init_vault_db("sqlite:///vault.db", create_tables=True)
    store = DocumentStore(factory, BlobStore(".doclock/blobs"))
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "documents", "sharing", "cards", "secure_qr"]
